"""
Tests for forum/crawler.py against a scripted session.
"""

import asyncio

import pytest

from conftest import THREAD_URL, FakeSession, numbered_page, page_html
from forum.config import CrawlConfig
from forum.crawler import CancelToken, CrawlController, StopReason, format_duration
from forum.session import PageLoadError, SessionLaunchError


def _controller(session, config):
    return CrawlController(session, config=config, page_size=25)


class Recorder:
    def __init__(self):
        self.batches = []
        self.progress = []

    async def on_page(self, batch):
        self.batches.append(batch)

    async def on_progress(self, progress):
        self.progress.append((progress.last_scraped_page, progress.total_pages))


@pytest.mark.asyncio
async def test_crawls_every_page_in_order(fast_crawl_config):
    session = FakeSession({p: [numbered_page(p, 3)] for p in (1, 2, 3)})
    rec = Recorder()

    outcome = await _controller(session, fast_crawl_config).crawl(
        THREAD_URL, on_page=rec.on_page, on_progress=rec.on_progress
    )

    assert outcome.stop_reason is StopReason.COMPLETED
    assert session.loaded == [1, 2, 3]
    assert [b.page_number for b in rec.batches] == [1, 2, 3]
    assert rec.progress == [(1, 3), (2, 3), (3, 3)]
    assert outcome.last_good_page == 3
    assert outcome.posts_delivered == 6
    assert session.opens == 1


@pytest.mark.asyncio
async def test_posts_carry_page_numbers_and_ids(fast_crawl_config):
    session = FakeSession({1: [numbered_page(1, 1)]})
    rec = Recorder()

    await _controller(session, fast_crawl_config).crawl(THREAD_URL, on_page=rec.on_page)

    posts = rec.batches[0].posts
    assert [p.external_id for p in posts] == ["p100", "p101"]
    assert all(p.page_number == 1 for p in posts)
    assert posts[0].author_name == "alice"


@pytest.mark.asyncio
async def test_resume_starts_on_cursor_page(fast_crawl_config):
    session = FakeSession({p: [numbered_page(p, 9)] for p in range(1, 10)})
    rec = Recorder()

    outcome = await _controller(session, fast_crawl_config).crawl(
        THREAD_URL, start_page=7, on_page=rec.on_page, on_progress=rec.on_progress
    )

    assert session.loaded == [7, 8, 9]
    assert rec.progress == [(7, 9), (8, 9), (9, 9)]
    assert outcome.progress.last_scraped_page == 9


@pytest.mark.asyncio
async def test_aborts_after_consecutive_failures_keeping_last_good_page(fast_crawl_config):
    script = {1: [numbered_page(1, 10)], 2: [numbered_page(2, 10)]}
    for p in range(3, 11):
        script[p] = [PageLoadError(f"page{p}", "no post containers")]
    session = FakeSession(script)
    rec = Recorder()

    outcome = await _controller(session, fast_crawl_config).crawl(
        THREAD_URL, on_page=rec.on_page, on_progress=rec.on_progress
    )

    assert outcome.stop_reason is StopReason.ABORTED
    assert outcome.last_good_page == 2
    assert outcome.pages_failed == 5
    assert session.loaded == [1, 2, 3, 4, 5, 6, 7]
    assert rec.progress[-1] == (2, 10)


@pytest.mark.asyncio
async def test_success_resets_failure_count(fast_crawl_config):
    config = CrawlConfig(jitter_min=0, jitter_max=0, max_consecutive_failures=2)
    err = RuntimeError("boom")
    session = FakeSession({
        1: [numbered_page(1, 4)],
        2: [err],
        3: [numbered_page(3, 4)],
        4: [err],
    })

    outcome = await _controller(session, config).crawl(THREAD_URL)

    assert outcome.stop_reason is StopReason.COMPLETED
    assert outcome.pages_failed == 2
    assert outcome.last_good_page == 3


@pytest.mark.asyncio
async def test_empty_page_counts_as_failure(fast_crawl_config):
    empty = page_html([], page=2, total=2)
    session = FakeSession({1: [numbered_page(1, 2)], 2: [empty]})
    rec = Recorder()

    outcome = await _controller(session, fast_crawl_config).crawl(THREAD_URL, on_page=rec.on_page)

    assert outcome.stop_reason is StopReason.COMPLETED
    assert outcome.pages_failed == 1
    assert [b.page_number for b in rec.batches] == [1]
    assert outcome.last_good_page == 1


@pytest.mark.asyncio
async def test_dead_session_is_relaunched_and_page_replayed(fast_crawl_config):
    session = FakeSession({
        1: [numbered_page(1, 2)],
        2: [RuntimeError("Target closed"), numbered_page(2, 2)],
    })
    rec = Recorder()

    outcome = await _controller(session, fast_crawl_config).crawl(THREAD_URL, on_page=rec.on_page)

    assert session.relaunches == 1
    assert session.loaded == [1, 2, 2]
    assert outcome.stop_reason is StopReason.COMPLETED
    assert outcome.pages_failed == 0
    assert [b.page_number for b in rec.batches] == [1, 2]


@pytest.mark.asyncio
async def test_page_is_replayed_only_once(fast_crawl_config):
    config = CrawlConfig(jitter_min=0, jitter_max=0, max_consecutive_failures=1)
    session = FakeSession({1: [RuntimeError("Protocol error (Page.navigate): Target closed")]})

    outcome = await _controller(session, config).crawl(THREAD_URL)

    assert session.relaunches == 1
    assert session.loaded == [1, 1]
    assert outcome.stop_reason is StopReason.ABORTED


@pytest.mark.asyncio
async def test_failed_relaunch_ends_with_session_lost(fast_crawl_config):
    class BrokenRelaunch(FakeSession):
        async def relaunch(self):
            raise SessionLaunchError("browser launch failed")

    session = BrokenRelaunch({1: [numbered_page(1, 2)], 2: [RuntimeError("browser has been closed")]})

    outcome = await _controller(session, fast_crawl_config).crawl(THREAD_URL)

    assert outcome.stop_reason is StopReason.SESSION_LOST
    assert outcome.last_good_page == 1


@pytest.mark.asyncio
async def test_total_pages_refined_while_crawling(fast_crawl_config):
    session = FakeSession({
        1: [numbered_page(1, 2)],
        2: [numbered_page(2, 3)],
        3: [numbered_page(3, 3)],
    })

    outcome = await _controller(session, fast_crawl_config).crawl(THREAD_URL)

    assert session.loaded == [1, 2, 3]
    assert outcome.total_pages == 3


@pytest.mark.asyncio
async def test_first_page_failure_retries_same_page(fast_crawl_config):
    session = FakeSession({1: [RuntimeError("Timeout 30000ms exceeded"), numbered_page(1, 2)], 2: [numbered_page(2, 2)]})

    outcome = await _controller(session, fast_crawl_config).crawl(THREAD_URL)

    assert session.loaded == [1, 1, 2]
    assert outcome.stop_reason is StopReason.COMPLETED
    assert outcome.pages_failed == 1


@pytest.mark.asyncio
async def test_slow_page_times_out_as_failure():
    config = CrawlConfig(jitter_min=0, jitter_max=0, page_timeout=0.05, max_consecutive_failures=1)

    class SlowSession(FakeSession):
        async def load_page(self, url):
            await asyncio.sleep(1)
            return ""

    outcome = await _controller(SlowSession({}), config).crawl(THREAD_URL)

    assert outcome.stop_reason is StopReason.ABORTED
    assert "timed out" in outcome.error


@pytest.mark.asyncio
async def test_cancel_stops_before_next_page(fast_crawl_config):
    session = FakeSession({p: [numbered_page(p, 5)] for p in range(1, 6)})
    cancel = CancelToken()

    async def on_page(batch):
        if batch.page_number == 2:
            cancel.cancel("SIGTERM received")

    outcome = await _controller(session, fast_crawl_config).crawl(THREAD_URL, on_page=on_page, cancel=cancel)

    assert outcome.stop_reason is StopReason.CANCELLED
    assert outcome.last_good_page == 2
    assert outcome.error == "SIGTERM received"
    assert session.loaded == [1, 2]


@pytest.mark.asyncio
async def test_cancel_interrupts_jitter_sleep():
    config = CrawlConfig(jitter_min=30.0, jitter_max=30.0)
    session = FakeSession({p: [numbered_page(p, 3)] for p in (1, 2, 3)})
    cancel = CancelToken()

    async def on_page(batch):
        # Fires while the crawler sits in the 30s inter-page sleep
        asyncio.get_running_loop().call_later(0.05, cancel.cancel, "stop")

    outcome = await asyncio.wait_for(
        _controller(session, config).crawl(THREAD_URL, on_page=on_page, cancel=cancel),
        timeout=5,
    )

    assert outcome.stop_reason is StopReason.CANCELLED
    assert session.loaded == [1]


@pytest.mark.asyncio
async def test_page_callback_errors_propagate(fast_crawl_config):
    session = FakeSession({1: [numbered_page(1, 2)], 2: [numbered_page(2, 2)]})

    async def on_page(batch):
        raise ValueError("store down")

    with pytest.raises(ValueError):
        await _controller(session, fast_crawl_config).crawl(THREAD_URL, on_page=on_page)


@pytest.mark.asyncio
async def test_cancel_token_sleep_returns_false_when_not_cancelled():
    token = CancelToken()
    assert await token.sleep(0.01) is False
    token.cancel("x")
    token.cancel("y")
    assert token.reason == "x"
    assert await token.sleep(10) is True


def test_format_duration():
    assert format_duration(42) == "42s"
    assert format_duration(185) == "3m 5s"
    assert format_duration(2 * 3600 + 14 * 60) == "2h 14m"
