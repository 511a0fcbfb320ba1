"""
Tests for pipeline/ingest.py against the in-memory store.
"""

from datetime import datetime, timezone

import pytest

from conftest import CHATTER_BODY, THREAD_URL, TIMELINE_BODY, make_post, no_sleep
from extraction import extract_case
from forum.hasher import hash_content
from forum.retry import RetryPolicy
from pipeline.ingest import IngestionPipeline
from pipeline.store import MemoryStore, StoreError, TransientStoreError
from schema import PageBatch, ScrapedThread, ScrapeProgress


FAST = RetryPolicy(max_attempts=3, initial_delay=0.0)


async def _thread(store):
    return await store.upsert_thread("testforum", ScrapedThread(external_id="t1", url=THREAD_URL, title="ILR"))


def _pipeline(store, handle, **kwargs):
    kwargs.setdefault("write_policy", FAST)
    kwargs.setdefault("checkpoint_policy", FAST)
    return IngestionPipeline(store, handle, sleep=no_sleep, **kwargs)


def _batch(posts, page=1, total=1):
    return PageBatch(page_number=page, total_pages=total, posts=posts)


class CountingExtractor:
    def __init__(self):
        self.calls = 0

    def __call__(self, text):
        self.calls += 1
        return extract_case(text)


# =============================================================================
# Post classification
# =============================================================================

@pytest.mark.asyncio
async def test_new_posts_inserted_with_accepted_cases_only():
    store = MemoryStore()
    pipeline = _pipeline(store, await _thread(store))

    await pipeline.on_page(_batch([make_post("p1", TIMELINE_BODY), make_post("p2", CHATTER_BODY)]))

    assert pipeline.stats.posts_new == 2
    assert pipeline.stats.cases_extracted == 1
    assert len(store.posts) == 2
    assert len(store.cases) == 1
    (case,) = store.cases.values()
    assert case.waiting_days == 155
    assert case.outcome == "approved"


@pytest.mark.asyncio
async def test_unchanged_posts_are_not_reextracted():
    store = MemoryStore()
    handle = await _thread(store)
    posts = [make_post("p1", TIMELINE_BODY), make_post("p2", CHATTER_BODY)]
    await _pipeline(store, handle).on_page(_batch(posts))

    extractor = CountingExtractor()
    pipeline = _pipeline(store, handle, extractor=extractor)
    await pipeline.on_page(_batch(posts))

    assert extractor.calls == 0
    assert pipeline.stats.posts_unchanged == 2
    assert pipeline.stats.posts_scraped == 0
    assert len(store.posts) == 2


@pytest.mark.asyncio
async def test_edited_post_updates_hash_and_removes_stale_case():
    store = MemoryStore()
    handle = await _thread(store)
    await _pipeline(store, handle).on_page(_batch([make_post("p1", TIMELINE_BODY)]))
    assert len(store.cases) == 1

    pipeline = _pipeline(store, handle)
    await pipeline.on_page(_batch([make_post("p1", CHATTER_BODY)]))

    (row,) = store.posts.values()
    assert row.content == CHATTER_BODY
    assert row.content_hash == hash_content(CHATTER_BODY)
    assert store.cases == {}
    assert pipeline.stats.posts_changed == 1
    assert pipeline.stats.cases_removed == 1


@pytest.mark.asyncio
async def test_edited_post_gains_case():
    store = MemoryStore()
    handle = await _thread(store)
    await _pipeline(store, handle).on_page(_batch([make_post("p1", CHATTER_BODY)]))

    pipeline = _pipeline(store, handle)
    await pipeline.on_page(_batch([make_post("p1", TIMELINE_BODY)]))

    assert pipeline.stats.cases_extracted == 1
    assert len(store.cases) == 1


@pytest.mark.asyncio
async def test_duplicate_ids_within_a_page_written_once():
    store = MemoryStore()
    pipeline = _pipeline(store, await _thread(store))

    await pipeline.on_page(_batch([make_post("p1", CHATTER_BODY), make_post("p1", CHATTER_BODY)]))

    assert len(store.posts) == 1
    assert pipeline.stats.posts_new == 1


# =============================================================================
# Since filter
# =============================================================================

@pytest.mark.asyncio
async def test_since_filter_drops_old_posts_and_keeps_undated():
    store = MemoryStore()
    since = datetime(2020, 1, 1)  # naive, taken as UTC
    pipeline = _pipeline(store, await _thread(store), since=since)

    await pipeline.on_page(_batch([
        make_post("old", CHATTER_BODY, posted_at=datetime(2019, 12, 31, tzinfo=timezone.utc)),
        make_post("new", CHATTER_BODY, posted_at=datetime(2020, 1, 2, tzinfo=timezone.utc)),
        make_post("undated", CHATTER_BODY),
    ]))

    assert sorted(row.external_id for row in store.posts.values()) == ["new", "undated"]
    assert pipeline.stats.posts_filtered == 1
    assert pipeline.stats.posts_found == 3


@pytest.mark.asyncio
async def test_fully_filtered_page_writes_nothing():
    store = MemoryStore()
    pipeline = _pipeline(store, await _thread(store), since=datetime(2030, 1, 1, tzinfo=timezone.utc))

    await pipeline.on_page(_batch([make_post("p1", CHATTER_BODY, posted_at=datetime(2020, 1, 1))]))

    assert store.posts == {}
    assert pipeline.stats.pages == 1


# =============================================================================
# Batching and retry
# =============================================================================

class CountingStore(MemoryStore):
    def __init__(self, insert_failures=None):
        super().__init__()
        self.insert_calls = []
        self.insert_failures = list(insert_failures or [])

    async def insert_posts_batch(self, thread_id, writes):
        self.insert_calls.append(len(writes))
        if self.insert_failures:
            raise self.insert_failures.pop(0)
        return await super().insert_posts_batch(thread_id, writes)


@pytest.mark.asyncio
async def test_writes_are_chunked_by_batch_size():
    store = CountingStore()
    pipeline = _pipeline(store, await _thread(store), batch_size=2)

    await pipeline.on_page(_batch([make_post(f"p{i}", CHATTER_BODY + str(i)) for i in range(5)]))

    assert store.insert_calls == [2, 2, 1]
    assert len(store.posts) == 5


@pytest.mark.asyncio
async def test_transient_write_failure_is_retried():
    store = CountingStore(insert_failures=[TransientStoreError("connection reset")])
    pipeline = _pipeline(store, await _thread(store))

    await pipeline.on_page(_batch([make_post("p1", TIMELINE_BODY)]))

    assert store.insert_calls == [1, 1]
    assert len(store.posts) == 1
    assert pipeline.stats.cases_extracted == 1


@pytest.mark.asyncio
async def test_permanent_write_failure_propagates():
    store = CountingStore(insert_failures=[StoreError("constraint violated")])
    pipeline = _pipeline(store, await _thread(store))

    with pytest.raises(StoreError, match="constraint"):
        await pipeline.on_page(_batch([make_post("p1", TIMELINE_BODY)]))
    assert store.insert_calls == [1]


# =============================================================================
# Checkpoints
# =============================================================================

@pytest.mark.asyncio
async def test_checkpoint_every_n_pages_then_final():
    store = MemoryStore()
    handle = await _thread(store)
    pipeline = _pipeline(store, handle, checkpoint_every=3)

    for page in range(1, 6):
        await pipeline.on_progress(ScrapeProgress(page, 5))

    assert store.threads[handle.id].last_scraped_page == 3
    assert await pipeline.checkpoint() is True
    assert store.threads[handle.id].last_scraped_page == 5
    assert store.threads[handle.id].total_pages == 5
    assert await pipeline.checkpoint() is False


@pytest.mark.asyncio
async def test_checkpoint_never_moves_cursor_backwards():
    store = MemoryStore()
    handle = await _thread(store)
    await store.update_thread_progress(handle.id, 7, 9)
    handle = await _thread(store)
    pipeline = _pipeline(store, handle)

    await pipeline.checkpoint(ScrapeProgress(2, 10))

    row = store.threads[handle.id]
    assert row.last_scraped_page == 7
    assert row.total_pages == 10
    assert pipeline.checkpointed_page == 7


@pytest.mark.asyncio
async def test_checkpoint_keeps_larger_stored_total():
    store = MemoryStore()
    handle = await _thread(store)
    await store.update_thread_progress(handle.id, 7, 50)
    handle = await _thread(store)
    pipeline = _pipeline(store, handle)

    assert await pipeline.checkpoint(ScrapeProgress(6, 6)) is False

    row = store.threads[handle.id]
    assert (row.last_scraped_page, row.total_pages) == (7, 50)


@pytest.mark.asyncio
async def test_failed_checkpoint_is_swallowed():
    class BrokenProgress(MemoryStore):
        async def update_thread_progress(self, thread_id, last_scraped_page, total_pages):
            raise TransientStoreError("database is locked")

    store = BrokenProgress()
    pipeline = _pipeline(store, await _thread(store))

    assert await pipeline.checkpoint(ScrapeProgress(4, 10)) is False
    assert pipeline.checkpointed_page == 0


def test_rejects_bad_batch_size():
    with pytest.raises(ValueError):
        IngestionPipeline(MemoryStore(), None, batch_size=0)
