"""
Shared fakes: phpBB page markup, a scripted browser session and a
scripted source adapter. No network, no real browser.
"""

from datetime import datetime
from urllib.parse import parse_qs, urlparse

import pytest

from forum.adapters.base import GetPostsResult, SourceAdapter, ThreadFilter
from forum.config import CrawlConfig
from forum.crawler import StopReason
from schema import PageBatch, ScrapedPost, ScrapedThread, ScrapeProgress


THREAD_URL = "https://forum.example.com/viewtopic.php?t=231555"

TIMELINE_BODY = (
    "Applied for ILR Route : Set(O)\n"
    "Date application sent : 19/12/2016\n"
    "Approval/Refusal Received :23/05/2017\n"
    "BRP Card Received 24/05/2017"
)

CHATTER_BODY = "Still waiting for biometrics appointment, any news from anyone?"


def post_html(post_id: str, body: str, author: str = "alice", posted: str | None = None) -> str:
    time_tag = f'<time datetime="{posted}">whenever</time>' if posted else ""
    body_html = body.replace("\n", "<br>")
    return (
        f'<div id="{post_id}" class="post bg2">'
        f'<div class="postbody"><p class="author">{time_tag}</p>'
        f'<div class="content">{body_html}</div></div>'
        f'<dl class="postprofile"><dt><a class="username">{author}</a></dt></dl>'
        f'</div>'
    )


def page_html(posts: list[tuple[str, str]], page: int = 1, total: int = 1) -> str:
    """A thread page with the given (post_id, body) pairs."""
    pagination = f'<div class="pagination">{len(posts)} posts &bull; Page {page} of {total}</div>'
    return (
        "<html><body>"
        f"{pagination}"
        + "".join(post_html(pid, body) for pid, body in posts)
        + f"{pagination}</body></html>"
    )


def numbered_page(page: int, total: int, per_page: int = 2) -> str:
    posts = [
        (f"p{page * 100 + i}", f"Post {i} on page {page}: nothing to see here, just chatting.")
        for i in range(per_page)
    ]
    return page_html(posts, page=page, total=total)


def page_from_url(url: str, page_size: int = 25) -> int:
    start = parse_qs(urlparse(url).query).get("start", ["0"])[0]
    return int(start) // page_size + 1


class FakeSession:
    """
    Scripted page session.

    script maps page number -> list of responses consumed in order; a
    response is HTML or an exception instance. The last response repeats.
    """

    def __init__(self, script: dict, page_size: int = 25):
        self.script = {page: list(responses) for page, responses in script.items()}
        self.page_size = page_size
        self.loaded: list[int] = []
        self.opens = 0
        self.relaunches = 0
        self.closes = 0

    async def open(self):
        self.opens += 1

    async def relaunch(self):
        self.relaunches += 1

    async def close(self):
        self.closes += 1

    async def load_page(self, url: str) -> str:
        page = page_from_url(url, self.page_size)
        self.loaded.append(page)
        responses = self.script.get(page)
        if not responses:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED page {page}")
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class FakeAdapter(SourceAdapter):
    """
    Adapter that replays canned pages through the callbacks.

    pages maps thread external id -> list of post lists (page 1, 2, ...).
    """

    def __init__(self, name="testforum", threads=None, pages=None, errors=None):
        self.name = name
        self.threads = threads or [
            ScrapedThread(external_id="t1", url=THREAD_URL, title="ILR timelines")
        ]
        self.pages = pages or {}
        self.errors = errors or {}
        self.calls: list[tuple[str, int]] = []
        self.cleanups = 0

    async def get_threads(self, thread_filter: ThreadFilter | None = None):
        return (thread_filter or ThreadFilter()).apply(list(self.threads))

    async def get_posts(self, thread, start_from_page=1, on_page_data=None, on_progress=None, cancel=None):
        self.calls.append((thread.external_id, start_from_page))
        if thread.external_id in self.errors:
            raise self.errors[thread.external_id]

        pages = self.pages.get(thread.external_id, [])
        total = len(pages)
        last_good = start_from_page - 1
        delivered = 0
        for number in range(start_from_page, total + 1):
            if cancel is not None and cancel.cancelled:
                return GetPostsResult(
                    total_posts=delivered,
                    final_progress=ScrapeProgress(last_good, total),
                    stop_reason=StopReason.CANCELLED,
                    error=cancel.reason,
                )
            posts = pages[number - 1]
            if on_page_data:
                await on_page_data(PageBatch(page_number=number, total_pages=total, posts=posts))
            last_good = number
            delivered += len(posts)
            if on_progress:
                await on_progress(ScrapeProgress(last_good, total))
        return GetPostsResult(total_posts=delivered, final_progress=ScrapeProgress(last_good, total))

    async def cleanup(self):
        self.cleanups += 1


def make_post(external_id: str, content: str, page: int = 1, posted_at: datetime | None = None) -> ScrapedPost:
    return ScrapedPost(external_id=external_id, content=content, page_number=page, posted_at=posted_at)


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def fast_crawl_config() -> CrawlConfig:
    return CrawlConfig(jitter_min=0.0, jitter_max=0.0, page_timeout=5.0)
