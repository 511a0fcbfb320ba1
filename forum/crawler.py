"""
Paginated thread crawler.

Drives a BrowserSession across a thread's pages, one page at a time:
- Discovers and refines the total page count from pagination markup
- Sleeps a random jitter between pages (never before the first)
- Bounds each page with a wall-clock budget
- Relaunches a dead session and replays the page once
- Aborts the thread after N consecutive page failures
- Streams each page's posts to an async callback and waits for it
  before moving on, so at most one page is held in memory

Cancellation is cooperative: a CancelToken is checked at the top of every
iteration and interrupts the inter-page sleep. The crawl then returns a
CrawlOutcome with StopReason.CANCELLED instead of raising.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

import structlog
from bs4 import BeautifulSoup

from schema import PageBatch, ScrapedPost, ScrapeProgress
from .config import TIMEZONE_ID, CrawlConfig
from .page_extractor import extract_posts
from .pagination import build_page_url, parse_total_pages
from .session import SessionLaunchError, is_session_fatal

log = structlog.get_logger(__name__)


PROGRESS_LOG_EVERY = 10

PageCallback = Callable[[PageBatch], Awaitable[None]]
ProgressCallback = Callable[[ScrapeProgress], Awaitable[None]]


class PageSession(Protocol):
    """What the crawler needs from a browser session."""

    async def open(self) -> None: ...

    async def relaunch(self) -> None: ...

    async def load_page(self, url: str) -> str: ...


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """Cooperative shutdown flag shared by the runner, crawler and pipeline."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = 'cancelled') -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to seconds. Returns True if cancelled meanwhile."""
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

class StopReason(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"            # consecutive failure ceiling reached
    CANCELLED = "cancelled"        # shutdown requested
    SESSION_LOST = "session_lost"  # relaunch after a crash failed


@dataclass
class CrawlOutcome:
    """How a thread crawl ended and where to resume it."""
    stop_reason: StopReason
    last_good_page: int
    total_pages: int
    pages_completed: int = 0
    pages_failed: int = 0
    posts_delivered: int = 0
    error: Optional[str] = None

    @property
    def progress(self) -> ScrapeProgress:
        return ScrapeProgress(
            last_scraped_page=min(self.last_good_page, self.total_pages),
            total_pages=self.total_pages,
        )


def format_duration(seconds: float) -> str:
    """Human-readable duration: 42s, 3m 5s, 2h 14m."""
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {round(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class CrawlController:
    """Crawls one thread through a page session."""

    def __init__(
        self,
        session: PageSession,
        config: CrawlConfig | None = None,
        page_size: int = 25,
        source_timezone: str = TIMEZONE_ID,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.config = config or CrawlConfig()
        self.page_size = page_size
        self.source_timezone = source_timezone
        self.rng = rng or random.Random()
        self.clock = clock

    def jitter(self) -> float:
        return self.rng.uniform(self.config.jitter_min, self.config.jitter_max)

    async def fetch_page(self, thread_url: str, page_number: int) -> tuple[list[ScrapedPost], int]:
        """Load one page; return its posts and the total pages it reports."""
        url = build_page_url(thread_url, page_number, self.page_size)
        html = await self.session.load_page(url)
        soup = BeautifulSoup(html, 'lxml')
        total = parse_total_pages(soup)
        posts = extract_posts(soup, page_number, tz=self.source_timezone)
        return posts, total

    async def crawl(
        self,
        thread_url: str,
        start_page: int = 1,
        on_page: PageCallback | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> CrawlOutcome:
        """
        Crawl a thread from start_page to its last page.

        Args:
            thread_url: Canonical thread URL
            start_page: First page to fetch (1, or a resume cursor)
            on_page: Awaited with each non-empty page before the next is fetched.
                Errors raised here propagate and end the crawl.
            on_progress: Awaited after every page attempt with the last good page
            cancel: Shutdown token

        Returns:
            CrawlOutcome with stop reason and resume point

        Raises:
            SessionLaunchError: the session cannot be opened at all
        """
        cancel = cancel or CancelToken()
        start_page = max(1, start_page)

        await self.session.open()

        page = start_page
        total: int | None = None
        last_good = start_page - 1
        failures = 0
        completed = 0
        failed = 0
        delivered = 0
        replayed: set[int] = set()
        first = True
        started = self.clock()

        def outcome(reason: StopReason, error: str | None = None) -> CrawlOutcome:
            known_total = total if total is not None else max(last_good, 0)
            return CrawlOutcome(
                stop_reason=reason,
                last_good_page=last_good,
                total_pages=known_total,
                pages_completed=completed,
                pages_failed=failed,
                posts_delivered=delivered,
                error=error,
            )

        while True:
            if cancel.cancelled:
                log.info('crawl_cancelled', page=page, reason=cancel.reason)
                return outcome(StopReason.CANCELLED, cancel.reason)
            if total is not None and page > total:
                break

            if not first and await cancel.sleep(self.jitter()):
                log.info('crawl_cancelled', page=page, reason=cancel.reason)
                return outcome(StopReason.CANCELLED, cancel.reason)
            first = False

            error: str | None = None
            posts: list[ScrapedPost] = []
            try:
                posts, page_total = await asyncio.wait_for(
                    self.fetch_page(thread_url, page),
                    timeout=self.config.page_timeout,
                )
            except asyncio.TimeoutError:
                error = f"page timed out after {self.config.page_timeout:.0f}s"
            except Exception as exc:
                if is_session_fatal(exc) and page not in replayed:
                    replayed.add(page)
                    log.warning('session_dead', page=page, error=str(exc)[:200])
                    try:
                        await self.session.relaunch()
                    except SessionLaunchError as launch_exc:
                        log.error('session_recovery_failed', page=page, error=str(launch_exc))
                        return outcome(StopReason.SESSION_LOST, str(launch_exc))
                    continue
                error = str(exc)[:500]
            else:
                # Refine: pagination can grow while we crawl, and a page that
                # had posts exists even if its pagination undercounts
                total = max(total or 0, page_total)
                if posts:
                    total = max(total, page)
                else:
                    error = 'no posts extracted'

            if error is None:
                if on_page is not None:
                    await on_page(PageBatch(page_number=page, total_pages=total, posts=posts))
                failures = 0
                last_good = page
                completed += 1
                delivered += len(posts)
                self._log_progress(page, total, start_page, completed, delivered, started)
            else:
                failures += 1
                failed += 1
                log.warning(
                    'page_failed',
                    page=page,
                    failures=failures,
                    max_failures=self.config.max_consecutive_failures,
                    error=error,
                )
                if failures >= self.config.max_consecutive_failures:
                    log.error('crawl_aborted', page=page, last_good_page=last_good)
                    return outcome(StopReason.ABORTED, error)
                if total is None:
                    # Cannot tell whether the next page exists yet
                    continue

            if on_progress is not None:
                await on_progress(ScrapeProgress(last_scraped_page=last_good, total_pages=total))
            page += 1

        log.info(
            'crawl_complete',
            posts=delivered,
            pages=completed,
            failed_pages=failed,
            elapsed=format_duration(self.clock() - started),
        )
        return outcome(StopReason.COMPLETED)

    def _log_progress(self, page, total, start_page, completed, delivered, started):
        if not (page == start_page or page % PROGRESS_LOG_EVERY == 0 or page == total):
            return
        elapsed = self.clock() - started
        remaining = (total - page) * (elapsed / completed)
        log.info(
            'page_scraped',
            page=page,
            total_pages=total,
            done=f"{completed}/{total - start_page + 1}",
            eta=format_duration(remaining),
            total_posts=delivered,
        )
