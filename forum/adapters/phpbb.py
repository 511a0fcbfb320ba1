"""
Adapter for a single tracked phpBB topic (e.g. an ILR timelines thread).

The topic URL, page size and display metadata come from a typed
PhpBBConfig. Posts are crawled through one BrowserSession that lives
until cleanup(), so consent cookies carry across threads within a run.
"""

from typing import Callable

import structlog

from schema import ScrapedThread
from ..config import CrawlConfig, PhpBBConfig
from ..crawler import CancelToken, CrawlController, PageCallback, PageSession, ProgressCallback
from ..pagination import canonical_thread_url, thread_external_id
from ..session import BrowserSession
from .base import GetPostsResult, SourceAdapter, ThreadFilter

log = structlog.get_logger(__name__)


class PhpBBAdapter(SourceAdapter):

    kind = 'phpbb'

    def __init__(
        self,
        name: str,
        config: PhpBBConfig,
        crawl_config: CrawlConfig | None = None,
        session_factory: Callable[[CrawlConfig], PageSession] | None = None,
    ):
        if not isinstance(config, PhpBBConfig):
            raise TypeError(f"PhpBBAdapter needs a PhpBBConfig, got {type(config).__name__}")
        self.name = name
        self.config = config
        self.crawl_config = crawl_config or CrawlConfig()
        self._session_factory = session_factory or BrowserSession
        self._session: PageSession | None = None

    @property
    def session(self) -> PageSession:
        if self._session is None:
            self._session = self._session_factory(self.crawl_config)
        return self._session

    async def get_threads(self, thread_filter: ThreadFilter | None = None) -> list[ScrapedThread]:
        url = canonical_thread_url(self.config.thread_url)
        threads = [ScrapedThread(
            external_id=thread_external_id(url),
            url=url,
            title=self.config.thread_title or url,
            posted_at=self.config.thread_posted_at,
        )]
        return (thread_filter or ThreadFilter()).apply(threads)

    async def get_posts(
        self,
        thread: ScrapedThread,
        start_from_page: int = 1,
        on_page_data: PageCallback | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> GetPostsResult:
        controller = CrawlController(
            self.session,
            config=self.crawl_config,
            page_size=self.config.posts_per_page,
            source_timezone=self.config.source_timezone,
        )
        log.info('thread_crawl_start', source=self.name, thread=thread.external_id, start_page=start_from_page)

        outcome = await controller.crawl(
            thread.url,
            start_page=start_from_page,
            on_page=on_page_data,
            on_progress=on_progress,
            cancel=cancel,
        )
        return GetPostsResult(
            total_posts=outcome.posts_delivered,
            final_progress=outcome.progress,
            stop_reason=outcome.stop_reason,
            error=outcome.error,
        )

    async def cleanup(self) -> None:
        session, self._session = self._session, None
        if session is not None and hasattr(session, 'close'):
            await session.close()
