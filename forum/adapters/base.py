"""
Source adapter contract.

One adapter implementation per forum software. The runner only talks to
adapters through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from schema import ScrapedThread, ScrapeProgress
from ..crawler import CancelToken, PageCallback, ProgressCallback, StopReason


@dataclass
class ThreadFilter:
    since: Optional[datetime] = None
    max_threads: Optional[int] = None

    def apply(self, threads: list[ScrapedThread]) -> list[ScrapedThread]:
        if self.max_threads is not None:
            return threads[:max(self.max_threads, 0)]
        return threads


@dataclass
class GetPostsResult:
    """Outcome of scraping one thread's posts."""
    total_posts: int
    final_progress: ScrapeProgress
    stop_reason: StopReason = StopReason.COMPLETED
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.stop_reason is StopReason.COMPLETED


class SourceAdapter(ABC):
    """A forum source that can list tracked threads and stream their posts."""

    name: str

    @abstractmethod
    async def get_threads(self, thread_filter: ThreadFilter | None = None) -> list[ScrapedThread]:
        ...

    @abstractmethod
    async def get_posts(
        self,
        thread: ScrapedThread,
        start_from_page: int = 1,
        on_page_data: PageCallback | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> GetPostsResult:
        ...

    async def cleanup(self) -> None:
        """Release browser resources. Must be safe to call more than once."""
        return None
