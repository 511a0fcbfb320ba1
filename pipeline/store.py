"""
Persistence boundary for threads, posts, extracted cases and scrape runs.

Store is the contract the ingestion pipeline and runner write through.
Every write is keyed by natural identifiers ((source, thread external id),
(thread, post external id), post id for cases), so retrying a failed call
never duplicates rows.

Implementations:
- MemoryStore: dict-backed, used for dry runs and tests
- SQLStore (sql_store.py): SQLAlchemy Core
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from schema import (
    CaseRecord,
    ExistingPost,
    PostWrite,
    RunStatus,
    ScrapedThread,
    ScrapeStats,
    ThreadHandle,
)


class StoreError(RuntimeError):
    """A persistence operation failed."""
    pass


class TransientStoreError(StoreError):
    """A persistence failure worth retrying (dropped connection, timeout)."""
    pass


def is_transient_store_error(exc: BaseException) -> bool:
    return isinstance(exc, TransientStoreError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Store(ABC):
    """Async persistence contract."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise StoreError if the backing store is unreachable."""

    @abstractmethod
    async def upsert_thread(self, source_id: str, thread: ScrapedThread) -> ThreadHandle:
        """Create the thread on first sight; refresh title and scrape time otherwise."""

    @abstractmethod
    async def find_posts_by_external_ids(self, thread_id: int, external_ids: list[str]) -> list[ExistingPost]:
        ...

    @abstractmethod
    async def insert_posts_batch(self, thread_id: int, writes: list[PostWrite]) -> list[str]:
        """
        Insert posts and their cases in one transaction.

        Posts whose external id already exists are skipped along with their
        case. Returns the external ids actually inserted.
        """

    @abstractmethod
    async def update_posts_batch(self, thread_id: int, writes: list[PostWrite]) -> list[str]:
        """
        Update changed posts and reconcile their cases in one transaction.

        A write carrying a case upserts it; a write without one deletes any
        case stored for that post. Returns the external ids updated.
        """

    @abstractmethod
    async def upsert_extracted_case(self, post_id: int, case: CaseRecord) -> None:
        ...

    @abstractmethod
    async def update_thread_progress(self, thread_id: int, last_scraped_page: int, total_pages: int) -> None:
        ...

    @abstractmethod
    async def create_scrape_run(self, source_id: str, config: dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def update_scrape_run(
        self,
        run_id: int,
        status: RunStatus,
        stats: ScrapeStats,
        error_message: Optional[str] = None,
        error_details: Optional[dict[str, Any]] = None,
    ) -> None:
        ...

    async def close(self) -> None:
        return None


# =============================================================================
# In-memory implementation
# =============================================================================

@dataclass
class ThreadRow:
    id: int
    source_id: str
    external_id: str
    url: str
    title: str
    author_name: Optional[str] = None
    posted_at: Optional[datetime] = None
    last_scraped_page: int = 0
    total_pages: int = 0
    last_scraped_at: Optional[datetime] = None


@dataclass
class PostRow:
    id: int
    thread_id: int
    external_id: str
    content: str
    content_hash: str
    page_number: int
    author_name: Optional[str] = None
    posted_at: Optional[datetime] = None
    scraped_at: Optional[datetime] = None


@dataclass
class RunRow:
    id: int
    source_id: str
    status: RunStatus
    config: dict[str, Any]
    started_at: datetime
    completed_at: Optional[datetime] = None
    stats: ScrapeStats = field(default_factory=ScrapeStats)
    error_message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None


class MemoryStore(Store):
    """Dict-backed store. Batch methods apply all-or-nothing."""

    def __init__(self):
        self.threads: dict[int, ThreadRow] = {}
        self.posts: dict[int, PostRow] = {}
        self.cases: dict[int, CaseRecord] = {}
        self.runs: dict[int, RunRow] = {}
        self._next_id = {'thread': 1, 'post': 1, 'run': 1}

    def _new_id(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    def _post_by_external_id(self, thread_id: int, external_id: str) -> Optional[PostRow]:
        for row in self.posts.values():
            if row.thread_id == thread_id and row.external_id == external_id:
                return row
        return None

    def _require_thread(self, thread_id: int) -> ThreadRow:
        row = self.threads.get(thread_id)
        if row is None:
            raise StoreError(f"Unknown thread id {thread_id}")
        return row

    async def ping(self) -> None:
        return None

    async def upsert_thread(self, source_id: str, thread: ScrapedThread) -> ThreadHandle:
        for row in self.threads.values():
            if row.source_id == source_id and row.external_id == thread.external_id:
                row.title = thread.title
                row.last_scraped_at = utcnow()
                break
        else:
            row = ThreadRow(
                id=self._new_id('thread'),
                source_id=source_id,
                external_id=thread.external_id,
                url=thread.url,
                title=thread.title,
                author_name=thread.author_name,
                posted_at=thread.posted_at,
            )
            self.threads[row.id] = row
        return ThreadHandle(id=row.id, last_scraped_page=row.last_scraped_page, total_pages=row.total_pages)

    async def find_posts_by_external_ids(self, thread_id: int, external_ids: list[str]) -> list[ExistingPost]:
        wanted = set(external_ids)
        return [
            ExistingPost(id=row.id, external_id=row.external_id, content_hash=row.content_hash)
            for row in self.posts.values()
            if row.thread_id == thread_id and row.external_id in wanted
        ]

    async def insert_posts_batch(self, thread_id: int, writes: list[PostWrite]) -> list[str]:
        self._require_thread(thread_id)
        inserted = []
        seen = set()
        for write in writes:
            external_id = write.post.external_id
            if external_id in seen or self._post_by_external_id(thread_id, external_id):
                continue
            seen.add(external_id)
            row = PostRow(
                id=self._new_id('post'),
                thread_id=thread_id,
                external_id=external_id,
                content=write.post.content,
                content_hash=write.content_hash,
                page_number=write.post.page_number,
                author_name=write.post.author_name,
                posted_at=write.post.posted_at,
                scraped_at=utcnow(),
            )
            self.posts[row.id] = row
            if write.case is not None:
                self.cases[row.id] = replace(write.case)
            inserted.append(external_id)
        return inserted

    async def update_posts_batch(self, thread_id: int, writes: list[PostWrite]) -> list[str]:
        self._require_thread(thread_id)
        rows = [self._post_by_external_id(thread_id, w.post.external_id) for w in writes]
        updated = []
        for write, row in zip(writes, rows):
            if row is None:
                continue
            row.content = write.post.content
            row.content_hash = write.content_hash
            row.page_number = write.post.page_number
            if write.post.posted_at is not None:
                row.posted_at = write.post.posted_at
            row.scraped_at = utcnow()
            if write.case is not None:
                self.cases[row.id] = replace(write.case)
            else:
                self.cases.pop(row.id, None)
            updated.append(write.post.external_id)
        return updated

    async def upsert_extracted_case(self, post_id: int, case: CaseRecord) -> None:
        if post_id not in self.posts:
            raise StoreError(f"Unknown post id {post_id}")
        self.cases[post_id] = replace(case)

    async def update_thread_progress(self, thread_id: int, last_scraped_page: int, total_pages: int) -> None:
        row = self._require_thread(thread_id)
        row.last_scraped_page = last_scraped_page
        row.total_pages = total_pages
        row.last_scraped_at = utcnow()

    async def create_scrape_run(self, source_id: str, config: dict[str, Any]) -> int:
        run_id = self._new_id('run')
        self.runs[run_id] = RunRow(
            id=run_id,
            source_id=source_id,
            status=RunStatus.RUNNING,
            config=dict(config),
            started_at=utcnow(),
        )
        return run_id

    async def update_scrape_run(
        self,
        run_id: int,
        status: RunStatus,
        stats: ScrapeStats,
        error_message: Optional[str] = None,
        error_details: Optional[dict[str, Any]] = None,
    ) -> None:
        row = self.runs.get(run_id)
        if row is None:
            raise StoreError(f"Unknown scrape run id {run_id}")
        row.status = status
        row.stats = replace(stats)
        row.error_message = error_message
        row.error_details = error_details
        if status is not RunStatus.RUNNING:
            row.completed_at = utcnow()
