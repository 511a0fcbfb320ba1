"""
Streaming ingestion of crawled pages.

For each page delivered by the crawler:
1. Drop posts older than the run's `since` filter (undated posts are kept)
2. Hash each cleaned body and look up existing posts by external id
3. Classify: new (insert), changed (update + re-extract), unchanged (skip)
4. Extract cases for new/changed posts; keep only accepted ones
5. Write in bounded batches, each batch one transaction, with retry

Progress reports from the crawler are checkpointed every N pages and once
more when the thread ends. The stored cursor never moves backwards.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog

from extraction import ExtractionResult, extract_case
from forum.hasher import hash_content
from forum.retry import CHECKPOINT_RETRY, WRITE_RETRY, RetryPolicy, retry_async
from schema import PageBatch, PostWrite, ScrapedPost, ScrapeProgress, ThreadHandle
from .store import Store, is_transient_store_error

log = structlog.get_logger(__name__)


@dataclass
class IngestStats:
    pages: int = 0
    posts_found: int = 0
    posts_filtered: int = 0
    posts_new: int = 0
    posts_changed: int = 0
    posts_unchanged: int = 0
    cases_extracted: int = 0
    cases_removed: int = 0

    @property
    def posts_scraped(self) -> int:
        return self.posts_new + self.posts_changed

    def to_dict(self) -> dict:
        return dict(asdict(self), posts_scraped=self.posts_scraped)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class IngestionPipeline:
    """Per-thread consumer for crawler page and progress callbacks."""

    def __init__(
        self,
        store: Store,
        thread: ThreadHandle,
        batch_size: int = 50,
        checkpoint_every: int = 10,
        since: Optional[datetime] = None,
        extractor: Callable[[str], ExtractionResult] = extract_case,
        write_policy: RetryPolicy = WRITE_RETRY,
        checkpoint_policy: RetryPolicy = CHECKPOINT_RETRY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if checkpoint_every < 1:
            raise ValueError("checkpoint_every must be >= 1")
        self.store = store
        self.thread = thread
        self.batch_size = batch_size
        self.checkpoint_every = checkpoint_every
        self.since = _as_utc(since) if since else None
        self.extractor = extractor
        self.write_policy = write_policy
        self.checkpoint_policy = checkpoint_policy
        self.sleep = sleep
        self.stats = IngestStats()

        self._checkpoint_page = thread.last_scraped_page
        self._checkpoint_total = thread.total_pages
        self._latest: Optional[ScrapeProgress] = None
        self._pages_since_checkpoint = 0

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _write(self, fn, label: str):
        return await retry_async(
            fn,
            self.write_policy,
            is_retryable=is_transient_store_error,
            sleep=self.sleep,
            label=label,
        )

    def _is_current(self, post: ScrapedPost) -> bool:
        if self.since is None or post.posted_at is None:
            return True
        return _as_utc(post.posted_at) >= self.since

    def _build_write(self, post: ScrapedPost, content_hash: str) -> PostWrite:
        result = self.extractor(post.content)
        case = result.to_case() if result.accepted else None
        return PostWrite(post=post, content_hash=content_hash, case=case)

    async def on_page(self, batch: PageBatch) -> None:
        """Persist one page of posts. Store errors propagate once retries are spent."""
        self.stats.pages += 1
        self.stats.posts_found += len(batch.posts)

        current = []
        seen = set()
        for post in batch.posts:
            if not self._is_current(post):
                self.stats.posts_filtered += 1
                continue
            if post.external_id in seen:
                continue
            seen.add(post.external_id)
            current.append(post)

        if not current:
            return

        hashes = {post.external_id: hash_content(post.content) for post in current}
        existing = await self._write(
            lambda: self.store.find_posts_by_external_ids(self.thread.id, list(hashes)),
            'find_posts',
        )
        known = {row.external_id: row.content_hash for row in existing}

        new_writes = []
        changed_writes = []
        for post in current:
            content_hash = hashes[post.external_id]
            if post.external_id not in known:
                new_writes.append(self._build_write(post, content_hash))
            elif known[post.external_id] != content_hash:
                changed_writes.append(self._build_write(post, content_hash))
            else:
                self.stats.posts_unchanged += 1

        for chunk in _chunks(new_writes, self.batch_size):
            inserted = set(await self._write(
                lambda chunk=chunk: self.store.insert_posts_batch(self.thread.id, chunk),
                'insert_posts',
            ))
            self.stats.posts_new += len(inserted)
            self.stats.cases_extracted += sum(
                1 for w in chunk if w.case is not None and w.post.external_id in inserted
            )

        for chunk in _chunks(changed_writes, self.batch_size):
            updated = set(await self._write(
                lambda chunk=chunk: self.store.update_posts_batch(self.thread.id, chunk),
                'update_posts',
            ))
            self.stats.posts_changed += len(updated)
            for write in chunk:
                if write.post.external_id not in updated:
                    continue
                if write.case is not None:
                    self.stats.cases_extracted += 1
                else:
                    self.stats.cases_removed += 1

        log.debug(
            'page_ingested',
            page=batch.page_number,
            new=len(new_writes),
            changed=len(changed_writes),
            unchanged=self.stats.posts_unchanged,
        )

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def on_progress(self, progress: ScrapeProgress) -> None:
        self._latest = progress
        self._pages_since_checkpoint += 1
        if self._pages_since_checkpoint >= self.checkpoint_every:
            await self.checkpoint()

    async def checkpoint(self, progress: Optional[ScrapeProgress] = None) -> bool:
        """
        Durably record the resume cursor.

        Returns True if a write happened. A failed checkpoint is logged and
        swallowed; the worst case is re-scraping a few deduplicated pages.
        """
        progress = progress or self._latest
        if progress is None:
            return False
        self._pages_since_checkpoint = 0

        cursor = max(progress.last_scraped_page, self._checkpoint_page)
        total = max(progress.total_pages, cursor, self._checkpoint_total)
        if cursor == self._checkpoint_page and total == self._checkpoint_total:
            return False

        try:
            await retry_async(
                lambda: self.store.update_thread_progress(self.thread.id, cursor, total),
                self.checkpoint_policy,
                is_retryable=is_transient_store_error,
                sleep=self.sleep,
                label='checkpoint',
            )
        except Exception as exc:
            log.error('checkpoint_failed', thread_id=self.thread.id, page=cursor, error=str(exc)[:200])
            return False

        self._checkpoint_page = cursor
        self._checkpoint_total = total
        log.debug('checkpoint', thread_id=self.thread.id, last_scraped_page=cursor, total_pages=total)
        return True

    @property
    def checkpointed_page(self) -> int:
        return self._checkpoint_page
