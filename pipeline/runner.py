"""
Scrape run orchestration: one source, its threads, one ScrapeRun record.

Failure policy:
- Setup failures (store unreachable, browser cannot launch) propagate
- Per-thread failures are logged, recorded on the run and skipped
- The ScrapeRun always ends completed or failed, including on shutdown
"""

from __future__ import annotations

import random
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from extraction import EXTRACTOR_VERSION
from forum.adapters import GetPostsResult, SourceAdapter, ThreadFilter
from forum.config import ConfigError
from forum.crawler import CancelToken, StopReason
from forum.retry import FINALIZE_RETRY, WRITE_RETRY, retry_async
from forum.session import SessionLaunchError
from schema import RunStatus, ScrapedThread, ScrapeStats
from .config import Settings, SourceForum
from .ingest import IngestionPipeline
from .store import MemoryStore, Store, is_transient_store_error

log = structlog.get_logger(__name__)


@dataclass
class RunOptions:
    since: Optional[datetime] = None
    max_threads: Optional[int] = None
    dry_run: bool = False
    resume: bool = True

    def to_config(self) -> dict[str, Any]:
        """Run configuration snapshot stored on the ScrapeRun."""
        return {
            'since': self.since.isoformat() if self.since else None,
            'max_threads': self.max_threads,
            'resume': self.resume,
            'dry_run': self.dry_run,
            'extractor_version': EXTRACTOR_VERSION,
        }


class ScrapeRunner:
    """Runs scrapes against a store and releases adapters afterwards."""

    def __init__(
        self,
        store: Optional[Store],
        settings: Optional[Settings] = None,
        cancel: Optional[CancelToken] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.cancel = cancel or CancelToken()
        self.rng = rng or random.Random()
        self._adapters: list[SourceAdapter] = []

    def _jitter(self) -> float:
        return self.rng.uniform(self.settings.jitter_min, self.settings.jitter_max)

    async def run_scrape(self, source: SourceForum, adapter: SourceAdapter, options: RunOptions) -> ScrapeStats:
        """
        Scrape every thread the adapter reports for source.

        Args:
            source: Catalogue entry (its name is the store's source id)
            adapter: Adapter built for the source
            options: since / max_threads / dry_run / resume

        Returns:
            Final run counters

        Raises:
            ConfigError: no store configured for a non-dry run
            StoreError: store unreachable at startup
            SessionLaunchError: browser could not be launched
        """
        if options.dry_run:
            store: Store = MemoryStore()
        elif self.store is None:
            raise ConfigError("DATABASE_URL is required unless --dry-run is set")
        else:
            store = self.store

        if adapter not in self._adapters:
            self._adapters.append(adapter)

        try:
            await store.ping()
            run_id = await store.create_scrape_run(source.name, options.to_config())
        except BaseException:
            await self.cleanup()
            raise
        log.info('run_started', source=source.name, run_id=run_id, **options.to_config())

        stats = ScrapeStats()
        thread_errors: list[dict[str, Any]] = []
        finalized = False
        try:
            threads = await adapter.get_threads(ThreadFilter(since=options.since, max_threads=options.max_threads))
            stats.threads_found = len(threads)
            log.info('threads_found', source=source.name, count=len(threads))

            for index, thread in enumerate(threads):
                if self.cancel.cancelled:
                    break
                if index > 0 and await self.cancel.sleep(self._jitter()):
                    break

                log.info('thread_start', n=f"{index + 1}/{len(threads)}", thread=thread.external_id,
                         title=thread.title[:50])
                try:
                    result = await self._scrape_thread(store, source, adapter, thread, options, stats)
                except SessionLaunchError:
                    raise
                except Exception as exc:
                    log.error('thread_failed', thread=thread.external_id, error=str(exc)[:500])
                    thread_errors.append({'thread': thread.external_id, 'error': str(exc)[:500]})
                    continue

                if result.stop_reason is StopReason.CANCELLED:
                    break
                stats.threads_scraped += 1
                if not result.completed:
                    thread_errors.append({
                        'thread': thread.external_id,
                        'stop_reason': result.stop_reason.value,
                        'error': result.error,
                        'last_scraped_page': result.final_progress.last_scraped_page,
                    })

            details = {'threads': thread_errors} if thread_errors else None
            if self.cancel.cancelled:
                message = f"Scrape cancelled: {self.cancel.reason or 'shutdown requested'}"
                await self._finalize(store, run_id, RunStatus.FAILED, stats, message, details)
            else:
                await self._finalize(store, run_id, RunStatus.COMPLETED, stats, None, details)
            finalized = True
            log.info('run_finished', source=source.name, run_id=run_id, **stats.to_dict())
            return stats

        except BaseException as exc:
            if not finalized:
                await self._finalize(
                    store, run_id, RunStatus.FAILED, stats,
                    str(exc) or type(exc).__name__,
                    {
                        'type': type(exc).__name__,
                        'traceback': traceback.format_exc(limit=20),
                        'threads': thread_errors,
                    },
                )
            raise
        finally:
            await self.cleanup()

    async def _scrape_thread(
        self,
        store: Store,
        source: SourceForum,
        adapter: SourceAdapter,
        thread: ScrapedThread,
        options: RunOptions,
        stats: ScrapeStats,
    ) -> GetPostsResult:
        handle = await retry_async(
            lambda: store.upsert_thread(source.name, thread),
            WRITE_RETRY,
            is_retryable=is_transient_store_error,
            label='upsert_thread',
        )

        start_page = 1
        if options.resume and handle.last_scraped_page > 0:
            # Resume on the cursor page itself; it may have been partial
            start_page = handle.last_scraped_page
            log.info('thread_resume', thread=thread.external_id, page=start_page)

        pipeline = IngestionPipeline(
            store,
            handle,
            batch_size=self.settings.ingest_batch_size,
            checkpoint_every=self.settings.checkpoint_every,
            since=options.since,
        )

        result: Optional[GetPostsResult] = None
        try:
            result = await adapter.get_posts(
                thread,
                start_from_page=start_page,
                on_page_data=pipeline.on_page,
                on_progress=pipeline.on_progress,
                cancel=self.cancel,
            )
        finally:
            await pipeline.checkpoint(result.final_progress if result else None)
            stats.posts_found += pipeline.stats.posts_found
            stats.posts_scraped += pipeline.stats.posts_scraped
            stats.cases_extracted += pipeline.stats.cases_extracted

        log.info(
            'thread_done',
            thread=thread.external_id,
            stop_reason=result.stop_reason.value,
            page_range=f"{start_page}-{result.final_progress.last_scraped_page} of {result.final_progress.total_pages}",
            **pipeline.stats.to_dict(),
        )
        return result

    async def _finalize(self, store, run_id, status, stats, error_message, error_details) -> None:
        try:
            await retry_async(
                lambda: store.update_scrape_run(run_id, status, stats, error_message, error_details),
                FINALIZE_RETRY,
                label='finalize_run',
            )
        except Exception as exc:
            log.error('run_finalize_failed', run_id=run_id, status=status.value, error=str(exc)[:200])

    async def cleanup(self) -> None:
        """Release every adapter's browser. Safe to call repeatedly."""
        adapters, self._adapters = self._adapters, []
        for adapter in adapters:
            try:
                await adapter.cleanup()
            except Exception as exc:
                log.warning('adapter_cleanup_failed', adapter=adapter.name, error=str(exc)[:200])


async def run_scrape(
    source: SourceForum,
    adapter: SourceAdapter,
    options: RunOptions,
    store: Optional[Store],
    settings: Optional[Settings] = None,
    cancel: Optional[CancelToken] = None,
) -> ScrapeStats:
    """One-shot wrapper around ScrapeRunner.run_scrape()."""
    runner = ScrapeRunner(store, settings=settings, cancel=cancel)
    return await runner.run_scrape(source, adapter, options)
