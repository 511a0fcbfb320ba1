#!/usr/bin/env python3
"""
Forum case harvester CLI.

Commands:
    run --source NAME [--since DATE] [--max-threads N] [--dry-run] [--no-resume]
    list-sources
    scheduled        all active sources, posts from the last 24h

Environment: DATABASE_URL, SCRAPE_JITTER_MIN/MAX (ms), HEADLESS,
LOG_LEVEL, LOG_FORMAT, CHECKPOINT_EVERY, INGEST_BATCH_SIZE.
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

# Add parent dir to path for project packages
sys.path.insert(0, str(Path(__file__).parent.parent))

from forum.adapters import ADAPTERS, get_adapter, list_adapters
from forum.config import ConfigError
from forum.crawler import CancelToken
from pipeline.config import Settings, SourceForum, load_sources
from pipeline.log import setup_logging
from pipeline.runner import RunOptions, ScrapeRunner
from pipeline.sql_store import SQLStore
from pipeline.store import Store

log = structlog.get_logger("scrape")


def parse_since(value: str) -> datetime:
    """argparse type for --since (ISO 8601 date or datetime)."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid --since date: {value!r}. Use ISO format (e.g. 2025-01-01)"
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def install_signal_handlers(cancel: CancelToken) -> None:
    """First SIGINT/SIGTERM requests a graceful stop; later ones are ignored."""
    loop = asyncio.get_running_loop()

    def handle(signame: str) -> None:
        if cancel.cancelled:
            return
        log.warning('shutdown_requested', signal=signame)
        cancel.cancel(f"{signame} received")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle, sig.name)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass


async def open_store(settings: Settings, dry_run: bool) -> Optional[Store]:
    if dry_run:
        return None
    if not settings.database_url:
        raise ConfigError("Missing required environment variable: DATABASE_URL")
    store = SQLStore.from_url(settings.database_url)
    await asyncio.to_thread(store.create_tables)
    return store


async def scrape_source(
    source: SourceForum,
    settings: Settings,
    options: RunOptions,
    store: Optional[Store],
    cancel: CancelToken,
):
    adapter = get_adapter(source.name, source.adapter, settings.crawl_config())
    runner = ScrapeRunner(store, settings=settings, cancel=cancel)
    try:
        return await runner.run_scrape(source, adapter, options)
    finally:
        await runner.cleanup()


# =============================================================================
# Commands
# =============================================================================

async def cmd_run(args, settings: Settings, sources: dict[str, SourceForum], cancel: CancelToken) -> int:
    source = sources.get(args.source)
    if source is None:
        print(f"Source not found: {args.source!r}", file=sys.stderr)
        print(f"Configured sources: {', '.join(sorted(sources)) or '(none)'}", file=sys.stderr)
        return 1
    if not source.active:
        log.warning('source_inactive', source=source.name)

    options = RunOptions(
        since=args.since,
        max_threads=args.max_threads,
        dry_run=args.dry_run,
        resume=args.resume,
    )

    print("=" * 40)
    print("Forum case harvester - scrape run")
    print("=" * 40)
    print(f"Source:      {source.name}")
    print(f"Since:       {args.since.isoformat() if args.since else 'all time'}")
    print(f"Max threads: {args.max_threads or 'unlimited'}")
    print(f"Dry run:     {args.dry_run}")
    print(f"Resume:      {args.resume}")
    print("=" * 40)

    store = await open_store(settings, args.dry_run)
    try:
        stats = await scrape_source(source, settings, options, store, cancel)
    finally:
        if store is not None:
            await store.close()

    print(f"\nScrape stats: {stats.to_dict()}")
    if cancel.cancelled:
        print("Scrape stopped early (shutdown requested)")
        return 1
    return 0


async def cmd_list_sources(args, settings: Settings, sources: dict[str, SourceForum], cancel: CancelToken) -> int:
    print("\nConfigured sources:")
    print("-------------------")
    if not sources:
        print("  (none)")
    for source in sources.values():
        mark = '✓' if source.active else '✗'
        status = 'active' if source.active else 'inactive'
        adapter = 'adapter found' if source.adapter.kind in ADAPTERS else 'NO ADAPTER'
        print(f"  {mark} {source.name} ({source.display_name})")
        print(f"    Kind: {source.adapter.kind} | Status: {status} | {adapter}")
    print(f"\nAvailable adapters: {', '.join(list_adapters())}\n")
    return 0


async def cmd_scheduled(args, settings: Settings, sources: dict[str, SourceForum], cancel: CancelToken) -> int:
    active = [s for s in sources.values() if s.active]
    log.info('scheduled_start', sources=len(active))
    if not active:
        print("No active sources to scrape.")
        return 0

    since = datetime.now(timezone.utc) - timedelta(hours=24)
    had_errors = False
    store = await open_store(settings, dry_run=False)
    try:
        for source in active:
            if cancel.cancelled:
                break
            try:
                await scrape_source(source, settings, RunOptions(since=since), store, cancel)
            except Exception as exc:
                log.error('source_failed', source=source.name, error=str(exc)[:500])
                had_errors = True
    finally:
        await store.close()

    print(f"\nScheduled scrape completed{' (with errors)' if had_errors else ''}")
    return 1 if had_errors or cancel.cancelled else 0


COMMANDS = {
    'run': cmd_run,
    'list-sources': cmd_list_sources,
    'scheduled': cmd_scheduled,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Harvest settlement case timelines from forum threads")
    parser.add_argument("--sources-file", type=Path, default=None,
                        help="Source catalogue (default: profiles/sources.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the scraper for one source")
    run.add_argument("-s", "--source", required=True, help="Source name to scrape")
    run.add_argument("--since", type=parse_since, default=None,
                     help="Only store posts made since this date (ISO format)")
    run.add_argument("--max-threads", type=int, default=None, help="Maximum number of threads to scrape")
    run.add_argument("--dry-run", action="store_true", help="Run without writing to the database")
    run.add_argument("--no-resume", dest="resume", action="store_false",
                     help="Start from page 1 instead of the saved resume page")

    sub.add_parser("list-sources", help="List configured sources and adapters")
    sub.add_parser("scheduled", help="Scrape all active sources (last 24h)")
    return parser


async def main_async(args, settings: Settings) -> int:
    cancel = CancelToken()
    install_signal_handlers(cancel)
    try:
        sources = load_sources(args.sources_file)
    except (FileNotFoundError, ConfigError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        return await COMMANDS[args.command](args, settings, sources, cancel)
    except (ConfigError, SQLAlchemyError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        log.error('scrape_failed', error=str(exc)[:500], error_type=type(exc).__name__)
        return 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
        setup_logging(settings.log_level, settings.log_format)
    except (ConfigError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return asyncio.run(main_async(args, settings))


if __name__ == "__main__":
    sys.exit(main())
