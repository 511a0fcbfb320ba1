"""
Ingestion and run orchestration.

Primary interface:
    from pipeline import ScrapeRunner, RunOptions

    runner = ScrapeRunner(store, settings)
    stats = await runner.run_scrape(source, adapter, RunOptions(resume=True))
"""

from .config import Settings, SourceForum, load_sources
from .ingest import IngestionPipeline, IngestStats
from .runner import RunOptions, ScrapeRunner, run_scrape
from .store import MemoryStore, Store, StoreError, TransientStoreError


__all__ = [
    'IngestStats',
    'IngestionPipeline',
    'MemoryStore',
    'RunOptions',
    'ScrapeRunner',
    'Settings',
    'SourceForum',
    'Store',
    'StoreError',
    'TransientStoreError',
    'load_sources',
    'run_scrape',
]
