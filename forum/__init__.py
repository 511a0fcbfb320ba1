"""
Forum crawl layer: browser session, page extraction and paginated crawling.

Primary interface:
    from forum import CrawlController, BrowserSession

    session = BrowserSession(CrawlConfig())
    outcome = await CrawlController(session).crawl(thread_url, on_page=handle)

    # outcome carries stop_reason, last_good_page, total_pages
"""

from .config import ConfigError, CrawlConfig, PhpBBConfig, parse_adapter_config
from .crawler import CancelToken, CrawlController, CrawlOutcome, StopReason
from .hasher import hash_content
from .page_extractor import extract_posts
from .session import BrowserSession, PageLoadError, SessionLaunchError, is_session_fatal


__all__ = [
    'BrowserSession',
    'CancelToken',
    'ConfigError',
    'CrawlConfig',
    'CrawlController',
    'CrawlOutcome',
    'PageLoadError',
    'PhpBBConfig',
    'SessionLaunchError',
    'StopReason',
    'extract_posts',
    'hash_content',
    'is_session_fatal',
    'parse_adapter_config',
]
