"""
Source adapter registry.

Adapters are keyed by the 'kind' tag of their typed configuration:

    adapter = get_adapter('immigrationboards', PhpBBConfig(thread_url=...))
"""

from ..config import AdapterConfig, CrawlConfig
from .base import GetPostsResult, SourceAdapter, ThreadFilter
from .phpbb import PhpBBAdapter


ADAPTERS: dict[str, type[SourceAdapter]] = {
    PhpBBAdapter.kind: PhpBBAdapter,
}


def get_adapter(name: str, config: AdapterConfig, crawl_config: CrawlConfig | None = None) -> SourceAdapter:
    """Instantiate the adapter matching config.kind."""
    adapter_cls = ADAPTERS.get(config.kind)
    if adapter_cls is None:
        raise KeyError(f"No adapter registered for kind {config.kind!r}")
    return adapter_cls(name, config, crawl_config=crawl_config)


def list_adapters() -> list[str]:
    return sorted(ADAPTERS)


__all__ = [
    'ADAPTERS',
    'GetPostsResult',
    'PhpBBAdapter',
    'SourceAdapter',
    'ThreadFilter',
    'get_adapter',
    'list_adapters',
]
