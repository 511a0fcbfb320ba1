"""
Runtime settings and the source catalogue.

Settings come from the environment; sources come from
profiles/sources.yaml.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import yaml

from forum.config import AdapterConfig, ConfigError, CrawlConfig, parse_adapter_config


# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
SOURCES_FILE = PROJECT_ROOT / "profiles" / "sources.yaml"

DEFAULT_JITTER_MIN_MS = 3000
DEFAULT_JITTER_MAX_MS = 6000
DEFAULT_CHECKPOINT_EVERY = 10
DEFAULT_INGEST_BATCH_SIZE = 50

_FALSE_VALUES = {'0', 'false', 'no', 'off'}

SOURCE_KEYS = {'adapter', 'display_name', 'active'}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class Settings:
    """Process-level settings read once at startup."""
    database_url: Optional[str] = None
    jitter_min_ms: int = DEFAULT_JITTER_MIN_MS
    jitter_max_ms: int = DEFAULT_JITTER_MAX_MS
    headless: bool = True
    log_level: str = 'INFO'
    log_format: str = 'console'
    checkpoint_every: int = DEFAULT_CHECKPOINT_EVERY
    ingest_batch_size: int = DEFAULT_INGEST_BATCH_SIZE

    def __post_init__(self):
        if self.jitter_min_ms < 0 or self.jitter_max_ms < self.jitter_min_ms:
            raise ConfigError(
                f"Invalid jitter range: {self.jitter_min_ms}-{self.jitter_max_ms} ms"
            )
        if self.checkpoint_every < 1:
            raise ConfigError("CHECKPOINT_EVERY must be >= 1")
        if self.ingest_batch_size < 1:
            raise ConfigError("INGEST_BATCH_SIZE must be >= 1")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            database_url=env.get('DATABASE_URL') or None,
            jitter_min_ms=_env_int(env, 'SCRAPE_JITTER_MIN', DEFAULT_JITTER_MIN_MS),
            jitter_max_ms=_env_int(env, 'SCRAPE_JITTER_MAX', DEFAULT_JITTER_MAX_MS),
            headless=env.get('HEADLESS', 'true').strip().lower() not in _FALSE_VALUES,
            log_level=env.get('LOG_LEVEL', 'INFO'),
            log_format=env.get('LOG_FORMAT', 'console'),
            checkpoint_every=_env_int(env, 'CHECKPOINT_EVERY', DEFAULT_CHECKPOINT_EVERY),
            ingest_batch_size=_env_int(env, 'INGEST_BATCH_SIZE', DEFAULT_INGEST_BATCH_SIZE),
        )

    @property
    def jitter_min(self) -> float:
        return self.jitter_min_ms / 1000

    @property
    def jitter_max(self) -> float:
        return self.jitter_max_ms / 1000

    def crawl_config(self) -> CrawlConfig:
        return CrawlConfig(
            headless=self.headless,
            jitter_min=self.jitter_min,
            jitter_max=self.jitter_max,
        )


@dataclass
class SourceForum:
    """One entry of the source catalogue."""
    name: str
    adapter: AdapterConfig
    display_name: str = ''
    active: bool = True

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.name


def _parse_source(name: str, entry) -> SourceForum:
    if not isinstance(entry, dict):
        raise ConfigError(f"Source {name!r} must be a mapping")
    if 'adapter' not in entry:
        raise ConfigError(f"Source {name!r} has no adapter config")
    try:
        adapter = parse_adapter_config(entry['adapter'])
    except ConfigError as exc:
        raise ConfigError(f"Source {name!r}: {exc}") from exc

    unknown = sorted(set(entry) - SOURCE_KEYS)
    if unknown:
        raise ConfigError(f"Source {name!r}: unknown keys: {', '.join(unknown)}")
    return SourceForum(
        name=name,
        adapter=adapter,
        display_name=str(entry.get('display_name') or name),
        active=bool(entry.get('active', True)),
    )


def load_sources(path: Optional[Path] = None) -> dict[str, SourceForum]:
    """
    Load the source catalogue from YAML.

    Expected shape:
        sources:
          immigrationboards:
            display_name: ...
            active: true
            adapter: {kind: phpbb, thread_url: ...}

    Raises:
        FileNotFoundError: catalogue missing
        ConfigError: malformed entry (message names the source)
    """
    p = Path(path) if path else SOURCES_FILE
    if not p.exists():
        raise FileNotFoundError(f"Source catalogue not found: {p}")

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{p}: expected a mapping at top level")
    entries = data.get('sources') or {}
    if not isinstance(entries, dict):
        raise ConfigError(f"{p}: 'sources' must be a mapping of name -> entry")

    return {str(name): _parse_source(str(name), entry) for name, entry in entries.items()}
