"""
Configuration and thresholds for the forum crawl layer.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal, Union
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .pagination import strip_session_id


# Browser identity (kept stable so consent cookies survive within a context)
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

VIEWPORT = {'width': 1280, 'height': 800}
LOCALE = 'en-GB'
TIMEZONE_ID = 'Europe/London'

# Chromium flags for container hosts
LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-accelerated-2d-canvas',
    '--disable-gpu',
]

# Resource types aborted at the network layer
BLOCKED_RESOURCE_TYPES = ('image', 'font', 'media')

# Post container selector shared by the driver (wait) and the extractor (parse)
POST_SELECTOR = 'div.post, div[id^="p"]'

MAX_CONSECUTIVE_FAILURES = 5
MIN_POST_LENGTH = 30


class ConfigError(ValueError):
    """Raised when a source or adapter configuration is invalid."""
    pass


@dataclass
class CrawlConfig:
    """Configuration for a paginated thread crawl."""

    # Browser settings
    headless: bool = True
    block_resources: bool = True

    # Timeouts (seconds)
    page_timeout: float = 45.0  # navigation + extraction budget per page
    navigation_timeout: float = 30.0
    selector_timeout: float = 15.0
    navigation_attempts: int = 3

    # Failure ceiling
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES

    # Rate limiting between pages (seconds)
    jitter_min: float = 3.0
    jitter_max: float = 6.0

    def __post_init__(self):
        if self.jitter_min < 0 or self.jitter_max < self.jitter_min:
            raise ConfigError(
                f"Invalid jitter range: {self.jitter_min}-{self.jitter_max}"
            )
        if self.max_consecutive_failures < 1:
            raise ConfigError("max_consecutive_failures must be >= 1")
        if self.page_timeout <= 0:
            raise ConfigError("page_timeout must be positive")


@dataclass(frozen=True)
class PhpBBConfig:
    """Adapter configuration for a single tracked phpBB topic."""

    thread_url: str
    kind: Literal['phpbb'] = 'phpbb'
    posts_per_page: int = 25
    thread_title: str = ''
    thread_posted_at: datetime | None = None
    source_timezone: str = TIMEZONE_ID

    def __post_init__(self):
        parsed = urlparse(self.thread_url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigError(f"thread_url must be an absolute http(s) URL: {self.thread_url!r}")
        if not isinstance(self.posts_per_page, int) or self.posts_per_page < 1:
            raise ConfigError(f"posts_per_page must be a positive integer: {self.posts_per_page!r}")
        try:
            ZoneInfo(self.source_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown source_timezone: {self.source_timezone!r}") from exc
        # frozen: bypass __setattr__ to store the cleaned URL
        object.__setattr__(self, 'thread_url', strip_session_id(self.thread_url))


AdapterConfig = Union[PhpBBConfig]

_CONFIG_KINDS: dict[str, type] = {
    'phpbb': PhpBBConfig,
}


def parse_adapter_config(raw: dict) -> AdapterConfig:
    """
    Build a typed adapter config from a raw mapping (YAML/JSON).

    The mapping must carry a 'kind' tag naming the adapter variant.
    Unknown keys are rejected so typos surface at load time.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"Adapter config must be a mapping, got {type(raw).__name__}")

    kind = raw.get('kind')
    config_cls = _CONFIG_KINDS.get(kind)
    if config_cls is None:
        raise ConfigError(
            f"Unknown adapter kind {kind!r} (known: {', '.join(sorted(_CONFIG_KINDS))})"
        )

    known = set(config_cls.__dataclass_fields__)
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown {kind} config keys: {', '.join(sorted(unknown))}")

    values = dict(raw)
    posted = values.get('thread_posted_at')
    if isinstance(posted, date) and not isinstance(posted, datetime):
        # YAML loads bare dates as datetime.date
        values['thread_posted_at'] = datetime(posted.year, posted.month, posted.day)
    elif isinstance(posted, str):
        try:
            values['thread_posted_at'] = datetime.fromisoformat(posted)
        except ValueError as exc:
            raise ConfigError(f"thread_posted_at is not ISO 8601: {posted!r}") from exc

    try:
        return config_cls(**values)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc


@dataclass
class BrowserContextOptions:
    """Options passed to browser.new_context()."""
    user_agent: str = USER_AGENT
    viewport: dict = field(default_factory=lambda: dict(VIEWPORT))
    locale: str = LOCALE
    timezone_id: str = TIMEZONE_ID

    def as_kwargs(self) -> dict:
        return {
            'user_agent': self.user_agent,
            'viewport': self.viewport,
            'locale': self.locale,
            'timezone_id': self.timezone_id,
        }
