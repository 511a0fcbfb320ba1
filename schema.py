"""
Schema definitions for the forum case harvester.

This defines the data structures for:
- Threads and posts as they come off the source forum
- Persistence handles returned by the store
- Rows written back to the store (posts with their derived cases)
- Run-level statistics and status values
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Optional


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Outcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"
    UNKNOWN = "unknown"


@dataclass
class ScrapedThread:
    """A discussion thread as reported by a source adapter."""
    external_id: str
    url: str  # canonical, session id stripped
    title: str
    author_name: Optional[str] = None
    posted_at: Optional[datetime] = None


@dataclass
class ScrapedPost:
    """One normalized post (quote-stripped plain text body)."""
    external_id: str
    content: str
    page_number: int
    author_name: Optional[str] = None
    posted_at: Optional[datetime] = None


@dataclass
class ScrapeProgress:
    """Resume cursor report: last durably scraped page and known total."""
    last_scraped_page: int
    total_pages: int


@dataclass
class PageBatch:
    """All posts harvested from a single page of a thread."""
    page_number: int
    total_pages: int
    posts: list[ScrapedPost] = field(default_factory=list)


@dataclass
class ThreadHandle:
    """Persisted view of a thread, returned by Store.upsert_thread()."""
    id: int
    last_scraped_page: int = 0
    total_pages: int = 0


@dataclass
class ExistingPost:
    id: int
    external_id: str
    content_hash: str


@dataclass
class PostWrite:
    """A post plus its extracted case, written together in one transaction.

    case is None when extraction confidence did not clear the acceptance
    threshold.
    """
    post: ScrapedPost
    content_hash: str
    case: Optional["CaseRecord"] = None


@dataclass
class CaseRecord:
    """Structured case fields as persisted alongside a post."""
    confidence: float
    extractor_version: str
    extracted_at: datetime
    application_type: Optional[str] = None
    application_route: Optional[str] = None
    application_date: Optional[date] = None
    biometrics_date: Optional[date] = None
    decision_date: Optional[date] = None
    waiting_days: Optional[int] = None
    service_center: Optional[str] = None
    outcome: str = Outcome.UNKNOWN.value
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScrapeStats:
    """Counters finalized on the ScrapeRun at termination."""
    threads_found: int = 0
    threads_scraped: int = 0
    posts_found: int = 0
    posts_scraped: int = 0
    cases_extracted: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
