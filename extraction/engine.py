"""
Confidence-scored case extraction from a post body.

extract_case() is pure: no I/O, deterministic for a given body, rule
version and reference date. Evidence is accumulated on a 10 point scale:

    route phrase          2.0     application date      1.5
    decision date         1.5     plausible wait        2.0
    biometrics date       0.5     outcome               1.0 (pending 0.5)
    service centre        0.5     bare route mention    0.5-1.0
    application type      0.5

confidence = min(score / 10, 1.0). Cases are kept only above 0.3.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from schema import CaseRecord, Outcome
from . import rules
from .dates import parse_flexible_date


EXTRACTOR_VERSION = '1.1'

MAX_SCORE = 10.0
ACCEPTANCE_THRESHOLD = 0.3
LOW_CONFIDENCE_THRESHOLD = 0.4

MIN_WAITING_DAYS = 1
MAX_WAITING_DAYS = 999

WAITING_DAYS_INVALID_NOTE = 'Calculated waiting days seem invalid'
LOW_CONFIDENCE_NOTE = 'Low confidence extraction - manual review recommended'


@dataclass
class ExtractionResult:
    """Fields found in one post body, with the evidence score."""
    confidence: float = 0.0
    score: float = 0.0
    application_type: Optional[str] = None
    application_route: Optional[str] = None
    application_date: Optional[date] = None
    biometrics_date: Optional[date] = None
    decision_date: Optional[date] = None
    waiting_days: Optional[int] = None
    service_center: Optional[str] = None
    outcome: str = Outcome.UNKNOWN.value
    notes: list[str] = field(default_factory=list)
    extractor_version: str = EXTRACTOR_VERSION

    @property
    def accepted(self) -> bool:
        return self.confidence > ACCEPTANCE_THRESHOLD

    @property
    def notes_text(self) -> Optional[str]:
        return '; '.join(self.notes) if self.notes else None

    def to_case(self, extracted_at: Optional[datetime] = None) -> CaseRecord:
        return CaseRecord(
            confidence=self.confidence,
            extractor_version=self.extractor_version,
            extracted_at=extracted_at or datetime.now(timezone.utc),
            application_type=self.application_type,
            application_route=self.application_route,
            application_date=self.application_date,
            biometrics_date=self.biometrics_date,
            decision_date=self.decision_date,
            waiting_days=self.waiting_days,
            service_center=self.service_center,
            outcome=self.outcome,
            notes=self.notes_text,
        )


def _first_date(patterns, text: str, today: Optional[date]) -> Optional[date]:
    # A label whose date does not parse falls through to the next phrasing
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            parsed = parse_flexible_date(match.group(1), today)
            if parsed:
                return parsed
    return None


def _any(patterns, text: str) -> bool:
    return any(p.search(text) for p in patterns)


def classify_outcome(text: str) -> str:
    """Approval outranks rejection, which outranks pending."""
    if _any(rules.APPROVAL_PATTERNS, text):
        return Outcome.APPROVED.value
    if _any(rules.REJECTION_PATTERNS, text):
        return Outcome.REJECTED.value
    if _any(rules.PENDING_PATTERNS, text):
        return Outcome.PENDING.value
    return Outcome.UNKNOWN.value


def service_level_notes(text: str) -> list[str]:
    notes = []
    if rules.STANDARD_SERVICE.search(text):
        notes.append('Standard service')
    if rules.PREMIUM_SERVICE.search(text):
        notes.append('Premium service')
    if rules.SUPER_PRIORITY_SERVICE.search(text):
        notes.append('Super priority service')
    if rules.PRIORITY_SERVICE.search(text):
        notes.append('Priority service')
    return notes


def extract_case(text: str, today: Optional[date] = None) -> ExtractionResult:
    """
    Extract structured case fields from a post body.

    Args:
        text: Cleaned (quote-stripped) post body
        today: Reference date for rejecting future dates (default: today)

    Returns:
        ExtractionResult; never raises on odd input
    """
    result = ExtractionResult()
    text = text or ''
    score = 0.0

    # Labelled route field
    for pattern in rules.ROUTE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            result.application_route = rules.normalize_route(match.group(1))
            result.application_type = rules.DEFAULT_APPLICATION_TYPE
            score += 2.0
            break

    # Labelled dates
    result.application_date = _first_date(rules.APPLICATION_DATE_PATTERNS, text, today)
    if result.application_date:
        score += 1.5

    result.biometrics_date = _first_date(rules.BIOMETRICS_DATE_PATTERNS, text, today)
    if result.biometrics_date:
        score += 0.5

    result.decision_date = _first_date(rules.DECISION_DATE_PATTERNS, text, today)
    if result.decision_date:
        score += 1.5

    if result.application_date and result.decision_date:
        days = (result.decision_date - result.application_date).days
        if MIN_WAITING_DAYS <= days <= MAX_WAITING_DAYS:
            result.waiting_days = days
            score += 2.0
        else:
            result.notes.append(WAITING_DAYS_INVALID_NOTE)

    # Outcome
    result.outcome = classify_outcome(text)
    if result.outcome in (Outcome.APPROVED.value, Outcome.REJECTED.value):
        score += 1.0
    elif result.outcome == Outcome.PENDING.value:
        score += 0.5

    for pattern, center in rules.SERVICE_CENTERS:
        if pattern.search(text):
            result.service_center = center
            score += 0.5
            break

    # Bare route mentions when no labelled field matched
    if result.application_route is None:
        for pattern, route, weight in rules.FALLBACK_ROUTES:
            if pattern.search(text):
                result.application_route = route
                result.application_type = rules.DEFAULT_APPLICATION_TYPE
                score += weight
                break

    if result.application_type is None:
        for pattern, app_type in rules.APPLICATION_TYPES:
            if pattern.search(text):
                result.application_type = app_type
                score += 0.5
                break

    result.notes.extend(service_level_notes(text))

    result.score = score
    result.confidence = min(score / MAX_SCORE, 1.0)
    if 0 < result.confidence < LOW_CONFIDENCE_THRESHOLD:
        result.notes.append(LOW_CONFIDENCE_NOTE)

    return result
