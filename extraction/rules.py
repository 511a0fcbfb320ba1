"""
Pattern tables for case extraction.

Order matters everywhere: within each table the first match wins.
Bump EXTRACTOR_VERSION in engine.py whenever a table changes meaning.
"""

import re

# Date capture used by every labelled-date rule
DATE = (
    r'(\d{1,2}[\s/\-.]+\w+[\s/\-.]+\d{2,4}'
    r'|\d{1,2}[\s/\-.]+\d{1,2}[\s/\-.]+\d{2,4}'
    r'|[A-Za-z]{3,9}\.?\s+\d{1,2},?\s+\d{4})'
)


def _compile(patterns):
    return [re.compile(p, re.I) for p in patterns]


# =============================================================================
# Route / type
# =============================================================================

ROUTE_PATTERNS = _compile([
    r'(?:applied\s+for\s+)?ilr\s+route\s*[:\-]?\s*(.+)',
    r'route\s*[:\-]?\s*(set\s*\([omf]\)|tier\s*\d|spouse|partner|10.?year|5.?year|long.?res)',
    r'application\s+type\s*[:\-]?\s*(.+)',
])

# (substrings, normalized label) checked in order against the lowercased capture
ROUTE_LABELS = [
    (('set(o)', 'set (o)'), 'SET(O)'),
    (('set(m)', 'set (m)'), 'SET(M)'),
    (('set(f)', 'set (f)'), 'SET(F)'),
    (('2x3', 'dlr', '10 year', '10-year', '10year', 'long res', 'long-res'), '10-year'),
    (('5 year', '5-year', '5year'), '5-year'),
    (('tier 2', 'tier2'), 'Tier 2'),
    (('spouse', 'partner'), 'Spouse'),
    (('dependent', 'dependant'), 'Dependant'),
]

MAX_RAW_ROUTE_LENGTH = 50

# Bare category mentions anywhere in the body: (pattern, route, weight)
FALLBACK_ROUTES = [
    (re.compile(r'\bset\s*\(?\s*o\s*\)?(?![a-z])', re.I), 'SET(O)', 1.0),
    (re.compile(r'\bset\s*\(?\s*m\s*\)?(?![a-z])', re.I), 'SET(M)', 1.0),
    (re.compile(r'\bset\s*\(?\s*f\s*\)?(?![a-z])', re.I), 'SET(F)', 1.0),
    (re.compile(r'\b10[\s\-]?year', re.I), '10-year', 0.5),
]

APPLICATION_TYPES = [
    (re.compile(r'\b(?:ilr|indefinite\s+leave\s+to\s+remain)\b', re.I), 'ILR'),
    (re.compile(r'\b(?:flr|further\s+leave)\b', re.I), 'FLR'),
    (re.compile(r'\bnaturali[sz]ation\b', re.I), 'Naturalization'),
]

DEFAULT_APPLICATION_TYPE = 'ILR'


# =============================================================================
# Labelled dates
# =============================================================================

APPLICATION_DATE_PATTERNS = _compile([
    r'(?:date\s+)?application\s+sent\s*[:\-]?\s*' + DATE,
    r'(?:date\s+)?applied\s*[:\-]?\s*' + DATE,
    r'submitted\s*(?:on)?\s*[:\-]?\s*' + DATE,
    r'application\s+date\s*[:\-]?\s*' + DATE,
])

BIOMETRICS_DATE_PATTERNS = _compile([
    r'biometrics?\s+(?:date|enrolled|done|completed)\s*[:\-]?\s*' + DATE,
    r'(?:date\s+)?biometrics?\s*[:\-]?\s*' + DATE,
    r'bio(?:metrics?)?\s+letter\s+received\s*[:\-]?\s*' + DATE,
])

DECISION_DATE_PATTERNS = _compile([
    r'(?:approval|decision|approved?)\s*(?:/\s*refusal)?\s*(?:received|date|email)?\s*[:\-]?\s*' + DATE,
    r'(?:refusal|refused|rejected)\s*(?:received|date)?\s*[:\-]?\s*' + DATE,
    r'brp\s+(?:card\s+)?received\s*[:\-]?\s*' + DATE,
    r'e-?visa\s+(?:status\s+)?(?:changed|updated)\s*[:\-]?\s*' + DATE,
    r'settled\s*[:\-]?\s*' + DATE,
])


# =============================================================================
# Outcome (classes checked in this order)
# =============================================================================

APPROVAL_PATTERNS = _compile([
    r'brp\s+(?:card\s+)?received\s*[:\-]?\s*\d',
    r'e-?visa.*settled',
    r'approval\s+email\s*[:\-]?\s*\d',
    r'\b(?:approved|granted|successful)\b',
    r'\bgot\s+my\s+ilr\b',
    r'\bilr\s+granted\b',
])

# "Approval/Refusal Received" is a field label, not a refusal
REJECTION_PATTERNS = _compile([
    r'\b(?:refused|rejected|denied|unsuccessful)\b',
    r'(?<!/)refusal\s+received\s*[:\-]?\s*\d',
])

PENDING_PATTERNS = _compile([
    r'\b(?:still\s+waiting|awaiting\s+decision|no\s+decision\s+yet)\b',
])


# =============================================================================
# Service centres and service levels
# =============================================================================

SERVICE_CENTERS = [
    (re.compile(r'sheffield', re.I), 'Sheffield'),
    (re.compile(r'liverpool', re.I), 'Liverpool'),
    (re.compile(r'croydon', re.I), 'Croydon'),
    (re.compile(r'cardiff', re.I), 'Cardiff'),
    (re.compile(r'belfast', re.I), 'Belfast'),
    (re.compile(r'glasgow', re.I), 'Glasgow'),
    (re.compile(r'ukvcas', re.I), 'UKVCAS'),
]

STANDARD_SERVICE = re.compile(r'\bstandard\b', re.I)
PREMIUM_SERVICE = re.compile(r'\bpremium\b', re.I)
SUPER_PRIORITY_SERVICE = re.compile(r'\bsuper\s*priority\b', re.I)
PRIORITY_SERVICE = re.compile(r'\bpriority\b', re.I)


def normalize_route(raw: str) -> str:
    """Map a captured route phrase onto the fixed label vocabulary."""
    lowered = raw.strip().lower()
    for needles, label in ROUTE_LABELS:
        if any(needle in lowered for needle in needles):
            return label
    return raw.strip()[:MAX_RAW_ROUTE_LENGTH]
