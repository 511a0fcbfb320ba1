"""
Heuristic case extraction for settlement timeline posts.

Primary interface:
    from extraction import extract_case

    result = extract_case(post_body)
    if result.accepted:
        case = result.to_case()
"""

from .dates import parse_flexible_date
from .engine import (
    ACCEPTANCE_THRESHOLD,
    EXTRACTOR_VERSION,
    ExtractionResult,
    extract_case,
)


__all__ = [
    'ACCEPTANCE_THRESHOLD',
    'EXTRACTOR_VERSION',
    'ExtractionResult',
    'extract_case',
    'parse_flexible_date',
]
