"""
Content hashing for post deduplication and change detection.
"""

import hashlib


def hash_content(text: str, length: int = 32) -> str:
    """
    Hash a post's cleaned body.

    The input is the quote-stripped plain text, so markup differences
    that do not change the visible text hash identically.

    Args:
        text: Cleaned post body
        length: Length of returned hash (default 32 chars)

    Returns:
        Truncated SHA-256 hex digest
    """
    return hashlib.sha256(text.encode('utf-8', errors='replace')).hexdigest()[:length]
