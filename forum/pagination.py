"""
Pagination helpers for phpBB-style topics.

- Session id stripping (phpBB appends sid=... which expires and redirects)
- Deterministic page URLs (start offset = (page - 1) * page size)
- Total page discovery from pagination markup
"""

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from bs4 import BeautifulSoup


# Query parameters that carry session or position state, never identity
VOLATILE_PARAMS = {'sid', 'start'}

_PAGE_OF_RE = re.compile(r'\bof\s+(\d+)', re.I)
_TOPIC_ID_RE = re.compile(r'(?:^|&)t=(\d+)')


def strip_session_id(url: str) -> str:
    """Remove sid=... query parameters, keeping everything else in order."""
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
              if k.lower() != 'sid']
    return urlunparse(parsed._replace(query=urlencode(params)))


def canonical_thread_url(url: str) -> str:
    """Thread URL without session or paging parameters."""
    parsed = urlparse(url)
    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
              if k.lower() not in VOLATILE_PARAMS]
    return urlunparse(parsed._replace(query=urlencode(params), fragment=''))


def thread_external_id(url: str) -> str:
    """Stable thread id ('t231555') from a viewtopic URL, or 'unknown'."""
    match = _TOPIC_ID_RE.search(urlparse(url).query)
    return f"t{match.group(1)}" if match else 'unknown'


def build_page_url(thread_url: str, page_number: int, page_size: int) -> str:
    """
    Build the URL for a 1-indexed page of a thread.

    Page 1 is the canonical URL itself; later pages add start=<offset>.
    """
    if page_number < 1:
        raise ValueError(f"page_number must be >= 1, got {page_number}")
    base = canonical_thread_url(thread_url)
    start = (page_number - 1) * page_size
    if start == 0:
        return base
    parsed = urlparse(base)
    params = parse_qsl(parsed.query, keep_blank_values=True)
    params.append(('start', str(start)))
    return urlunparse(parsed._replace(query=urlencode(params)))


def parse_total_pages(html: str | BeautifulSoup) -> int:
    """
    Discover the total page count from pagination markup.

    Tries, in order:
    1. An explicit "Page X of Y" indicator
    2. The highest numbered page link
    3. Default to 1
    """
    soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html, 'lxml')

    paginations = soup.select('.pagination')
    if not paginations:
        return 1

    # Method 1: screen-reader "Page X of Y", then any "of Y" in the block text
    for pagination in paginations:
        for el in pagination.select('.sr-only'):
            match = _PAGE_OF_RE.search(el.get_text(' ', strip=True))
            if match:
                return max(1, int(match.group(1)))
    for pagination in paginations:
        text = pagination.get_text(' ', strip=True)
        match = _PAGE_OF_RE.search(text)
        if match:
            return max(1, int(match.group(1)))

    # Method 2: highest numbered page link
    max_page = 1
    for pagination in paginations:
        for link in pagination.select('li a, a.button'):
            label = link.get_text(strip=True)
            if label.isdigit():
                max_page = max(max_page, int(label))
    return max_page
