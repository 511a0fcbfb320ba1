"""
Post extraction from a rendered thread page.

Two stages:
1. split_post_fragments(): locate post containers and pull out the raw
   pieces (id, content markup, author, date) without interpreting them
2. normalize_fragment(): strip quoted replies, convert markup to plain
   text, parse the timestamp, drop near-empty posts
"""

import re
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup, Comment, Tag

from schema import ScrapedPost
from .config import MIN_POST_LENGTH, TIMEZONE_ID


@dataclass
class RawPostFragment:
    """Uninterpreted pieces of one post container."""
    external_id: str
    content_html: str
    author_name: str | None = None
    date_iso: str | None = None
    date_text: str | None = None


_POST_ID_RE = re.compile(r'^p\d+$')
_ANCHOR_ID_RE = re.compile(r'#(p\d+)')

CONTENT_SELECTORS = ['.postbody .content', '.content', '.post-text']
AUTHOR_SELECTORS = [
    '.postprofile .username',
    '.postprofile .username-coloured',
    '.author .username',
    '.author .username-coloured',
    '.postauthor',
]
DATE_TEXT_SELECTORS = ['.postprofile time', '.author time', 'time', 'p.author', '.author']

# Block-level tags that end a line of text
BLOCK_TAGS = ['p', 'div', 'li', 'tr', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'dd', 'dt']

# Markup that never carries post text
STRIP_TAGS = ['script', 'style', 'noscript']

_CITATION_RE = re.compile(r'^.*\bwrote:\s*↑.*$', re.I | re.M)
_INLINE_SPACE_RE = re.compile(r'[^\S\n]+')

_MONTHS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}
# "Mon Sep 22, 2025 5:23 pm" (weekday optional)
_FORUM_DATE_RE = re.compile(
    r'(?:\b[A-Za-z]{3,9},?\s+)?\b([A-Za-z]{3,9})\.?\s+(\d{1,2}),?\s+(\d{4}),?\s+'
    r'(\d{1,2}):(\d{2})\s*([ap]\.?m\.?)?',
    re.I,
)


# =============================================================================
# Stage 1: fragments
# =============================================================================

def _is_post_container(tag: Tag) -> bool:
    if tag.name != 'div':
        return False
    if _POST_ID_RE.match(tag.get('id') or ''):
        return True
    return 'post' in (tag.get('class') or [])


def _select_first(root: Tag, selectors: list[str]) -> Tag | None:
    for selector in selectors:
        found = root.select_one(selector)
        if found is not None:
            return found
    return None


def _post_external_id(post: Tag) -> str | None:
    element_id = post.get('id') or ''
    if _POST_ID_RE.match(element_id):
        return element_id

    for anchor in post.find_all('a', href=True):
        match = _ANCHOR_ID_RE.search(anchor['href'])
        if match:
            return match.group(1)
    return None


def split_post_fragments(html: str | BeautifulSoup, page_number: int) -> list[RawPostFragment]:
    """
    Locate post containers on a page and return their raw fragments.

    Post ids come from the container id ("p123456") or an embedded
    permalink anchor; failing both, a synthesized page{N}-post{i} id is
    used. Synthesized ids are only stable while the forum keeps element
    order unchanged between crawls.
    """
    soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html, 'lxml')

    candidates = soup.find_all(_is_post_container)
    candidate_ids = {id(c) for c in candidates}
    # Drop containers nested in another container (e.g. div.post inside div#p1)
    outermost = [
        c for c in candidates
        if not any(id(parent) in candidate_ids for parent in c.parents)
    ]

    fragments = []
    for index, post in enumerate(outermost):
        external_id = _post_external_id(post) or f"page{page_number}-post{index}"

        content_el = _select_first(post, CONTENT_SELECTORS)
        content_html = content_el.decode_contents() if content_el is not None else post.get_text('\n')

        author_name = None
        author_el = _select_first(post, AUTHOR_SELECTORS)
        if author_el is not None:
            author_name = author_el.get_text(strip=True) or None

        date_iso = None
        date_text = None
        time_el = post.find('time')
        if time_el is not None and time_el.get('datetime'):
            date_iso = time_el['datetime']
        else:
            date_el = _select_first(post, DATE_TEXT_SELECTORS)
            if date_el is not None:
                date_text = date_el.get_text(' ', strip=True) or None

        fragments.append(RawPostFragment(
            external_id=external_id,
            content_html=content_html,
            author_name=author_name,
            date_iso=date_iso,
            date_text=date_text,
        ))

    return fragments


# =============================================================================
# Stage 2: normalization
# =============================================================================

def strip_quotes(soup: BeautifulSoup | Tag) -> int:
    """
    Remove quoted replies in place, including quotes nested in quotes.

    Returns number of quote blocks removed.
    """
    removed = 0
    while True:
        quotes = soup.find_all('blockquote')
        quotes += [
            div for div in soup.find_all('div')
            if any('quote' in cls.lower() for cls in (div.get('class') or []))
        ]
        if not quotes:
            return removed
        for quote in quotes:
            # decompose() on an outer quote already removed its inner ones
            if quote.decomposed:
                continue
            quote.decompose()
            removed += 1


def html_to_text(soup: BeautifulSoup | Tag) -> str:
    """
    Convert markup to plain text with one line per block.

    Entities are decoded by the parser; runs of spaces collapse to one and
    blank lines are dropped.
    """
    for tag in STRIP_TAGS:
        for el in soup.find_all(tag):
            el.decompose()
    for comment in soup.find_all(string=lambda t: isinstance(t, Comment)):
        comment.extract()

    for br in soup.find_all('br'):
        br.replace_with('\n')
    for block in soup.find_all(BLOCK_TAGS):
        block.append('\n')

    text = soup.get_text()
    text = _CITATION_RE.sub('', text)

    lines = (_INLINE_SPACE_RE.sub(' ', line).strip() for line in text.split('\n'))
    return '\n'.join(line for line in lines if line)


def clean_post_html(content_html: str) -> str:
    """Quote-stripped plain text for a post's content markup."""
    soup = BeautifulSoup(content_html, 'lxml')
    strip_quotes(soup)
    return html_to_text(soup)


def parse_forum_datetime(text: str, tz: str = TIMEZONE_ID) -> datetime | None:
    """
    Parse phpBB display dates such as "Mon Sep 22, 2025 5:23 pm".

    The forum renders local time; the result is localized to tz.
    """
    if not text:
        return None

    for match in _FORUM_DATE_RE.finditer(text):
        month_name, day, year, hour, minute, meridiem = match.groups()
        month = _MONTHS.get(month_name.lower()[:3])
        if month is None:
            continue

        hour_value = int(hour)
        if meridiem:
            is_pm = meridiem.lower().startswith('p')
            if hour_value > 12:
                continue
            if is_pm and hour_value < 12:
                hour_value += 12
            elif not is_pm and hour_value == 12:
                hour_value = 0

        try:
            return datetime(int(year), month, int(day), hour_value, int(minute), tzinfo=ZoneInfo(tz))
        except ValueError:
            continue

    return None


def parse_iso_datetime(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return None


def normalize_fragment(
    fragment: RawPostFragment,
    page_number: int,
    tz: str = TIMEZONE_ID,
    min_length: int = MIN_POST_LENGTH,
) -> ScrapedPost | None:
    """
    Turn a raw fragment into a ScrapedPost.

    Returns None for posts whose cleaned body is shorter than min_length
    (empty posts and pure-quote replies).
    """
    content = clean_post_html(fragment.content_html)
    if len(content) < min_length:
        return None

    posted_at = None
    if fragment.date_iso:
        posted_at = parse_iso_datetime(fragment.date_iso)
    if posted_at is None and fragment.date_text:
        posted_at = parse_forum_datetime(fragment.date_text, tz)

    return ScrapedPost(
        external_id=fragment.external_id,
        content=content,
        page_number=page_number,
        author_name=fragment.author_name,
        posted_at=posted_at,
    )


def extract_posts(
    html: str | BeautifulSoup,
    page_number: int,
    tz: str = TIMEZONE_ID,
    min_length: int = MIN_POST_LENGTH,
) -> list[ScrapedPost]:
    """
    Extract normalized posts from a page's HTML.

    Args:
        html: Rendered page HTML (or an already-parsed soup)
        page_number: 1-indexed page the HTML came from
        tz: Source forum timezone for free-text dates
        min_length: Minimum cleaned body length

    Returns:
        Posts in page order
    """
    posts = []
    for fragment in split_post_fragments(html, page_number):
        post = normalize_fragment(fragment, page_number, tz=tz, min_length=min_length)
        if post is not None:
            posts.append(post)
    return posts
