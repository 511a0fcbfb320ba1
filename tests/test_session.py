"""
Tests for forum/session.py, forum/obstructions.py and forum/retry.py.

The browser is replaced by small fakes of the Page/Locator surface the
session touches; no Playwright install is needed.
"""

import asyncio

import pytest

from conftest import no_sleep
from forum.obstructions import (
    FUNDING_CHOICES_SELECTOR,
    LOGIN_POPUP_CLOSE_SELECTOR,
    ObstructionState,
    dismiss_obstructions,
)
from forum.retry import (
    RetryPolicy,
    compute_backoff_delay,
    is_transient_navigation_error,
    retry_async,
)
from forum.session import BrowserSession, PageLoadError, is_session_fatal


class FakeLocator:
    def __init__(self, visible=False):
        self.visible = visible
        self.clicks = 0

    @property
    def first(self):
        return self

    async def is_visible(self):
        return self.visible

    async def click(self):
        self.clicks += 1

    async def check(self):
        pass


class FakeFrame:
    def __init__(self, locators=None):
        self.locators = locators or {}

    def locator(self, selector):
        return self.locators.setdefault(selector, FakeLocator())


class FakePage(FakeFrame):
    def __init__(self, locators=None, frames=None, goto_errors=None, selector_error=None, html="<html></html>"):
        super().__init__(locators)
        self.frames = frames or []
        self.goto_errors = list(goto_errors or [])
        self.selector_error = selector_error
        self.html = html
        self.gotos = 0

    async def goto(self, url, wait_until=None, timeout=None):
        self.gotos += 1
        if self.goto_errors:
            raise self.goto_errors.pop(0)

    async def wait_for_selector(self, selector, timeout=None):
        if self.selector_error:
            raise self.selector_error

    async def content(self):
        return self.html


def _handled_state():
    return ObstructionState(consent=True, notifications=True, login=True, do_not_show=True)


def _session_with(page):
    session = BrowserSession(navigation_policy=RetryPolicy(max_attempts=2, initial_delay=0.0))
    session._page = page
    session.obstructions = _handled_state()
    return session


# =============================================================================
# Error classification
# =============================================================================

def test_session_fatal_markers():
    assert is_session_fatal(RuntimeError("Target page, context or browser has been closed"))
    assert is_session_fatal(RuntimeError("Protocol error (Page.navigate): Session closed."))
    assert not is_session_fatal(RuntimeError("Timeout 30000ms exceeded"))


def test_transient_navigation_errors():
    assert is_transient_navigation_error(asyncio.TimeoutError())
    assert is_transient_navigation_error(ConnectionResetError())
    assert is_transient_navigation_error(RuntimeError("net::ERR_CONNECTION_RESET"))
    assert not is_transient_navigation_error(ValueError("bad selector"))


# =============================================================================
# Retry
# =============================================================================

def test_backoff_is_capped():
    policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)
    assert [compute_backoff_delay(i, policy) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_errors():
    calls = []
    retries = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("reset")
        return "ok"

    result = await retry_async(
        flaky,
        RetryPolicy(max_attempts=3, initial_delay=0.0),
        on_retry=lambda attempt, exc, delay: retries.append(attempt),
        sleep=no_sleep,
    )

    assert result == "ok"
    assert retries == [1, 2]


@pytest.mark.asyncio
async def test_retry_gives_up_after_budget():
    calls = []

    async def broken():
        calls.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await retry_async(broken, RetryPolicy(max_attempts=4, initial_delay=0.0), sleep=no_sleep)
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_non_retryable_error_raises_immediately():
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await retry_async(
            broken,
            RetryPolicy(max_attempts=4, initial_delay=0.0),
            is_retryable=lambda exc: not isinstance(exc, ValueError),
            sleep=no_sleep,
        )
    assert len(calls) == 1


# =============================================================================
# Obstructions
# =============================================================================

@pytest.mark.asyncio
async def test_dismisses_consent_in_iframe_once():
    consent = FakeLocator(visible=True)
    page = FakePage(frames=[FakeFrame(), FakeFrame({FUNDING_CHOICES_SELECTOR: consent})])
    state = ObstructionState()

    await dismiss_obstructions(page, state, settle=0)

    assert consent.clicks == 1
    assert state.all_handled

    await dismiss_obstructions(page, state, settle=0)
    assert consent.clicks == 1


@pytest.mark.asyncio
async def test_absent_obstructions_still_marked_handled():
    login = FakeLocator(visible=False)
    page = FakePage(locators={LOGIN_POPUP_CLOSE_SELECTOR: login})
    state = ObstructionState()

    await dismiss_obstructions(page, state, settle=0)

    assert login.clicks == 0
    assert state.all_handled


def test_obstruction_state_reset():
    state = _handled_state()
    assert state.all_handled
    state.reset()
    assert not state.all_handled
    assert state == ObstructionState()


# =============================================================================
# BrowserSession.load_page
# =============================================================================

@pytest.mark.asyncio
async def test_load_page_returns_html():
    page = FakePage(html="<html>posts</html>")
    session = _session_with(page)

    assert await session.load_page("https://forum.example.com/viewtopic.php?t=1") == "<html>posts</html>"
    assert page.gotos == 1


@pytest.mark.asyncio
async def test_navigation_retried_then_reported_as_page_error():
    page = FakePage(goto_errors=[RuntimeError("Timeout 30000ms exceeded")] * 2)
    session = _session_with(page)

    with pytest.raises(PageLoadError) as excinfo:
        await session.load_page("https://forum.example.com/viewtopic.php?t=1")

    assert page.gotos == 2
    assert "navigation failed" in excinfo.value.reason


@pytest.mark.asyncio
async def test_session_fatal_navigation_error_propagates_unchanged():
    page = FakePage(goto_errors=[RuntimeError("Target closed")])
    session = _session_with(page)

    with pytest.raises(RuntimeError, match="Target closed") as excinfo:
        await session.load_page("https://forum.example.com/viewtopic.php?t=1")

    assert not isinstance(excinfo.value, PageLoadError)
    assert page.gotos == 1


@pytest.mark.asyncio
async def test_missing_post_containers_is_page_error():
    page = FakePage(selector_error=RuntimeError("Timeout 15000ms exceeded waiting for selector"))
    session = _session_with(page)

    with pytest.raises(PageLoadError) as excinfo:
        await session.load_page("https://forum.example.com/viewtopic.php?t=1")

    assert excinfo.value.reason == "no post containers"


@pytest.mark.asyncio
async def test_relaunch_resets_obstruction_state():
    session = BrowserSession()
    session.obstructions = _handled_state()
    opened = []

    async def fake_open():
        opened.append(1)

    session.open = fake_open
    await session.relaunch()

    assert opened == [1]
    assert not session.obstructions.all_handled


@pytest.mark.asyncio
async def test_close_without_open_is_safe():
    session = BrowserSession()
    await session.close()
    await session.close()
    assert not session.is_open
