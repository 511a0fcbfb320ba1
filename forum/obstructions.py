"""
Dismissal of transient UI obstructions (consent dialogs, overlays, nags).

State is per browser session: once an obstruction type has been handled
its dismissal cookie lives in the context, so it is not checked again.
A relaunched session starts with fresh cookies and a fresh state.
"""

import asyncio
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from playwright.async_api import Page

log = structlog.get_logger(__name__)


# Google Funding Choices CMP renders its consent button inside an iframe
FUNDING_CHOICES_SELECTOR = 'button.fc-cta-consent'

CONSENT_SELECTORS = [
    'button[aria-label="Consent"]',
    'button:has-text("Consent")',
    '.cc-btn.cc-allow',
    '#cookie-accept',
    'button:has-text("Accept")',
    'button:has-text("I agree")',
    '.cookie-consent-accept',
]

NOTIFICATIONS_CLOSE_SELECTOR = '#close, div#close'
LOGIN_POPUP_CLOSE_SELECTOR = '#login_popup_close'
DO_NOT_SHOW_SELECTOR = 'input[name="popup_no_show"]'
DO_NOT_SHOW_SUBMIT_SELECTOR = 'input[type="submit"][value="OK"]'


@dataclass
class ObstructionState:
    """Which obstruction types this session has already handled."""
    consent: bool = False
    notifications: bool = False
    login: bool = False
    do_not_show: bool = False

    @property
    def all_handled(self) -> bool:
        return all(getattr(self, f.name) for f in fields(self))

    def reset(self) -> None:
        for f in fields(self):
            setattr(self, f.name, False)


async def _click_if_visible(locator, pause: float) -> bool:
    try:
        if await locator.is_visible():
            await locator.click()
            await asyncio.sleep(pause)
            return True
    except Exception:
        # detached or not clickable: treat as absent
        return False
    return False


async def _dismiss_consent(page: "Page") -> None:
    for frame in page.frames:
        button = frame.locator(FUNDING_CHOICES_SELECTOR).first
        if await _click_if_visible(button, pause=1.0):
            log.info('obstruction_dismissed', kind='consent', selector=FUNDING_CHOICES_SELECTOR)
            return

    for selector in CONSENT_SELECTORS:
        if await _click_if_visible(page.locator(selector).first, pause=0.5):
            log.info('obstruction_dismissed', kind='consent', selector=selector)
            return


async def _dismiss_do_not_show(page: "Page") -> None:
    checkbox = page.locator(DO_NOT_SHOW_SELECTOR).first
    try:
        if not await checkbox.is_visible():
            return
        await checkbox.check()
    except Exception:
        return
    if await _click_if_visible(page.locator(DO_NOT_SHOW_SUBMIT_SELECTOR).first, pause=0.5):
        log.info('obstruction_dismissed', kind='do_not_show')


async def dismiss_obstructions(page: "Page", state: ObstructionState, settle: float = 2.0) -> ObstructionState:
    """
    Dismiss any obstructions not yet handled in this session.

    Each type is marked handled after one check whether or not it was
    present, so later pages skip the check entirely. Failures here are
    never fatal to the page.
    """
    if state.all_handled:
        return state

    # Give the consent manager time to inject itself on the first check
    await asyncio.sleep(settle if not state.consent else 0.5)

    if not state.consent:
        await _dismiss_consent(page)
        state.consent = True

    if not state.notifications:
        if await _click_if_visible(page.locator(NOTIFICATIONS_CLOSE_SELECTOR).first, pause=0.5):
            log.info('obstruction_dismissed', kind='notifications')
        state.notifications = True

    if not state.login:
        if await _click_if_visible(page.locator(LOGIN_POPUP_CLOSE_SELECTOR).first, pause=0.5):
            log.info('obstruction_dismissed', kind='login')
        state.login = True

    if not state.do_not_show:
        await _dismiss_do_not_show(page)
        state.do_not_show = True

    return state
