"""
Browser session context for thread crawling (the fetch driver).

One BrowserSession owns one Playwright browser, one context and one page.
All per-session state (the page handle, obstruction dismissal flags) lives
on the object, so a relaunch is a close + open that also resets the flags.

Usage:
    session = BrowserSession(CrawlConfig())
    await session.open()
    html = await session.load_page(url)
    await session.close()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from .config import (
    BLOCKED_RESOURCE_TYPES,
    LAUNCH_ARGS,
    POST_SELECTOR,
    BrowserContextOptions,
    CrawlConfig,
)
from .obstructions import ObstructionState, dismiss_obstructions
from .retry import NAVIGATION_RETRY, RetryPolicy, is_transient_navigation_error, retry_async

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route

log = structlog.get_logger(__name__)


class SessionLaunchError(RuntimeError):
    """The browser could not be launched at all."""
    pass


class PageLoadError(RuntimeError):
    """Navigation or the post-container wait failed for one page."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{reason}: {url}")
        self.url = url
        self.reason = reason


# Failure signatures that mean the browser/page is gone, not just slow
SESSION_FATAL_MARKERS = (
    'target closed',
    'target page, context or browser has been closed',
    'browser has been closed',
    'browser closed',
    'protocol error',
    'session closed',
    'connection closed',
)


def is_session_fatal(exc: BaseException) -> bool:
    """True when the error indicates a dead browser session."""
    message = str(exc).lower()
    return any(marker in message for marker in SESSION_FATAL_MARKERS)


def _is_retryable_navigation(exc: BaseException) -> bool:
    # A dead session is never fixed by retrying the same navigation
    return is_transient_navigation_error(exc) and not is_session_fatal(exc)


async def _block_resources(route: "Route") -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class BrowserSession:
    """Headless browser session that loads thread pages and returns their HTML."""

    def __init__(
        self,
        config: CrawlConfig | None = None,
        context_options: BrowserContextOptions | None = None,
        navigation_policy: RetryPolicy | None = None,
    ):
        self.config = config or CrawlConfig()
        self.context_options = context_options or BrowserContextOptions()
        self.navigation_policy = navigation_policy or RetryPolicy(
            max_attempts=self.config.navigation_attempts,
            initial_delay=NAVIGATION_RETRY.initial_delay,
        )
        self.obstructions = ObstructionState()
        self.launches = 0

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @property
    def is_open(self) -> bool:
        return self._page is not None

    async def open(self) -> None:
        """Launch browser, context and page. No-op if already open."""
        if self.is_open:
            return

        try:
            from playwright.async_api import async_playwright
        except ImportError as exc:
            raise SessionLaunchError('playwright not installed') from exc

        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.config.headless,
                args=LAUNCH_ARGS,
            )
            self._context = await self._browser.new_context(**self.context_options.as_kwargs())
            if self.config.block_resources:
                await self._context.route('**/*', _block_resources)
            self._page = await self._context.new_page()
            self._page.set_default_timeout(self.config.selector_timeout * 1000)
        except Exception as exc:
            await self.close()
            raise SessionLaunchError(f"browser launch failed: {exc}") from exc

        self.launches += 1
        log.info('session_opened', headless=self.config.headless, launches=self.launches)

    async def close(self) -> None:
        """Tear down page, context, browser and driver. Safe to call repeatedly."""
        page, context, browser, playwright = self._page, self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None

        for name, closer in (
            ('page', page.close if page else None),
            ('context', context.close if context else None),
            ('browser', browser.close if browser else None),
            ('playwright', playwright.stop if playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                # Teardown of an already-dead browser commonly fails here
                log.debug('session_close_error', part=name, error=str(exc)[:200])

    async def relaunch(self) -> None:
        """Replace a dead session with a fresh one. Dismissal flags start over."""
        log.warning('session_relaunch', launches=self.launches)
        await self.close()
        self.obstructions.reset()
        await self.open()

    async def load_page(self, url: str) -> str:
        """
        Navigate to url, wait for post containers and return the page HTML.

        Args:
            url: Page URL (session id already stripped)

        Returns:
            Rendered HTML after obstruction dismissal

        Raises:
            PageLoadError: navigation or the post wait failed
            Exception: session-fatal errors propagate unchanged so the
                caller can relaunch
        """
        if not self.is_open:
            await self.open()
        page = self._page

        async def navigate():
            await page.goto(
                url,
                wait_until='domcontentloaded',
                timeout=self.config.navigation_timeout * 1000,
            )

        try:
            await retry_async(
                navigate,
                self.navigation_policy,
                is_retryable=_is_retryable_navigation,
                label='navigate',
            )
        except Exception as exc:
            if is_session_fatal(exc):
                raise
            raise PageLoadError(url, f"navigation failed ({exc})") from exc

        try:
            await page.wait_for_selector(POST_SELECTOR, timeout=self.config.selector_timeout * 1000)
        except Exception as exc:
            if is_session_fatal(exc):
                raise
            raise PageLoadError(url, 'no post containers') from exc

        await dismiss_obstructions(page, self.obstructions)
        return await page.content()
