"""Playwright-backed page rendering with a shared, self-healing browser handle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from playwright.async_api import Browser, Error as PlaywrightError, Playwright, async_playwright

from enricher import metrics
from enricher.settings import BrowserSettings, get_settings

LOGGER = logging.getLogger(__name__)


class RenderError(RuntimeError):
    """Navigation or capture failed; the job is safe to retry."""


@dataclass(slots=True)
class RenderedPage:
    """Fully rendered HTML plus a JPEG of the first viewport."""

    url: str
    html: str
    screenshot: bytes


class PageRenderer(Protocol):
    async def render(self, url: str, *, timeout_ms: int | None = None) -> RenderedPage: ...

    async def close(self) -> None: ...


_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


class BrowserPool:
    """Owns one Chromium instance reused across snapshot jobs.

    The browser starts on first use, is health-checked before every render
    and relaunched if it disconnected. A lock keeps concurrent jobs from
    launching duplicate instances.
    """

    def __init__(self, settings: BrowserSettings | None = None) -> None:
        self.settings = settings or get_settings().browser
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def acquire(self) -> Browser:
        """Return a connected browser, launching or relaunching as needed."""

        browser = self._browser
        if browser is not None and browser.is_connected():
            return browser
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None:
                LOGGER.warning("Browser disconnected; relaunching")
                await self._dispose_browser()
            self._browser = await self._launch()
            return self._browser

    async def render(self, url: str, *, timeout_ms: int | None = None) -> RenderedPage:
        """Navigate to ``url``, wait for network idle, and capture HTML + JPEG."""

        navigation_timeout = timeout_ms or self.settings.navigation_timeout_ms
        browser = await self.acquire()
        try:
            context = await browser.new_context(**_context_options(self.settings))
        except PlaywrightError as exc:
            raise RenderError(f"Could not open browser context: {exc}") from exc
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="networkidle", timeout=navigation_timeout)
            await page.wait_for_timeout(self.settings.settle_ms)
            html = await page.content()
            screenshot = await page.screenshot(
                type="jpeg",
                quality=self.settings.jpeg_quality,
                full_page=False,
            )
        except PlaywrightError as exc:
            raise RenderError(f"Failed to render {url}: {exc}") from exc
        finally:
            await context.close()
        return RenderedPage(url=url, html=html, screenshot=screenshot)

    async def close(self) -> None:
        async with self._lock:
            await self._dispose_browser()
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def _launch(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        channel = _normalize_channel(self.settings.channel)
        if channel != self.settings.channel:
            LOGGER.warning(
                "Playwright channel '%s' is not supported; falling back to '%s'",
                self.settings.channel,
                channel,
            )
        launch_kwargs: dict[str, Any] = {
            "headless": self.settings.headless,
            "args": list(self.settings.launch_args),
            "timeout": self.settings.launch_timeout_ms,
        }
        if channel != "chromium":
            launch_kwargs["channel"] = channel
        LOGGER.info("Launching chromium (channel=%s)", channel)
        try:
            browser = await self._playwright.chromium.launch(**launch_kwargs)
        except PlaywrightError as exc:
            raise RenderError(f"Browser launch failed: {exc}") from exc
        metrics.record_browser_launch()
        return browser

    async def _dispose_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except PlaywrightError as exc:
            LOGGER.debug("Ignoring error while closing browser: %s", exc)


def _context_options(settings: BrowserSettings) -> dict[str, Any]:
    return {
        "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
        "user_agent": settings.user_agent,
        "locale": "en-US",
    }


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)
