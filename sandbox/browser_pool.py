"""Reference-counted Playwright browser shared by concurrent tool calls.

The browser starts lazily on the first ``acquire()``. Each acquisition
gets its own browser context (cookies, storage and pages are never shared
between calls) and releases it on exit. ``shutdown()`` stops handing out
new contexts and closes the browser once in-flight calls drain.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from playwright.async_api import async_playwright

from sandbox.errors import SandboxError

logger = logging.getLogger(__name__)

DEFAULT_LAUNCH_ARGS = ["--enable-experimental-web-platform-features"]


class BrowserPool:
    """Owns one Chromium instance and hands out fresh contexts."""

    def __init__(
        self,
        *,
        headless: bool = True,
        viewport: dict[str, int] | None = None,
        launch_args: list[str] | None = None,
        keep_alive: bool = True,
    ) -> None:
        self._headless = headless
        self._viewport = viewport or {"width": 1280, "height": 800}
        self._launch_args = list(DEFAULT_LAUNCH_ARGS if launch_args is None else launch_args)
        self._keep_alive = keep_alive

        self._playwright: Any = None
        self._browser: Any = None
        self._lock = asyncio.Lock()
        self._refs = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing = False

    @property
    def headless(self) -> bool:
        return self._headless

    @property
    def in_use(self) -> int:
        return self._refs

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    async def _ensure_browser(self) -> Any:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            logger.info("Launching Chromium (headless=%s)", self._headless)
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                args=self._launch_args,
            )
            return self._browser

    @contextlib.asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        """Yield a fresh page inside a fresh browser context."""
        if self._closing:
            raise SandboxError("Browser pool is shutting down")

        self._refs += 1
        self._idle.clear()
        context = None
        try:
            browser = await self._ensure_browser()
            context = await browser.new_context(viewport=self._viewport)
            page = await context.new_page()
            yield page
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    logger.debug("Closing browser context failed: %s", e)
            self._refs -= 1
            if self._refs == 0:
                self._idle.set()
                if not self._keep_alive or self._closing:
                    await self._close_browser()

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Refuse new acquisitions, wait for in-flight calls, close the browser."""
        self._closing = True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("Browser pool shutdown with %d context(s) still open", self._refs)
        await self._close_browser()

    async def _close_browser(self) -> None:
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.debug("Browser close failed: %s", e)
                self._browser = None
                logger.info("Browser closed")
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    logger.debug("Playwright stop failed: %s", e)
                self._playwright = None
