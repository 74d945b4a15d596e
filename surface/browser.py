from __future__ import annotations

import importlib.metadata
import logging
from typing import Any

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from surface.base import MessageListener, ScriptExecutionError, SurfaceLoadError
from surface.messages import SurfaceFailed, SurfaceLoaded, SurfaceMessage, message_from_callback
from surface.scripts import BINDING_NAME, PageProfile, build_bridge_script

log = logging.getLogger(__name__)


class BrowserSurface:
    """Automation surface backed by a single Chromium page."""

    def __init__(
        self,
        *,
        profile: PageProfile | None = None,
        headless: bool = True,
        user_data_dir: str | None = None,
        navigation_timeout_ms: int = 60_000,
        default_timeout_ms: int = 15_000,
        viewport: dict[str, int] | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.profile = profile or PageProfile()
        self.headless = headless
        self.user_data_dir = user_data_dir
        self.navigation_timeout_ms = navigation_timeout_ms
        self.default_timeout_ms = default_timeout_ms
        self.viewport = viewport
        self.user_agent = user_agent

        self._listener: MessageListener | None = None
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._url: str | None = None
        self._crashed = False

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("BrowserSurface has not started yet.")
        return self._page

    def is_started(self) -> bool:
        return self._playwright is not None and self._page is not None

    def set_listener(self, listener: MessageListener) -> None:
        self._listener = listener

    def _emit(self, message: SurfaceMessage) -> None:
        if self._listener is None:
            log.debug("Dropping surface message without listener: %r", message)
            return
        self._listener(message)

    def _on_bridge(self, name: str, args: Any, cycle: Any) -> None:
        values = list(args) if isinstance(args, (list, tuple)) else [args]
        cycle_id = cycle if isinstance(cycle, int) and not isinstance(cycle, bool) else None
        self._emit(message_from_callback(str(name), values, cycle_id))

    def _on_load(self, page: Page) -> None:
        log.info("Page loaded: %s", page.url)
        self._emit(SurfaceLoaded(page.url))

    def _on_crash(self, page: Page) -> None:
        log.error("Page crashed: %s", page.url)
        if page is self._page:
            self._crashed = True
        self._emit(SurfaceFailed("SURFACE_ERROR: page crashed"))

    async def start(self, url: str) -> None:
        self._url = url
        if self._page is None:
            try:
                await self._launch()
            except PlaywrightError as exc:
                await self.close()
                raise SurfaceLoadError(f"browser launch failed: {exc}") from exc
        await self._navigate(url)

    async def _launch(self) -> None:
        self._playwright = await async_playwright().start()
        try:
            log.info("Playwright version: %s", importlib.metadata.version("playwright"))
        except importlib.metadata.PackageNotFoundError:
            pass
        if self.user_data_dir:
            self._context = await self._playwright.chromium.launch_persistent_context(
                user_data_dir=self.user_data_dir,
                headless=self.headless,
                viewport=self.viewport,
                user_agent=self.user_agent,
            )
            self._browser = self._context.browser
        else:
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            self._context = await self._browser.new_context(
                viewport=self.viewport,
                user_agent=self.user_agent,
            )
        self._context.set_default_timeout(self.default_timeout_ms)
        self._context.set_default_navigation_timeout(self.navigation_timeout_ms)
        await self._context.expose_function(BINDING_NAME, self._on_bridge)
        await self._context.add_init_script(build_bridge_script(self.profile))
        page = self._context.pages[0] if self._context.pages else await self._context.new_page()
        self._attach(page)

    def _attach(self, page: Page) -> None:
        page.on("load", self._on_load)
        page.on("crash", self._on_crash)
        self._page = page
        self._crashed = False

    async def _replace_page(self) -> None:
        """Swap a crashed or closed page for a fresh one in the same context."""
        old = self._page
        self._page = None
        if old is not None and not old.is_closed():
            try:
                await old.close()
            except PlaywrightError:
                log.debug("Closing crashed page failed", exc_info=True)
        try:
            self._attach(await self._context.new_page())
        except PlaywrightError as exc:
            await self.close()
            raise SurfaceLoadError(f"could not open a fresh page: {exc}") from exc

    async def _navigate(self, url: str) -> None:
        try:
            await self.page.goto(url, wait_until="load")
        except PlaywrightError as exc:
            raise SurfaceLoadError(f"navigation to {url} failed: {exc}") from exc

    async def run_script(self, script: str) -> None:
        try:
            await self.page.evaluate(script)
        except PlaywrightError as exc:
            raise ScriptExecutionError(f"EXECUTION_ERROR: {exc}") from exc

    async def reload(self) -> None:
        if self._page is None or self._page.is_closed() or self._crashed:
            if self._url is None:
                raise SurfaceLoadError("surface was never started")
            if self._context is None:
                await self.close()
                await self.start(self._url)
                return
            log.info("Opening a fresh page after %s", "crash" if self._crashed else "page loss")
            await self._replace_page()
            await self._navigate(self._url)
            return
        try:
            await self._page.reload(wait_until="load")
        except PlaywrightError as exc:
            raise SurfaceLoadError(f"reload failed: {exc}") from exc

    async def close(self) -> None:
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError:
                log.debug("Context close failed", exc_info=True)
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError:
                log.debug("Browser close failed", exc_info=True)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError:
                log.debug("Playwright stop failed", exc_info=True)
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._crashed = False
