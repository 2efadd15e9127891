"""Playwright-powered browser driver with a persistent profile per moderator."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from playwright.sync_api import sync_playwright

from ..config import BrowserConfig
from .base import BrowserActionError, BrowserDriver

LOGGER = logging.getLogger(__name__)

R = TypeVar("R")


class PlaywrightBrowserDriver(BrowserDriver):
    """Browser driver backed by Playwright's synchronous API.

    Playwright objects are bound to the thread that created them, so every call
    is marshalled onto a single dedicated worker thread owned by the driver.
    """

    def __init__(self, user_data_dir: Path, config: Optional[BrowserConfig] = None) -> None:
        self._user_data_dir = user_data_dir
        self._config = config or BrowserConfig()
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="playwright")
        self._playwright = None
        self._context = None
        self._page = None

    def start(self) -> None:
        self._call(self._start)

    def stop(self) -> None:
        try:
            if self._playwright is not None:
                self._call(self._stop)
        finally:
            self._worker.shutdown(wait=False)

    def navigate_to(self, url: str) -> None:
        timeout = int(self._config.navigation_timeout * 1000)
        self._call(lambda: self._require_page().goto(url, wait_until="domcontentloaded", timeout=timeout))

    def query_selector(self, selector: str) -> Optional[Any]:
        return self._call(lambda: self._require_page().query_selector(selector))

    def get_current_url(self) -> str:
        return self._call(lambda: self._require_page().url)

    def screenshot_element(self, element: Any) -> bytes:
        return self._call(lambda: element.screenshot(type="png"))

    def fill(self, element: Any, text: str) -> None:
        self._call(lambda: element.fill(text))

    def click(self, element: Any) -> None:
        self._call(lambda: element.click())

    def press(self, element: Any, key: str) -> None:
        self._call(lambda: element.press(key))

    def get_attribute(self, element: Any, name: str) -> Optional[str]:
        return self._call(lambda: element.get_attribute(name))

    def is_closed(self) -> bool:
        if self._page is None:
            return True
        try:
            return self._call(self._page.is_closed)
        except RuntimeError:
            # worker already shut down
            return True

    # Internal helpers --------------------------------------------------------

    def _call(self, func: Callable[[], R]) -> R:
        return self._worker.submit(func).result()

    def _require_page(self):
        if self._page is None:
            raise BrowserActionError("Browser session is not started")
        return self._page

    def _start(self) -> None:
        LOGGER.debug("Starting Playwright browser for %s", self._user_data_dir)
        self._user_data_dir.mkdir(parents=True, exist_ok=True)
        self._playwright = sync_playwright().start()
        self._context = self._playwright.chromium.launch_persistent_context(
            str(self._user_data_dir),
            headless=self._config.headless,
            args=list(self._config.launch_args),
            viewport={
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
        )
        pages = self._context.pages
        self._page = pages[0] if pages else self._context.new_page()
        self._page.on(
            "close",
            lambda _: LOGGER.info("Page closed for profile %s", self._user_data_dir),
        )

    def _stop(self) -> None:
        LOGGER.debug("Stopping Playwright browser for %s", self._user_data_dir)
        try:
            if self._context:
                self._context.close()
        finally:
            if self._playwright:
                self._playwright.stop()
        self._context = None
        self._playwright = None
        self._page = None
