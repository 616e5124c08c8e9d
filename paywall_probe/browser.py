"""
Browser capability - what the probe needs from a rendered page, plus a
Playwright adapter.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .errors import NavigationError

logger = logging.getLogger(__name__)


class InterceptedResponse(ABC):
    """A response observed while the page loads."""

    url: str
    method: str
    status: int
    content_type: str
    post_data: Optional[str]

    @abstractmethod
    async def body(self) -> bytes:
        """Response body. May raise if the body is gone."""


class BrowserSession(ABC):
    """
    A single rendered page.

    Implementations own nothing about browser lifecycle; they only drive an
    already-open page.
    """

    @abstractmethod
    async def navigate(self, url: str, timeout: float):
        """Load `url`. Raises NavigationError on failure or timeout."""

    @abstractmethod
    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        """Evaluate a JavaScript expression/function against the page."""

    @abstractmethod
    async def add_style(self, css: str):
        """Inject a stylesheet."""

    @abstractmethod
    async def content(self) -> str:
        """Current rendered markup."""

    @abstractmethod
    def on_response(self, callback: Callable[[InterceptedResponse], None]):
        """Call `callback` for every network response."""

    async def press_key(self, key: str):
        pass

    async def click_first_visible(self, selector: str, timeout: float = 1.2) -> bool:
        return False

    async def wait(self, seconds: float):
        pass


# =============================================================================
# PLAYWRIGHT
# =============================================================================

class _PlaywrightResponse(InterceptedResponse):

    def __init__(self, response):
        request = response.request
        self._response = response
        self.url = response.url
        self.method = request.method
        self.status = response.status
        self.content_type = (response.headers.get("content-type") or "").lower()
        try:
            self.post_data = request.post_data
        except PlaywrightError:
            self.post_data = None

    async def body(self) -> bytes:
        return await self._response.body()


class PlaywrightSession(BrowserSession):
    """BrowserSession over a Playwright async Page."""

    def __init__(self, page, settle_delay: float = 0.8):
        self.page = page
        self.settle_delay = settle_delay

    async def navigate(self, url: str, timeout: float):
        try:
            await self.page.goto(url, wait_until="domcontentloaded", timeout=int(timeout * 1000))
        except PlaywrightError as e:
            raise NavigationError(url, str(e).splitlines()[0][:200])

        # Let late hydration and XHR settle
        await self.page.wait_for_timeout(int(self.settle_delay * 1000))

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        if arg is None:
            return await self.page.evaluate(expression)
        return await self.page.evaluate(expression, arg)

    async def add_style(self, css: str):
        await self.page.add_style_tag(content=css)

    async def content(self) -> str:
        return await self.page.content()

    def on_response(self, callback: Callable[[InterceptedResponse], None]):
        self.page.on("response", lambda response: callback(_PlaywrightResponse(response)))

    async def press_key(self, key: str):
        await self.page.keyboard.press(key)

    async def click_first_visible(self, selector: str, timeout: float = 1.2) -> bool:
        button = self.page.locator(selector).first
        try:
            await button.wait_for(state="visible", timeout=int(timeout * 1000))
            await button.click()
            return True
        except PlaywrightError:
            return False

    async def wait(self, seconds: float):
        await self.page.wait_for_timeout(int(seconds * 1000))


@asynccontextmanager
async def open_browser_session(
    headless: bool = True,
    user_agent: Optional[str] = None,
    settle_delay: float = 0.8,
):
    """Launch Chromium and yield a PlaywrightSession on a fresh page."""
    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=headless,
            args=["--disable-dev-shm-usage", "--no-sandbox"],
        )
        context_options = {"viewport": {"width": 1440, "height": 900}}
        if user_agent:
            context_options["user_agent"] = user_agent

        context = await browser.new_context(**context_options)
        page = await context.new_page()
        logger.debug(f"Browser launched (headless={headless})")
        try:
            yield PlaywrightSession(page, settle_delay=settle_delay)
        finally:
            await context.close()
            await browser.close()
