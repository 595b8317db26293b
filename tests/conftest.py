import asyncio
from typing import Dict, List, Optional

import pytest
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from link_preview.renderer import StaticPage


class SkewedPage(StaticPage):
    """StaticPage whose queries sleep per selector, to reorder concurrent completions."""

    def __init__(self, url: str, html: str, delays: Optional[Dict[str, float]] = None) -> None:
        super().__init__(url, html)
        self.delays = delays or {}
        self.completed: List[str] = []

    async def query(self, selector, attributes):
        await asyncio.sleep(self.delays.get(selector, 0))
        result = await super().query(selector, attributes)
        self.completed.append(selector)
        return result


class FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status


class FakeLocator:
    """Minimal Playwright locator over parsed markup."""

    def __init__(self, elements) -> None:
        self._elements = elements

    async def count(self) -> int:
        return len(self._elements)

    @property
    def first(self) -> "FakeLocator":
        return FakeLocator(self._elements[:1])

    async def get_attribute(self, name):
        value = self._elements[0].get(name)
        return " ".join(value) if isinstance(value, list) else value

    async def inner_html(self) -> str:
        return self._elements[0].decode_contents()

    async def all_text_contents(self) -> List[str]:
        return [element.get_text() for element in self._elements]


class FakePlaywrightPage:
    def __init__(self, url: str, status: Optional[int] = 200, html: str = "", goto_error=None, route_error=None) -> None:
        self.url = "about:blank"
        self._target_url = url
        self._status = status
        self._html = html
        self._goto_error = goto_error
        self._route_error = route_error
        self.route_handler = None
        self.goto_kwargs = None

    async def route(self, pattern, handler):
        if self._route_error:
            raise self._route_error
        self.route_handler = handler

    async def goto(self, url, **kwargs):
        self.goto_kwargs = kwargs
        if self._goto_error:
            raise self._goto_error
        self.url = url
        return FakeResponse(self._status) if self._status is not None else None

    async def content(self):
        return self._html

    def locator(self, selector) -> FakeLocator:
        return FakeLocator(BeautifulSoup(self._html, "html.parser").select(selector))


class FakeContext:
    def __init__(self, page: FakePlaywrightPage, page_error=None) -> None:
        self.page = page
        self.page_error = page_error
        self.closed = False

    async def new_page(self):
        if self.page_error:
            raise self.page_error
        return self.page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self) -> None:
        self.closed = False
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    async def close(self):
        self.closed = True
        self.connected = False


class FakeSession:
    """Stands in for PlaywrightSession: acquire/release browsers, hand out fake contexts."""

    def __init__(self, page: Optional[FakePlaywrightPage] = None, launch_error=None, context_error=None, page_error=None) -> None:
        self.page = page or FakePlaywrightPage("https://shop.example/")
        self.launch_error = launch_error
        self.context_error = context_error
        self.page_error = page_error
        self.launched: List[FakeBrowser] = []
        self.released: List[FakeBrowser] = []
        self.contexts: List[FakeContext] = []

    async def launch_browser(self):
        if self.launch_error:
            raise self.launch_error
        browser = FakeBrowser()
        self.launched.append(browser)
        return browser

    async def acquire(self):
        return await self.launch_browser()

    async def release(self, browser):
        self.released.append(browser)
        await browser.close()

    async def new_isolated_context(self, browser, navigation_timeout_ms=30000, **kwargs):
        if self.context_error:
            raise self.context_error
        context = FakeContext(self.page, page_error=self.page_error)
        self.contexts.append(context)
        return context


class CountingRenderer:
    """Renderer double that serves fixed markup and counts render calls."""

    def __init__(self, html: str = "", error: Optional[Exception] = None, delay: float = 0) -> None:
        self.html = html
        self.error = error
        self.delay = delay
        self.calls = 0
        self.pages: List[StaticPage] = []

    async def render(self, url, profile):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        page = StaticPage(url, self.html)
        self.pages.append(page)
        return page


PRODUCT_HTML = """<!doctype html>
<html>
  <head>
    <title>Widget 42</title>
    <meta property="og:image" content="/img/42.jpg">
  </head>
  <body><h1>Widget 42</h1></body>
</html>
"""


@pytest.fixture
def playwright_error():
    return PlaywrightError


@pytest.fixture
def product_html():
    return PRODUCT_HTML
