from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .models import ElementSnapshot, ErrorKind, SiteProfile
from .utils import random_headers

logger = logging.getLogger(__name__)


class RenderError(RuntimeError):
    kind = ErrorKind.NAVIGATION_ERROR


class BrowserLaunchError(RenderError):
    kind = ErrorKind.BROWSER_LAUNCH_ERROR


class PageCreationError(RenderError):
    kind = ErrorKind.PAGE_CREATION_ERROR


class RequestInterceptionError(RenderError):
    kind = ErrorKind.REQUEST_INTERCEPTION_ERROR


class NavigationError(RenderError):
    kind = ErrorKind.NAVIGATION_ERROR


class RenderedPage:
    """A DOM that selector rules can query. Must be closed exactly once by its owner."""

    url: str

    async def query(self, selector: str, attributes: Sequence[str]) -> Optional[ElementSnapshot]:
        raise NotImplementedError

    async def query_texts(self, selector: str) -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class StaticPage(RenderedPage):
    """Parsed markup without script execution."""

    def __init__(self, url: str, html: str) -> None:
        self.url = url
        self.html = html
        self._soup = BeautifulSoup(html, "html.parser")
        self.closed = False

    async def query(self, selector: str, attributes: Sequence[str]) -> Optional[ElementSnapshot]:
        element = self._soup.select_one(selector)
        if element is None:
            return None
        found: Dict[str, str] = {}
        for name in attributes:
            value = element.get(name)
            if value is None:
                continue
            if isinstance(value, list):
                value = " ".join(value)
            found[name] = value
        return ElementSnapshot(attributes=found, inner_html=element.decode_contents())

    async def query_texts(self, selector: str) -> List[str]:
        texts = []
        for element in self._soup.select(selector):
            # <script> bodies are a single Script string
            texts.append(str(element.string) if element.string is not None else element.get_text())
        return texts

    async def close(self) -> None:
        self.closed = True
        self._soup.decompose()


class BrowserPage(RenderedPage):
    """Live Playwright page; closing it tears down the context and returns the browser."""

    def __init__(self, page, context, browser, release: Callable[[Any], Awaitable[None]]) -> None:
        self._page = page
        self._context = context
        self._browser = browser
        self._release = release
        self._closed = False

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def closed(self) -> bool:
        return self._closed

    async def query(self, selector: str, attributes: Sequence[str]) -> Optional[ElementSnapshot]:
        locator = self._page.locator(selector)
        if await locator.count() == 0:
            return None
        element = locator.first
        found: Dict[str, str] = {}
        for name in attributes:
            value = await element.get_attribute(name)
            if value is not None:
                found[name] = value
        inner_html = await element.inner_html()
        return ElementSnapshot(attributes=found, inner_html=inner_html)

    async def query_texts(self, selector: str) -> List[str]:
        return await self._page.locator(selector).all_text_contents()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await _release_browser(self._context, self._browser, self._release)


async def _release_browser(context, browser, release: Callable[[Any], Awaitable[None]]) -> None:
    if context is not None:
        try:
            await context.close()
        except PlaywrightError as exc:
            logger.warning("Failed to close browser context: %s", exc)
    try:
        await release(browser)
    except PlaywrightError as exc:
        logger.warning("Failed to release browser: %s", exc)


class BrowserRenderer:
    """Renders pages in a fresh Playwright context per request.

    ``session`` creates the contexts. ``browsers`` supplies browsers through
    ``acquire()``/``release(browser)``: the session itself launches one per
    request, a :class:`~link_preview.utils.BrowserPool` hands out pooled ones.
    """

    def __init__(
        self,
        session,
        browsers=None,
        navigation_timeout_ms: int = 30000,
        min_content_bytes: int = 128,
    ) -> None:
        self._session = session
        self._browsers = browsers or session
        self._navigation_timeout_ms = navigation_timeout_ms
        self._min_content_bytes = min_content_bytes

    async def render(self, url: str, profile: SiteProfile) -> BrowserPage:
        try:
            browser = await self._browsers.acquire()
        except (PlaywrightError, TimeoutError, OSError) as exc:
            raise BrowserLaunchError(f"Failed to launch browser: {exc}") from exc

        context = None
        try:
            try:
                context = await self._session.new_isolated_context(
                    browser, navigation_timeout_ms=self._navigation_timeout_ms
                )
                page = await context.new_page()
            except PlaywrightError as exc:
                raise PageCreationError(f"Failed to create browser page: {exc}") from exc

            if profile.resources.block:
                try:
                    await page.route("**/*", self._route_handler(profile))
                except PlaywrightError as exc:
                    raise RequestInterceptionError(f"Failed to set up request interception: {exc}") from exc

            await self._navigate(page, url)
        except BaseException:
            # also reached when the render timeout cancels us
            await _release_browser(context, browser, self._browsers.release)
            raise

        return BrowserPage(page, context, browser, self._browsers.release)

    def _route_handler(self, profile: SiteProfile):
        policy = profile.resources

        async def _handle(route) -> None:
            if policy.allows(route.request.resource_type):
                await route.continue_()
            else:
                await route.abort()

        return _handle

    async def _navigate(self, page, url: str) -> None:
        logger.debug("Navigating to %s", url)
        try:
            response = await page.goto(url, wait_until="networkidle", timeout=self._navigation_timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationError(f"Navigation timed out after {self._navigation_timeout_ms}ms") from exc
        except PlaywrightError as exc:
            raise NavigationError(f"Navigation failed: {exc}") from exc

        if response is None:
            raise NavigationError("Navigation returned no response")
        if response.status >= 400:
            raise NavigationError(f"Page responded with HTTP {response.status}")

        try:
            html = await page.content()
        except PlaywrightError as exc:
            raise NavigationError(f"Failed to read page content: {exc}") from exc
        _check_content_length(html, self._min_content_bytes)
        logger.info("Page loaded: %s (HTTP %s, %d bytes)", page.url, response.status, len(html))


class StaticRenderer:
    """Fetches markup over HTTP and parses it without executing scripts."""

    def __init__(self, timeout: float = 30.0, min_content_bytes: int = 128) -> None:
        self._http_timeout = aiohttp.ClientTimeout(total=timeout)
        self._min_content_bytes = min_content_bytes

    async def render(self, url: str, profile: SiteProfile) -> StaticPage:
        status, final_url, html = await self._fetch(url)
        if status >= 400:
            raise NavigationError(f"Page responded with HTTP {status}")
        _check_content_length(html, self._min_content_bytes)
        logger.info("Page fetched: %s (HTTP %s, %d bytes)", final_url, status, len(html))
        return StaticPage(final_url, html)

    async def _fetch(self, url: str):
        try:
            async with aiohttp.ClientSession(timeout=self._http_timeout, headers=random_headers()) as session:
                async with session.get(url, allow_redirects=True) as response:
                    html = await response.text(errors="replace")
                    return response.status, str(response.url), html
        except asyncio.TimeoutError as exc:
            raise NavigationError("HTTP fetch timed out") from exc
        except aiohttp.ClientError as exc:
            raise NavigationError(f"HTTP fetch failed: {exc}") from exc


def _check_content_length(html: str, minimum: int) -> None:
    size = len((html or "").encode("utf-8"))
    if size < minimum:
        raise NavigationError(f"Page content too short ({size} bytes < {minimum})")


def build_renderer(settings, session=None, browsers=None):
    if settings.renderer == "static":
        return StaticRenderer(
            timeout=settings.navigation_timeout_ms / 1000,
            min_content_bytes=settings.min_content_bytes,
        )
    return BrowserRenderer(
        session,
        browsers=browsers,
        navigation_timeout_ms=settings.navigation_timeout_ms,
        min_content_bytes=settings.min_content_bytes,
    )
