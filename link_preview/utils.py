from __future__ import annotations

import asyncio
import json
import logging
import os
import pathlib
import random
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    renderer: str = "browser"
    headful: bool = False
    navigation_timeout_ms: int = 30000
    render_timeout: float = 45.0
    min_content_bytes: int = 128
    browser_pool_size: int = 0
    pool_checkout_timeout: float = 30.0
    site_profiles_path: str = "site-profiles.json"
    debug_extract: bool = False
    debug_dir: str = "debug-artifacts"
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    model_config = {
        "extra": "ignore"
    }


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings() -> Settings:
    raw = {
        "renderer": (os.getenv("LINK_PREVIEW_RENDERER") or "browser").strip().lower(),
        "headful": _parse_bool(os.getenv("HEADFUL"), False),
        "navigation_timeout_ms": os.getenv("NAVIGATION_TIMEOUT_MS") or 30000,
        "render_timeout": os.getenv("RENDER_TIMEOUT") or 45.0,
        "min_content_bytes": os.getenv("MIN_CONTENT_BYTES") or 128,
        "browser_pool_size": os.getenv("BROWSER_POOL_SIZE") or 0,
        "pool_checkout_timeout": os.getenv("POOL_CHECKOUT_TIMEOUT") or 30.0,
        "site_profiles_path": os.getenv("SITE_PROFILES_PATH") or "site-profiles.json",
        "debug_extract": _parse_bool(os.getenv("DEBUG_EXTRACT"), False),
        "debug_dir": os.getenv("DEBUG_DIR") or "debug-artifacts",
        "api_host": os.getenv("API_HOST") or "127.0.0.1",
        "api_port": os.getenv("API_PORT") or 8000,
    }

    try:
        settings = Settings(**raw)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.renderer not in {"browser", "static"}:
        raise RuntimeError(f"Invalid configuration: unknown renderer {settings.renderer!r}")
    if settings.browser_pool_size < 0:
        raise RuntimeError("Invalid configuration: BROWSER_POOL_SIZE must be >= 0")

    debug_dir = pathlib.Path(settings.debug_dir)
    if settings.debug_extract:
        debug_dir.mkdir(parents=True, exist_ok=True)

    return settings


# the browser strategy always launches Chromium
_CHROMIUM_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.6422.78 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
]

_USER_AGENTS = _CHROMIUM_USER_AGENTS + [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.3 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:126.0) Gecko/20100101 Firefox/126.0",
]

_VIEWPORT_CHOICES = [
    (1280, 720),
    (1366, 768),
    (1440, 900),
    (1536, 864),
    (1920, 1080),
]

_TIMEZONES = ["America/New_York", "America/Los_Angeles", "America/Chicago"]

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-Dest": "document",
}

_STEALTH_SCRIPTS = [
    "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});",
    "window.chrome = {runtime: {}};",
    "Object.defineProperty(navigator, 'languages', {get: () => ['en-US','en']});",
    "Object.defineProperty(navigator, 'plugins', {get: () => [1,2,3,4,5]});",
]


def random_headers() -> Dict[str, str]:
    headers = dict(DEFAULT_HEADERS)
    headers["User-Agent"] = random.choice(_USER_AGENTS)
    return headers


class PlaywrightSession:
    """Owns the Playwright driver; launches one browser per acquire()."""

    def __init__(self, headful: bool = False) -> None:
        self._headful = headful
        self._playwright = None
        self._chromium = None
        self._startup_lock = asyncio.Lock()

    async def start(self) -> None:
        if self._playwright:
            return
        async with self._startup_lock:
            if self._playwright:
                return
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()
            self._chromium = self._playwright.chromium

    async def stop(self) -> None:
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
            self._chromium = None

    def _default_launch_args(self) -> list[str]:
        args = [
            "--disable-blink-features=AutomationControlled",
            "--disable-dev-shm-usage",
            "--no-sandbox",
            "--disable-infobars",
        ]
        if self._headful:
            args.append("--start-maximized")
        return args

    def _default_context_options(self) -> Dict[str, Any]:
        width, height = random.choice(_VIEWPORT_CHOICES)
        return {
            "viewport": {"width": width, "height": height},
            "user_agent": random.choice(_CHROMIUM_USER_AGENTS),
            "timezone_id": random.choice(_TIMEZONES),
            "locale": "en-US",
            "java_script_enabled": True,
        }

    async def launch_browser(self):
        await self.start()
        return await self._chromium.launch(
            headless=not self._headful,
            args=self._default_launch_args(),
        )

    async def acquire(self):
        return await self.launch_browser()

    async def release(self, browser) -> None:
        await browser.close()

    async def new_isolated_context(self, browser, navigation_timeout_ms: int = 30000, **kwargs):
        """Create a fresh, cookie-less context on ``browser`` with a desktop identity."""
        context_options = self._default_context_options()
        context_options.update(kwargs)
        context = await browser.new_context(**context_options)
        context.set_default_navigation_timeout(navigation_timeout_ms)
        context.set_default_timeout(navigation_timeout_ms)
        for script in _STEALTH_SCRIPTS:
            await context.add_init_script(script)
        await context.set_extra_http_headers(DEFAULT_HEADERS)
        return context


class BrowserPool:
    """Bounded set of browsers handed out with checkout/checkin semantics.

    Browsers are launched lazily and relaunched when they disconnect. Callers
    must still create a fresh context per checkout; the pool only bounds the
    number of browser processes.
    """

    def __init__(self, session: PlaywrightSession, size: int, checkout_timeout: float = 30.0) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self._session = session
        self._size = size
        self._checkout_timeout = checkout_timeout
        self._slots: asyncio.Queue = asyncio.Queue()
        for _ in range(size):
            self._slots.put_nowait(None)
        self._browsers: List[Any] = []
        self._checked_out = 0

    @property
    def size(self) -> int:
        return self._size

    @property
    def checked_out(self) -> int:
        return self._checked_out

    async def acquire(self):
        try:
            browser = await asyncio.wait_for(self._slots.get(), timeout=self._checkout_timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"no browser available within {self._checkout_timeout:.0f}s") from exc

        if browser is not None and not browser.is_connected():
            logger.info("Pooled browser disconnected; relaunching")
            self._forget(browser)
            browser = None

        if browser is None:
            try:
                browser = await self._session.launch_browser()
            except BaseException:
                self._slots.put_nowait(None)
                raise
            self._browsers.append(browser)

        self._checked_out += 1
        logger.debug("Browser checked out (%d/%d in use)", self._checked_out, self._size)
        return browser

    async def release(self, browser) -> None:
        self._checked_out -= 1
        self._slots.put_nowait(browser)
        logger.debug("Browser checked in (%d/%d in use)", self._checked_out, self._size)

    async def shutdown(self) -> None:
        browsers, self._browsers = self._browsers, []
        for browser in browsers:
            try:
                await browser.close()
            except Exception as exc:
                logger.warning("Failed to close pooled browser: %s", exc)

    def _forget(self, browser) -> None:
        if browser in self._browsers:
            self._browsers.remove(browser)


def configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def dump_debug_payload(debug_dir: str, prefix: str, payload: Dict[str, Any]) -> pathlib.Path:
    path = pathlib.Path(debug_dir) / f"{prefix}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    return path


def load_site_profiles(path: str = "site-profiles.json") -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        logger.info("%s not found; continuing with built-in site profiles", path)
        return {}
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse site profiles: %s", exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Site profiles file %s must contain a JSON object", path)
        return {}
    return data
