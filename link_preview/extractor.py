from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .assembler import failure_from_error
from .cascade import extract
from .models import ErrorKind, ExtractionRequest, ExtractionResult, Failure, SiteProfile, debug_view
from .renderer import RenderError
from .sites import DEFAULT_CLASSIFIER, SiteClassifier
from .utils import dump_debug_payload

logger = logging.getLogger(__name__)


class ExtractionPipeline:
    """Classify → render → cascade → normalize → assemble, one request at a time.

    The pipeline holds no per-request state, so one instance can serve any
    number of concurrent ``extract_image`` calls.
    """

    def __init__(
        self,
        renderer,
        classifier: Optional[SiteClassifier] = None,
        render_timeout: float = 45.0,
        debug: bool = False,
        debug_dir: str = "debug-artifacts",
    ) -> None:
        self._renderer = renderer
        self._classifier = classifier or DEFAULT_CLASSIFIER
        self._render_timeout = render_timeout
        self._debug = debug
        self._debug_dir = debug_dir

    async def extract_image(self, url: Any) -> ExtractionResult:
        try:
            request = ExtractionRequest(url=url)
        except ValidationError as exc:
            reason = exc.errors()[0].get("msg", "invalid url") if exc.errors() else "invalid url"
            logger.info("Rejected extraction request for %r: %s", url, reason)
            return failure_from_error(ErrorKind.INVALID_INPUT, f"Invalid url: {reason}")

        profile = self._classifier.classify(request.url)
        logger.info("Starting image extraction for %s (profile=%s)", request.url, profile.name)

        result = await self._run(request.url, profile)

        if result.ok:
            logger.info("Extracted image for %s via %s: %s", request.url, result.matched_rule, result.image_url[:100])
        else:
            logger.warning("Image extraction failed for %s: %s (%s)", request.url, result.kind.value, result.message)
            if self._debug:
                self._dump(request.url, profile, result)
        return result

    async def _run(self, url: str, profile: SiteProfile) -> ExtractionResult:
        try:
            page = await asyncio.wait_for(self._renderer.render(url, profile), timeout=self._render_timeout)
        except asyncio.TimeoutError:
            return failure_from_error(
                ErrorKind.NAVIGATION_ERROR,
                f"Rendering {url} exceeded {self._render_timeout:.0f}s",
            )
        except RenderError as exc:
            return failure_from_error(exc.kind, str(exc))

        try:
            return await extract(page, profile, page.url or url)
        finally:
            try:
                await page.close()
            except Exception:
                logger.exception("Failed to release rendered page for %s", url)

    def _dump(self, url: str, profile: SiteProfile, result: Failure) -> None:
        payload: Dict[str, Any] = {
            "url": url,
            "profile": profile.name,
            "result": debug_view(result),
        }
        prefix = "extract-" + hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
        try:
            dump_debug_payload(self._debug_dir, prefix, payload)
        except OSError:  # pragma: no cover - best effort debug path
            logger.exception("Failed to write debug payload")
