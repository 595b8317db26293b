from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List, Optional, Tuple

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from .extractor import ExtractionPipeline
from .renderer import build_renderer
from .sites import build_classifier
from .utils import (
    BrowserPool,
    PlaywrightSession,
    Settings,
    configure_logging,
    load_settings,
    load_site_profiles,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/api/link-preview")
async def link_preview(request: Request) -> JSONResponse:
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    url = payload.get("url") if isinstance(payload, dict) else None

    result = await request.app.state.pipeline.extract_image(url)
    status, body = result.to_response()
    return JSONResponse(body, status_code=status)


def build_pipeline(settings: Settings) -> Tuple[ExtractionPipeline, Callable[[], Awaitable[None]]]:
    """Wire renderer, browser pool and site profiles from settings.

    Returns the pipeline and a coroutine function that releases the shared
    Playwright driver and any pooled browsers.
    """
    session: Optional[PlaywrightSession] = None
    pool: Optional[BrowserPool] = None
    if settings.renderer == "browser":
        session = PlaywrightSession(settings.headful)
        if settings.browser_pool_size:
            pool = BrowserPool(session, settings.browser_pool_size, settings.pool_checkout_timeout)

    renderer = build_renderer(settings, session=session, browsers=pool)
    classifier = build_classifier(load_site_profiles(settings.site_profiles_path))
    pipeline = ExtractionPipeline(
        renderer,
        classifier=classifier,
        render_timeout=settings.render_timeout,
        debug=settings.debug_extract,
        debug_dir=settings.debug_dir,
    )

    async def close() -> None:
        if pool:
            await pool.shutdown()
        if session:
            await session.stop()

    return pipeline, close


def create_app(pipeline: Optional[ExtractionPipeline] = None, settings: Optional[Settings] = None) -> FastAPI:
    closers: List[Callable[[], Awaitable[None]]] = []

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.pipeline is None:
            app.state.pipeline, close = build_pipeline(settings or load_settings())
            closers.append(close)
        try:
            yield
        finally:
            for close in closers:
                await close()

    app = FastAPI(title="link-preview", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.include_router(router)
    return app


def run_api() -> None:
    import uvicorn

    settings = load_settings()
    configure_logging(settings.debug_extract)
    logger.info("Starting link-preview API on %s:%d (renderer=%s)", settings.api_host, settings.api_port, settings.renderer)
    uvicorn.run(create_app(settings=settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run_api()
