# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HTTP boundary: Starlette app, request logging, outcome -> response mapping.

Every request goes through :class:`RenderOrchestrator`. Anything it raises is
caught here once, logged with a traceback and answered with the HTML error
page (500). Stale requests never reach this layer as errors; they arrive as
:class:`Redirect` outcomes.
"""

from __future__ import annotations

import contextlib
import functools
import logging
import sys
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.routing import Route

from . import __version__
from .cache import PageCache
from .config import GolfConfig
from .context import RequestContext
from .error_page import render_error_page
from .logging_config import bind_request
from .orchestrator import NotFound, Outcome, PageResult, Redirect, RenderOrchestrator, format_session
from .renderer import RenderEngine
from .resources import ResourceLocator
from .session_manager import SessionRegistry

logger = logging.getLogger(__name__)

_METHODS = ["GET", "POST", "HEAD"]


def request_line(request: Request) -> str:
    """``METHOD scheme://server:port/uri?query host`` for the access log."""
    url = request.url
    server = f"{url.hostname}:{url.port or (443 if url.scheme == 'https' else 80)}" if url.hostname else ""
    query = f"?{url.query}" if url.query else ""
    host = request.client.host if request.client else "-"
    return f"{request.method} {url.scheme}://{server}{url.path}{query} {host}"


def to_response(outcome: Outcome) -> Response:
    if isinstance(outcome, Redirect):
        return RedirectResponse(outcome.location, status_code=302)
    if isinstance(outcome, NotFound):
        return PlainTextResponse(f"File not found ({outcome.path})", status_code=404)
    if isinstance(outcome, PageResult):
        return Response(outcome.body, media_type=outcome.content_type)
    raise TypeError(f"Unknown outcome: {outcome!r}")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


async def golf_endpoint(request: Request) -> Response:
    orchestrator: RenderOrchestrator = request.app.state.orchestrator
    ctx = RequestContext.from_request(request)
    bind_request(request_id=ctx.request_id, session_id=ctx.session)
    logger.info("%s%s", format_session(ctx.session), request_line(request))

    try:
        outcome = await orchestrator.handle(ctx)
    except Exception as exc:
        logger.exception("%sRequest failed: %s", format_session(ctx.session), exc)
        return HTMLResponse(render_error_page(exc), status_code=500)

    if isinstance(outcome, Redirect):
        logger.info("%sredirect -> `%s'", format_session(ctx.session), outcome.location)
    return to_response(outcome)


async def health(request: Request) -> JSONResponse:
    orchestrator: RenderOrchestrator = request.app.state.orchestrator
    stats = orchestrator.page_cache.stats
    body: dict = {
        "status": "ok",
        "version": __version__,
        "sessions": orchestrator.registry.active_sessions,
        "cached_pages": len(orchestrator.page_cache),
        "cache": {
            "hits": stats.hits,
            "misses": stats.misses,
            "renders": stats.renders,
            "render_failures": stats.render_failures,
            "evictions": stats.evictions,
        },
    }
    engine_health = getattr(orchestrator.engine, "health", None)
    if callable(engine_health):
        snapshot = engine_health()
        body["engine"] = {
            "active_handles": snapshot.active_handles,
            "max_handles": snapshot.max_handles,
            "browser_connected": snapshot.browser_connected,
        }
    return JSONResponse(body)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def build_orchestrator(config: GolfConfig, engine: RenderEngine) -> RenderOrchestrator:
    max_sessions = config.session_capacity()
    if max_sessions >= config.max_handles:
        logger.warning(
            "max_sessions=%d leaves no spare render handle (max_handles=%d); "
            "new sessions and cache fills will wait for idle eviction",
            max_sessions,
            config.max_handles,
        )
    registry = SessionRegistry(
        engine.release_handle,
        idle_timeout=config.session_idle_timeout,
        max_sessions=max_sessions,
    )
    return RenderOrchestrator(
        engine,
        resources=ResourceLocator(config.app_root),
        page_cache=PageCache(config.max_cached_pages, per_path_locks=config.per_path_locks),
        registry=registry,
        render_timeout=config.render_timeout,
        evict_stale_sessions=config.evict_stale_sessions,
    )


def create_app(config: GolfConfig | None = None, *, engine: RenderEngine | None = None) -> Starlette:
    """Build the Starlette app.

    Without *engine* the lifespan launches a :class:`PlaywrightEngine` and
    shuts it down on exit; a supplied engine is used as-is and left running.
    """
    config = config or GolfConfig()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with contextlib.AsyncExitStack() as stack:
            active = engine
            if active is None:
                from .renderer import PlaywrightEngine

                active = await stack.enter_async_context(PlaywrightEngine(config.engine_config()))
            orchestrator = build_orchestrator(config, active)
            orchestrator.registry.start_reaper()
            app.state.orchestrator = orchestrator
            logger.info(
                "Golf proxy ready (app_root=%s, max_handles=%d, render_timeout=%.0fs)",
                config.app_root,
                config.max_handles,
                config.render_timeout,
            )
            try:
                yield
            finally:
                await orchestrator.registry.shutdown()
                logger.info("Golf proxy shutdown complete")

    return Starlette(
        routes=[
            Route("/_golf/health", health, methods=["GET"]),
            Route("/{path:path}", golf_endpoint, methods=_METHODS),
        ],
        lifespan=lifespan,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _run_http_server(config: GolfConfig) -> None:
    import uvicorn

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config),
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            log_config=None,
        )
    )
    await server.serve()


def main(argv: list[str] | None = None) -> None:
    """Entry point for the golf-proxy server."""
    config = GolfConfig.from_args(argv if argv is not None else sys.argv[1:])

    # Configure structlog BEFORE any log output
    from .logging_config import configure as configure_logging

    configure_logging(json_output=config.json_logs, level=config.log_level)

    logger.info("Starting golf proxy (http, host=%s, port=%d)", config.host, config.port)
    import anyio

    anyio.run(functools.partial(_run_http_server, config))


if __name__ == "__main__":
    main()
