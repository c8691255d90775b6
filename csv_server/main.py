"""
CSV investment-data server — FastAPI app factory with startup dataset loading.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from csv_server import __version__
from csv_server.api.dependencies import set_renderer, set_store
from csv_server.api.router_meta import router as meta_router
from csv_server.api.router_rebalance import router as rebalance_router
from csv_server.api.router_refresh import router as refresh_router
from csv_server.api.router_reports import router as reports_router
from csv_server.api.router_tickers import router as tickers_router
from csv_server.config import CONFIG_PATH, ServerConfig, load_config
from csv_server.data.store import DatasetStore
from csv_server.errors import CsvServerError, Internal, InvalidQuery, NotFound
from csv_server.render.renderer import TemplateRenderer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load configuration and every dataset before accepting requests."""
    cfg: ServerConfig = app.state.config or load_config(os.environ.get("CSV_SERVER_CONFIG", CONFIG_PATH))
    app.state.config = cfg

    store = DatasetStore.from_config(cfg)
    renderer = TemplateRenderer(cfg.templates_dir)
    set_store(store)
    set_renderer(renderer)

    await run_in_threadpool(store.load_all)
    loaded = [s["name"] for s in store.statuses() if s["version"] is not None]
    logger.info(
        "csv-server ready",
        extra={"datasets": store.names(), "loaded": loaded, "templates": renderer.templates()},
    )
    try:
        yield
    finally:
        set_store(None)
        set_renderer(None)
        store.close()


# ---------------------------------------------------------------------------
# Error responses: {"error": {"code", "message", "parameter"}}
# ---------------------------------------------------------------------------

async def _handle_csv_server_error(request: Request, exc: CsvServerError) -> JSONResponse:
    if exc.status >= 500:
        logger.error(
            "Request failed",
            extra={"path": request.url.path, "code": exc.code, "detail": exc.message},
        )
    return JSONResponse(exc.to_dict(), status_code=exc.status)


async def _handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        err = NotFound(f"No route for {request.method} {request.url.path}")
        return JSONResponse(err.to_dict(), status_code=404)
    body = {"error": {"code": "http_error", "message": str(exc.detail), "parameter": None}}
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path")]
    err = InvalidQuery(first.get("msg", "Invalid request"), parameter=".".join(loc) or None)
    return JSONResponse(err.to_dict(), status_code=err.status)


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", extra={"path": request.url.path})
    return JSONResponse(Internal().to_dict(), status_code=500)


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    app = FastAPI(
        title="CSV Investment Data Server",
        description="Aggregated reports over investment CSV exports",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CsvServerError, _handle_csv_server_error)
    app.add_exception_handler(StarletteHTTPException, _handle_http_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    app.include_router(meta_router)
    app.include_router(reports_router)
    app.include_router(refresh_router)
    app.include_router(tickers_router)
    app.include_router(rebalance_router)
    return app


app = create_app()
