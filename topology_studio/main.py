from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import metrics, system, workspace
from .api.http_metrics import API_REQUEST_DURATION, API_REQUESTS
from .config import get_settings
from .dependencies import close_resources, init_resources


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context:
    - Initialize shared resources (repository, orchestrator, workspace)
    - Cancel running jobs and close clients on shutdown
    """
    await init_resources()
    try:
        yield
    finally:
        await close_resources()


def create_app() -> FastAPI:
    """
    Application factory for the topology studio API.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        debug=settings.debug,
        docs_url=f"{settings.api_prefix.rstrip('/')}/docs",
        openapi_url=f"{settings.api_prefix.rstrip('/')}/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------ #
    # Request ID middleware (correlation IDs)
    # ------------------------------------------------------------------ #
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        logger = structlog.get_logger("http")
        logger.info("http_request_start", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            logger.info("http_request_end", path=request.url.path)
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        return response

    # ------------------------------------------------------------------ #
    # HTTP metrics middleware (per-route Prometheus metrics)
    # ------------------------------------------------------------------ #
    @app.middleware("http")
    async def http_metrics_middleware(request: Request, call_next):
        start = time.perf_counter()
        method = request.method.upper()
        status_code: int | None = None

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception:
            status_code = 500
            raise
        finally:
            # route template keeps label cardinality bounded
            route = request.scope.get("route")
            path = getattr(route, "path_format", None) or request.url.path
            API_REQUESTS.labels(
                path=path,
                method=method,
                status=str(status_code) if status_code is not None else "unknown",
            ).inc()
            API_REQUEST_DURATION.labels(path=path, method=method).observe(time.perf_counter() - start)

    api_prefix = settings.api_prefix.rstrip("/")

    app.include_router(system.router, prefix=api_prefix)
    app.include_router(metrics.router, prefix=api_prefix)
    app.include_router(workspace.router, prefix=api_prefix)
    workspace.register_exception_handlers(app)

    return app


# ASGI entrypoint, e.g. uvicorn topology_studio.main:app --reload
app = create_app()
