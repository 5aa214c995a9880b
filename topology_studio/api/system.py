from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from .. import __version__
from ..config import Settings
from ..dependencies import (
    generation_enabled,
    get_logger,
    get_redis_client,
    get_settings_dep,
    get_workspace,
)
from ..workspace import Workspace

router = APIRouter(tags=["system"])


@router.get("/health", summary="Liveness check")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/ready", summary="Readiness check")
async def ready(
    workspace: Workspace = Depends(get_workspace),
    enabled: bool = Depends(generation_enabled),
    logger=Depends(get_logger),
) -> Dict[str, Any]:
    """
    Readiness probe: Redis connectivity (when configured), whether a
    generation service is wired in, and whether the open workspace is
    consistent.
    """
    status: Dict[str, Any] = {
        "status": "ok",
        "redis": "unknown",
        "codegen": "enabled" if enabled else "disabled",
        "workspace": workspace.graph_id,
        "consistent": workspace.engine.is_consistent(),
    }

    redis_client = get_redis_client()
    if redis_client is None:
        status["redis"] = "disabled"
    else:
        try:
            await redis_client.ping()
            status["redis"] = "ok"
        except Exception as exc:  # pragma: no cover - network issues
            logger.error("ready_redis_check_failed", error=str(exc))
            status["redis"] = f"error: {exc}"
            status["status"] = "degraded"

    if not status["consistent"]:
        logger.warning("ready_workspace_diverged", divergence=workspace.engine.divergence())
        status["status"] = "degraded"

    return status


@router.get("/version", summary="Service version")
async def version(settings: Settings = Depends(get_settings_dep)) -> Dict[str, str]:
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "env": settings.env,
    }
