from __future__ import annotations

from fastapi import APIRouter

from . import metrics, system, workspace

__all__ = ["router", "metrics", "system", "workspace"]

# Aggregate router, for mounting everything under one prefix elsewhere.
router = APIRouter()
router.include_router(system.router)
router.include_router(metrics.router)
router.include_router(workspace.router)
