from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..dependencies import get_workspace
from ..domain_metrics import ACTIVE_JOBS, WORKSPACE_NODES, WORKSPACE_SHAPES
from ..workspace import Workspace

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics(workspace: Workspace = Depends(get_workspace)) -> Response:
    """
    Prometheus exposition. Workspace gauges are sampled on each scrape;
    counters and histograms are updated where the work happens.
    """
    summary = workspace.describe()
    WORKSPACE_NODES.set(summary["nodes"])
    WORKSPACE_SHAPES.set(summary["shapes"])
    ACTIVE_JOBS.set(workspace.orchestrator.stats()["active_jobs"])
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
