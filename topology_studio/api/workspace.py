from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from ..codegen.handle import JobHandle
from ..config import Settings
from ..dependencies import (
    generation_enabled,
    get_context_logger,
    get_settings_dep,
    get_workspace,
)
from ..errors import (
    InvariantViolation,
    PreconditionError,
    TopologyNotFoundError,
    UnknownConnectorError,
    UnknownNodeError,
)
from ..models.canvas import CanvasConnector, CanvasShape
from ..models.generation import (
    ArtifactFragment,
    ConversationMessage,
    GeneratedArtifact,
    GenerationConfig,
    GenerationJob,
)
from ..models.topology import Edge, Topology, TopologyNode
from ..workspace import Workspace

router = APIRouter(tags=["workspace"], prefix="/workspace")


# ---------- Pydantic Schemas ----------


class CanvasView(BaseModel):
    shapes: List[CanvasShape] = Field(default_factory=list)
    connectors: List[CanvasConnector] = Field(default_factory=list)


class WorkspaceSummary(BaseModel):
    graph_id: str
    nodes: int
    edges: int
    shapes: int
    connectors: int
    artifacts: int
    has_checkpoint: bool


class GenerateRequest(BaseModel):
    """
    Request body for /workspace/generate. Provider and model fall back to
    the configured defaults.
    """

    provider: Optional[str] = None
    model: Optional[str] = None
    context: List[ConversationMessage] = Field(default_factory=list)
    abort_in_flight: bool = False


class JobView(BaseModel):
    handle_id: str
    job_id: Optional[str] = None
    graph_id: str
    state: str
    status: str
    step: str = ""
    attempts: int = 0
    error: Optional[str] = None
    artifact_nodes: List[str] = Field(default_factory=list)

    @classmethod
    def from_handle(cls, handle: JobHandle) -> "JobView":
        return cls(
            handle_id=handle.id,
            job_id=handle.job_id,
            graph_id=handle.graph_id,
            state=handle.state.value,
            status=handle.job.status.value,
            step=handle.job.step,
            attempts=handle.job.attempts,
            error=handle.job.error,
            artifact_nodes=sorted(handle.artifacts),
        )


class ArtifactView(BaseModel):
    graph_id: str
    node_id: str
    fragments: List[ArtifactFragment]
    file_name: Optional[str] = None
    path: Optional[str] = None
    job_id: Optional[str] = None

    @classmethod
    def from_artifact(cls, artifact: GeneratedArtifact) -> "ArtifactView":
        return cls(
            graph_id=artifact.graph_id,
            node_id=artifact.node_id,
            fragments=list(artifact.fragments),
            file_name=artifact.file_name,
            path=artifact.path,
            job_id=artifact.job_id,
        )


def _coerce_fields(model: Type[BaseModel], current: BaseModel, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Accept camelCase or snake_case keys for a partial update and return
    validated values keyed by field name.
    """
    names = {}
    for name, info in model.model_fields.items():
        names[name] = name
        if info.alias:
            names[info.alias] = name
    unknown = sorted(k for k in fields if k not in names)
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown fields: {', '.join(unknown)}",
        )
    by_name = {names[k]: v for k, v in fields.items()}
    validated = model.model_validate({**current.model_dump(), **by_name})
    return {k: getattr(validated, k) for k in by_name}


# ---------- Topology ----------


@router.get("", response_model=WorkspaceSummary)
async def summary(workspace: Workspace = Depends(get_workspace)) -> WorkspaceSummary:
    return WorkspaceSummary(**workspace.describe())


@router.get("/topology", response_model=Topology)
async def get_topology(workspace: Workspace = Depends(get_workspace)) -> Topology:
    return workspace.topology.snapshot()


@router.put("/topology", response_model=Topology)
async def replace_topology(
    topology: Topology,
    workspace: Workspace = Depends(get_workspace),
    logger=Depends(get_context_logger),
) -> Topology:
    """Replace the whole topology and rebuild the canvas from it."""
    workspace.load(topology)
    logger.info("topology_replaced_via_api", graph_id=topology.id)
    return workspace.topology.snapshot()


@router.post("/topology/open/{graph_id}", response_model=Topology)
async def open_topology(graph_id: str, workspace: Workspace = Depends(get_workspace)) -> Topology:
    await workspace.open_topology(graph_id)
    return workspace.topology.snapshot()


@router.post("/topology/save", response_model=Topology)
async def save_topology(workspace: Workspace = Depends(get_workspace)) -> Topology:
    return await workspace.save()


@router.get("/topologies", response_model=List[str])
async def list_topologies(workspace: Workspace = Depends(get_workspace)) -> List[str]:
    return await workspace.repository.list_topologies()


@router.delete("/topologies/{graph_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_topology(graph_id: str, workspace: Workspace = Depends(get_workspace)) -> None:
    """Delete a stored topology and its artifacts. The open workspace is left as it is."""
    if not await workspace.repository.delete_topology(graph_id):
        raise TopologyNotFoundError(graph_id)
    workspace.artifact_store.clear(graph_id)


@router.post("/topology/clear", response_model=Topology)
async def clear_topology(workspace: Workspace = Depends(get_workspace)) -> Topology:
    workspace.clear()
    return workspace.topology.snapshot()


@router.post("/topology/nodes", response_model=TopologyNode, status_code=status.HTTP_201_CREATED)
async def add_node(node: TopologyNode, workspace: Workspace = Depends(get_workspace)) -> TopologyNode:
    workspace.engine.on_topology_node_added(node)
    return workspace.topology.get_node(node.id)


@router.post("/topology/nodes/{node_id}/edges", response_model=TopologyNode, status_code=status.HTTP_201_CREATED)
async def add_edge(node_id: str, edge: Edge, workspace: Workspace = Depends(get_workspace)) -> TopologyNode:
    workspace.engine.on_topology_edge_added(node_id, edge)
    return workspace.topology.get_node(node_id)


@router.post("/checkpoint", status_code=status.HTTP_204_NO_CONTENT)
async def checkpoint(workspace: Workspace = Depends(get_workspace)) -> None:
    workspace.checkpoint()


@router.post("/checkpoint/restore", response_model=Topology)
async def restore_checkpoint(workspace: Workspace = Depends(get_workspace)) -> Topology:
    if not workspace.restore_checkpoint():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No checkpoint to restore.")
    return workspace.topology.snapshot()


# ---------- Canvas ----------


@router.get("/canvas", response_model=CanvasView)
async def get_canvas(workspace: Workspace = Depends(get_workspace)) -> CanvasView:
    return CanvasView(shapes=workspace.canvas.shapes(), connectors=workspace.canvas.connectors())


@router.post("/canvas/shapes", response_model=TopologyNode, status_code=status.HTTP_201_CREATED)
async def add_shape(shape: CanvasShape, workspace: Workspace = Depends(get_workspace)) -> TopologyNode:
    return workspace.engine.on_canvas_shape_added(shape)


@router.patch("/canvas/shapes/{shape_id}", response_model=CanvasShape)
async def update_shape(
    shape_id: str,
    fields: Dict[str, Any],
    workspace: Workspace = Depends(get_workspace),
) -> CanvasShape:
    shape = workspace.canvas.get_shape(shape_id)
    if shape is None:
        raise UnknownNodeError(shape_id)
    return workspace.engine.on_canvas_shape_updated(shape_id, _coerce_fields(CanvasShape, shape, fields))


@router.delete("/canvas/shapes/{shape_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_shape(shape_id: str, workspace: Workspace = Depends(get_workspace)) -> None:
    workspace.engine.on_canvas_shape_removed(shape_id)


@router.post("/canvas/connectors", response_model=Edge, status_code=status.HTTP_201_CREATED)
async def finalize_connector(
    connector: CanvasConnector,
    workspace: Workspace = Depends(get_workspace),
) -> Edge:
    return workspace.engine.on_canvas_connector_finalized(connector)


@router.patch("/canvas/connectors/{connector_id}", response_model=CanvasConnector)
async def update_connector(
    connector_id: str,
    fields: Dict[str, Any],
    workspace: Workspace = Depends(get_workspace),
) -> CanvasConnector:
    connector = workspace.canvas.get_connector(connector_id)
    if connector is None:
        raise UnknownConnectorError(connector_id)
    return workspace.engine.on_canvas_connector_updated(
        connector_id, _coerce_fields(CanvasConnector, connector, fields)
    )


@router.delete("/canvas/connectors/{connector_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_connector(connector_id: str, workspace: Workspace = Depends(get_workspace)) -> None:
    workspace.engine.on_canvas_connector_removed(connector_id)


# ---------- Generation ----------


@router.post("/generate", response_model=JobView, status_code=status.HTTP_202_ACCEPTED)
async def generate(
    body: GenerateRequest,
    workspace: Workspace = Depends(get_workspace),
    settings: Settings = Depends(get_settings_dep),
    enabled: bool = Depends(generation_enabled),
    logger=Depends(get_context_logger),
) -> JobView:
    """
    Submit the current topology for generation. Returns immediately; poll
    /workspace/jobs/{handle_id} for progress.
    """
    if not enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Code generation service is not configured.",
        )
    config = GenerationConfig(
        provider=body.provider or settings.default_llm_provider,
        model=body.model or settings.default_llm_model,
        context=body.context,
    )
    handle = workspace.generate(config, abort_in_flight=body.abort_in_flight)
    logger.info("generation_requested", handle_id=handle.id, graph_id=handle.graph_id)
    return JobView.from_handle(handle)


@router.get("/jobs", response_model=List[JobView])
async def list_jobs(workspace: Workspace = Depends(get_workspace)) -> List[JobView]:
    return [JobView.from_handle(h) for h in workspace.orchestrator.active_jobs()]


@router.get("/jobs/stats")
async def job_stats(workspace: Workspace = Depends(get_workspace)) -> Dict[str, int]:
    return workspace.orchestrator.stats()


@router.get("/jobs/history", response_model=List[GenerationJob])
async def job_history(workspace: Workspace = Depends(get_workspace)) -> List[GenerationJob]:
    return workspace.orchestrator.history()


def _handle_or_404(workspace: Workspace, handle_id: str) -> JobHandle:
    handle = workspace.orchestrator.get(handle_id)
    if handle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {handle_id!r} not found.")
    return handle


@router.get("/jobs/{handle_id}", response_model=JobView)
async def get_job(handle_id: str, workspace: Workspace = Depends(get_workspace)) -> JobView:
    return JobView.from_handle(_handle_or_404(workspace, handle_id))


@router.delete("/jobs/{handle_id}", response_model=JobView)
async def cancel_job(handle_id: str, workspace: Workspace = Depends(get_workspace)) -> JobView:
    handle = _handle_or_404(workspace, handle_id)
    handle.cancel()
    return JobView.from_handle(handle)


@router.post("/jobs/{handle_id}/acknowledge", status_code=status.HTTP_204_NO_CONTENT)
async def acknowledge_job(handle_id: str, workspace: Workspace = Depends(get_workspace)) -> None:
    handle = _handle_or_404(workspace, handle_id)
    if not workspace.orchestrator.acknowledge(handle):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job is still running.")


# ---------- Artifacts ----------


@router.get("/artifacts/{graph_id}/{node_id}", response_model=ArtifactView)
async def get_artifact(
    graph_id: str,
    node_id: str,
    workspace: Workspace = Depends(get_workspace),
) -> ArtifactView:
    artifact = workspace.artifact_store.get(graph_id, node_id)
    if artifact is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No artifact for node {node_id!r} in topology {graph_id!r}.",
        )
    return ArtifactView.from_artifact(artifact)


@router.delete("/artifacts/{graph_id}")
async def clear_artifacts(graph_id: str, workspace: Workspace = Depends(get_workspace)) -> Dict[str, int]:
    return {"cleared": workspace.artifact_store.clear(graph_id)}


# ---------- Error mapping ----------


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map domain errors to HTTP responses: unknown ids -> 404, broken
    invariants -> 409, rejected preconditions and bad values -> 422.
    """

    async def _respond(request: Request, exc: Exception, code: int) -> JSONResponse:
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(UnknownNodeError)
    @app.exception_handler(UnknownConnectorError)
    @app.exception_handler(TopologyNotFoundError)
    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return await _respond(request, exc, status.HTTP_404_NOT_FOUND)

    @app.exception_handler(InvariantViolation)
    async def conflict(request: Request, exc: Exception) -> JSONResponse:
        return await _respond(request, exc, status.HTTP_409_CONFLICT)

    @app.exception_handler(PreconditionError)
    @app.exception_handler(ValidationError)
    @app.exception_handler(ValueError)
    async def unprocessable(request: Request, exc: Exception) -> JSONResponse:
        return await _respond(request, exc, status.HTTP_422_UNPROCESSABLE_ENTITY)
