from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from ..models.enums import coerce_job_status
from ..models.generation import (
    ArtifactFragment,
    GenerationConfig,
    GenerationResult,
    JobStatusReport,
    NodeResult,
)
from ..models.topology import Topology
from .payload import codegen_request

logger = structlog.get_logger("codegen.remote_api")

CODEGEN_PATH = "/api/v1/public/graph/codegen"

AUTH_FAILED_MESSAGE = "Authentication failed. Please log in and try again."
SERVER_ERROR_MESSAGE = "Server error. Please try again in a few moments."
NETWORK_ERROR_MESSAGE = "Network connection failed. Please check your connection and try again."
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."
RESULTS_NOT_FOUND_MESSAGE = "Results not found. The job may have been deleted or expired."


class RemoteJobApi(Protocol):
    """The three calls the orchestrator needs from a generation service."""

    async def initiate(self, snapshot: Topology, config: GenerationConfig) -> str:
        ...

    async def poll_status(self, job_id: str) -> JobStatusReport:
        ...

    async def fetch_result(self, job_id: str) -> GenerationResult:
        ...


def describe_transport_error(exc: BaseException) -> str:
    """Turn a transport failure into a sentence fit for the user."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code in (401, 403):
            return AUTH_FAILED_MESSAGE
        if code >= 500:
            return SERVER_ERROR_MESSAGE
        return UNEXPECTED_ERROR_MESSAGE
    if isinstance(exc, httpx.TransportError):
        return NETWORK_ERROR_MESSAGE
    return UNEXPECTED_ERROR_MESSAGE


# --------------------------------------------------------------------------- #
# Result parsing
# --------------------------------------------------------------------------- #


def parse_generation_result(data: Dict[str, Any]) -> GenerationResult:
    """
    Accept either the native shape ({"nodes": [{"nodeId", "artifacts"}]}) or
    the service's generated-code graph, where each node carries a YAML
    `config` or a JSON `spec` plus `generatedCodeMetadata`.
    """
    nodes: List[NodeResult] = []
    for raw in data.get("nodes") or []:
        if "nodeId" in raw or "node_id" in raw:
            nodes.append(NodeResult.model_validate(raw))
        else:
            nodes.append(_node_from_generated_code(raw))
    return GenerationResult(nodes=nodes)


def _node_from_generated_code(raw: Dict[str, Any]) -> NodeResult:
    metadata = raw.get("generatedCodeMetadata") or {}
    file_name = metadata.get("fileName")
    name = file_name or raw.get("name") or raw["id"]

    fragments: List[ArtifactFragment] = []
    if raw.get("config"):
        fragments.append(ArtifactFragment(name=name, content=raw["config"], language="yaml"))
    elif raw.get("spec") is not None:
        fragments.append(
            ArtifactFragment(name=name, content=json.dumps(raw["spec"], indent=2), language="json")
        )

    return NodeResult(
        node_id=raw["id"],
        artifacts=fragments,
        file_name=file_name,
        path=metadata.get("path"),
    )


# --------------------------------------------------------------------------- #
# Clients
# --------------------------------------------------------------------------- #


class DisabledJobApi:
    """Used when no generation service URL is configured; every call fails."""

    async def initiate(self, snapshot: Topology, config: GenerationConfig) -> str:
        raise RuntimeError("Code generation service URL is not configured")

    async def poll_status(self, job_id: str) -> JobStatusReport:
        raise RuntimeError("Code generation service URL is not configured")

    async def fetch_result(self, job_id: str) -> GenerationResult:
        raise RuntimeError("Code generation service URL is not configured")



class HttpJobApi:
    """
    RemoteJobApi over the generation service's REST endpoints:

      POST /api/v1/public/graph/codegen
      GET  /api/v1/public/graph/codegen/{job_id}/status
      GET  /api/v1/public/graph/codegen/{job_id}/results

    HTTP errors are raised as httpx exceptions; the orchestrator decides
    whether they are retried.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def initiate(self, snapshot: Topology, config: GenerationConfig) -> str:
        resp = await self._get_client().post(
            f"{self._base_url}{CODEGEN_PATH}",
            json=codegen_request(snapshot, config),
            headers=self._headers(),
        )
        resp.raise_for_status()
        job_id = resp.json().get("jobId")
        if not job_id:
            raise ValueError("Code generation response did not include a jobId")
        logger.info("codegen_job_initiated", job_id=job_id, graph_id=snapshot.id)
        return str(job_id)

    async def poll_status(self, job_id: str) -> JobStatusReport:
        resp = await self._get_client().get(
            f"{self._base_url}{CODEGEN_PATH}/{job_id}/status",
            headers=self._headers(),
        )
        resp.raise_for_status()
        data = resp.json()
        return JobStatusReport(
            status=coerce_job_status(data.get("status")),
            step=data.get("step") or "",
            error=data.get("error"),
        )

    async def fetch_result(self, job_id: str) -> GenerationResult:
        resp = await self._get_client().get(
            f"{self._base_url}{CODEGEN_PATH}/{job_id}/results",
            headers=self._headers(),
        )
        if resp.status_code == 404:
            raise LookupError(RESULTS_NOT_FOUND_MESSAGE)
        resp.raise_for_status()
        return parse_generation_result(resp.json())
