from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog

from .codegen.artifact_store import ArtifactStore
from .codegen.handle import JobHandle
from .codegen.orchestrator import JobOrchestrator
from .models.canvas import CanvasModel
from .models.changes import MutationOrigin
from .models.generation import GeneratedArtifact, GenerationConfig
from .models.topology import BridgeAuthorizer, Topology, TopologyModel
from .persistence.repository import TopologyRepository
from .sync.engine import ConsistencyEngine
from .sync.layout import GridLayout

logger = structlog.get_logger("workspace")


class Workspace:
    """
    One editing session: a topology, its canvas, the engine keeping them in
    step, and access to persistence and code generation.

    Mutations go through `engine`; this class adds the session-level
    operations (open, save, generate, undo checkpoint).
    """

    def __init__(
        self,
        repository: TopologyRepository,
        orchestrator: JobOrchestrator,
        *,
        topology: Topology | None = None,
        layout: GridLayout | None = None,
        bridge_authorizer: BridgeAuthorizer | None = None,
        default_config: GenerationConfig | None = None,
    ):
        self._repository = repository
        self._orchestrator = orchestrator
        self._default_config = default_config
        self._previous: Optional[Topology] = None

        self.topology = TopologyModel(
            Topology(id=uuid.uuid4().hex),
            bridge_authorizer=bridge_authorizer,
        )
        self.canvas = CanvasModel()
        self.engine = ConsistencyEngine(self.topology, self.canvas, layout=layout)
        if topology is not None:
            self.engine.on_topology_replaced(topology, origin=MutationOrigin.LOAD)

    @property
    def graph_id(self) -> str:
        return self.topology.graph_id

    @property
    def repository(self) -> TopologyRepository:
        return self._repository

    @property
    def orchestrator(self) -> JobOrchestrator:
        return self._orchestrator

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._orchestrator.artifact_store

    @property
    def has_checkpoint(self) -> bool:
        return self._previous is not None

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    async def open_topology(self, graph_id: str) -> Topology:
        """Load a stored topology and rebuild the canvas from it."""
        topology = await self._repository.load_topology(graph_id)
        self.load(topology)
        return topology

    def load(self, topology: Topology) -> None:
        self.engine.on_topology_replaced(topology, origin=MutationOrigin.LOAD)
        logger.info("workspace_loaded", graph_id=topology.id, nodes=len(topology.nodes))

    async def save(self) -> Topology:
        snapshot = self.topology.snapshot()
        await self._repository.save_topology(snapshot)
        return snapshot

    # ------------------------------------------------------------------ #
    # Undo checkpoint
    # ------------------------------------------------------------------ #

    def checkpoint(self) -> None:
        """Remember the current topology so restore_checkpoint() can bring it back."""
        self._previous = self.topology.snapshot()

    def restore_checkpoint(self) -> bool:
        """
        Swap the current topology with the checkpoint. Calling it again swaps
        back. Returns False when there is no checkpoint.
        """
        if self._previous is None:
            return False
        current = self.topology.snapshot()
        self.engine.on_topology_replaced(self._previous, origin=MutationOrigin.LOAD)
        self._previous = current
        return True

    def clear(self) -> None:
        """
        Remove every node, keeping the topology's identity, ownership and
        bridges. Artifacts generated for the old nodes are dropped.
        """
        empty = self.topology.snapshot().model_copy(update={"nodes": []})
        self.engine.on_topology_replaced(empty, origin=MutationOrigin.TOPOLOGY)
        self.artifact_store.clear(self.graph_id)

    # ------------------------------------------------------------------ #
    # Generation
    # ------------------------------------------------------------------ #

    def generate(
        self,
        config: GenerationConfig | None = None,
        *,
        abort_in_flight: bool = False,
    ) -> JobHandle:
        return self._orchestrator.submit(
            self.topology.snapshot(),
            config or self._default_config,
            abort_in_flight=abort_in_flight,
        )

    def artifact(self, node_id: str) -> Optional[GeneratedArtifact]:
        return self.artifact_store.get(self.graph_id, node_id)

    def discard_artifacts(self) -> int:
        return self.artifact_store.clear(self.graph_id)

    def describe(self) -> dict[str, Any]:
        return {
            "graph_id": self.graph_id,
            "nodes": len(self.topology.node_ids()),
            "edges": len(self.topology.edges()),
            "shapes": len(self.canvas.shape_ids()),
            "connectors": len(self.canvas.connectors()),
            "artifacts": self.artifact_store.count_for_graph(self.graph_id),
            "has_checkpoint": self.has_checkpoint,
        }

    def close(self) -> None:
        self.engine.close()
