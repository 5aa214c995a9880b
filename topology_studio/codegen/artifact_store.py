from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from ..domain_metrics import ARTIFACTS_WRITTEN
from ..models.generation import ArtifactFragment, GeneratedArtifact

logger = structlog.get_logger("codegen.artifact_store")


class ArtifactStore:
    """
    Generated artifacts keyed by (graph_id, node_id).

    Entries are only ever replaced whole, so a reader sees either the previous
    artifact or the new one. There is no eviction; callers clear a graph
    explicitly.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], GeneratedArtifact] = {}

    def get(self, graph_id: str, node_id: str) -> Optional[GeneratedArtifact]:
        return self._entries.get((graph_id, node_id))

    def fragments(self, graph_id: str, node_id: str) -> List[ArtifactFragment]:
        artifact = self.get(graph_id, node_id)
        return list(artifact.fragments) if artifact is not None else []

    def for_graph(self, graph_id: str) -> Dict[str, GeneratedArtifact]:
        return {
            node_id: artifact
            for (gid, node_id), artifact in self._entries.items()
            if gid == graph_id
        }

    def count_for_graph(self, graph_id: str) -> int:
        return sum(1 for gid, _ in self._entries if gid == graph_id)

    def put(self, artifact: GeneratedArtifact) -> None:
        self._entries[(artifact.graph_id, artifact.node_id)] = artifact
        ARTIFACTS_WRITTEN.inc()

    def replace_many(self, graph_id: str, artifacts: Iterable[GeneratedArtifact]) -> int:
        """
        Write one job's artifacts. Nodes not mentioned keep their previous
        artifact. Returns the number of entries written.
        """
        artifacts = list(artifacts)
        for artifact in artifacts:
            if artifact.graph_id != graph_id:
                raise ValueError(
                    f"Artifact for graph {artifact.graph_id!r} cannot be stored under {graph_id!r}"
                )
        for artifact in artifacts:
            self.put(artifact)
        logger.info("artifacts_stored", graph_id=graph_id, count=len(artifacts))
        return len(artifacts)

    def clear(self, graph_id: str) -> int:
        keys = [key for key in self._entries if key[0] == graph_id]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info("artifacts_cleared", graph_id=graph_id, count=len(keys))
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)
