from __future__ import annotations

"""
Data models for topology studio.

- Topology side: TopologyNode, Edge, Bridge, Topology and the TopologyModel owner
- Canvas side: CanvasShape, CanvasConnector and the CanvasModel owner
- Generation: GenerationConfig, GenerationJob, GeneratedArtifact and remote API shapes
"""

from .canvas import CanvasConnector, CanvasModel, CanvasShape
from .changes import ChangeKind, ModelChange, MutationOrigin
from .enums import (
    ConnectionCategory,
    ConnectionType,
    DependencyType,
    GraphType,
    JobStatus,
    NodeType,
    coerce_job_status,
    normalize_job_status,
)
from .generation import (
    ArtifactFragment,
    ConversationMessage,
    GeneratedArtifact,
    GenerationConfig,
    GenerationJob,
    GenerationResult,
    JobStatusReport,
    NodeResult,
)
from .topology import Bridge, Edge, Topology, TopologyModel, TopologyNode

__all__ = [
    "ArtifactFragment",
    "Bridge",
    "CanvasConnector",
    "CanvasModel",
    "CanvasShape",
    "ChangeKind",
    "ConnectionCategory",
    "ConnectionType",
    "ConversationMessage",
    "DependencyType",
    "Edge",
    "GeneratedArtifact",
    "GenerationConfig",
    "GenerationJob",
    "GenerationResult",
    "GraphType",
    "JobStatus",
    "JobStatusReport",
    "ModelChange",
    "MutationOrigin",
    "NodeResult",
    "NodeType",
    "Topology",
    "TopologyModel",
    "TopologyNode",
    "coerce_job_status",
    "normalize_job_status",
]
