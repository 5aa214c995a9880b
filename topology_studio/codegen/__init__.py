from __future__ import annotations

"""
Code generation for topologies.

This package provides:
- JobOrchestrator / JobHandle: submit, poll with backoff, cancel, report
- ArtifactStore: generated artifacts keyed by (graph_id, node_id)
- RemoteJobApi protocol and the HttpJobApi client for the generation service
"""

from .artifact_store import ArtifactStore
from .backoff import BackoffPolicy
from .handle import JobHandle, JobState
from .orchestrator import JobOrchestrator
from .remote_api import HttpJobApi, RemoteJobApi, describe_transport_error

__all__ = [
    "ArtifactStore",
    "BackoffPolicy",
    "HttpJobApi",
    "JobHandle",
    "JobOrchestrator",
    "JobState",
    "RemoteJobApi",
    "describe_transport_error",
]
