from __future__ import annotations

"""
Exception hierarchy for topology studio.

Invariant and precondition errors are caller bugs and are raised
synchronously. Job errors are attached to a JobHandle and reported through
its callbacks.
"""


class TopologyStudioError(Exception):
    """Base class for every error raised by this package."""


# --------------------------------------------------------------------------- #
# Invariant violations
# --------------------------------------------------------------------------- #


class InvariantViolation(TopologyStudioError):
    """A mutation would leave the topology or canvas inconsistent."""


class UnknownNodeError(InvariantViolation):
    def __init__(self, node_id: str | None):
        super().__init__(f"Node {node_id!r} does not exist in this topology.")
        self.node_id = node_id


class DuplicateNodeError(InvariantViolation):
    def __init__(self, node_id: str):
        super().__init__(f"Node id {node_id!r} is used more than once in this topology.")
        self.node_id = node_id


class UnknownConnectorError(InvariantViolation):
    def __init__(self, connector_id: str):
        super().__init__(f"Connector {connector_id!r} is not on the canvas.")
        self.connector_id = connector_id


class UnresolvedConnectorError(InvariantViolation):
    def __init__(self, connector_id: str):
        super().__init__(
            f"Connector {connector_id!r} has no resolved start node; an edge needs a concrete source."
        )
        self.connector_id = connector_id


class DanglingEdgeError(InvariantViolation):
    def __init__(self, source_id: str, target_id: str | None, connection_type: str):
        super().__init__(
            f"Edge {source_id!r} -[{connection_type}]-> {target_id!r} does not resolve to a node "
            "or a bridged topology."
        )
        self.source_id = source_id
        self.target_id = target_id
        self.connection_type = connection_type


class UnauthorizedBridgeError(InvariantViolation):
    def __init__(self, graph_id: str):
        super().__init__(f"Topology {graph_id!r} cannot be bridged: caller is not allowed to read it.")
        self.graph_id = graph_id


class ReentrantMutationError(InvariantViolation):
    """An intent arrived while another reconciliation was still being applied."""


# --------------------------------------------------------------------------- #
# Submission preconditions
# --------------------------------------------------------------------------- #


class PreconditionError(TopologyStudioError):
    """A generation request was rejected before any network call."""


class EmptyTopologyError(PreconditionError):
    def __init__(self, graph_id: str):
        super().__init__(f"Topology {graph_id!r} has no nodes; nothing to generate.")
        self.graph_id = graph_id


class MissingConfigurationError(PreconditionError):
    pass


# --------------------------------------------------------------------------- #
# Job errors (reported asynchronously)
# --------------------------------------------------------------------------- #


class JobError(TopologyStudioError):
    """Terminal failure of a generation job."""


class SubmissionError(JobError):
    """The remote API refused or failed to create the job."""


class JobFailedError(JobError):
    """The remote service reported the job as failed."""


class JobTimeoutError(JobError):
    """The attempt budget ran out while the job was still running."""

    def __init__(self, attempts: int):
        super().__init__(f"Code generation did not finish after {attempts} status checks.")
        self.attempts = attempts


class ResultFetchError(JobError):
    """The job completed but its result could not be fetched or parsed."""


# --------------------------------------------------------------------------- #
# Persistence
# --------------------------------------------------------------------------- #


class TopologyNotFoundError(TopologyStudioError):
    def __init__(self, graph_id: str):
        super().__init__(f"Topology {graph_id!r} was not found.")
        self.graph_id = graph_id
