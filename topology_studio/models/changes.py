from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger("models.changes")


class MutationOrigin(str, Enum):
    """Which side of the editor a mutation started from."""

    CANVAS = "canvas"
    TOPOLOGY = "topology"
    LOAD = "load"  # bulk replace after an external load; both sides rebuilt


class ChangeKind(str, Enum):
    # topology side
    NODE_ADDED = "node_added"
    NODE_REMOVED = "node_removed"
    NODE_UPDATED = "node_updated"
    EDGE_ADDED = "edge_added"
    EDGE_REMOVED = "edge_removed"
    BRIDGE_ADDED = "bridge_added"
    BRIDGE_REMOVED = "bridge_removed"
    NODES_REPLACED = "nodes_replaced"
    EDGES_REPLACED = "edges_replaced"
    TOPOLOGY_REPLACED = "topology_replaced"

    # canvas side
    SHAPE_ADDED = "shape_added"
    SHAPE_REMOVED = "shape_removed"
    SHAPE_UPDATED = "shape_updated"
    CONNECTOR_ADDED = "connector_added"
    CONNECTOR_REMOVED = "connector_removed"
    CONNECTOR_UPDATED = "connector_updated"
    SHAPES_REPLACED = "shapes_replaced"
    CONNECTORS_REPLACED = "connectors_replaced"


@dataclass(frozen=True)
class ModelChange:
    kind: ChangeKind
    origin: MutationOrigin
    payload: Dict[str, Any] = field(default_factory=dict)


ChangeListener = Callable[[ModelChange], None]


class ChangeFeed:
    """
    Synchronous publish/subscribe for model changes.

    Listeners run in registration order inside the mutating call, so a
    listener sees the model in its post-mutation state. Listener errors
    propagate to the caller that made the mutation.
    """

    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, kind: ChangeKind, origin: MutationOrigin, **payload: Any) -> ModelChange:
        change = ModelChange(kind=kind, origin=origin, payload=payload)
        logger.debug("model_change", kind=kind.value, origin=origin.value)
        for listener in list(self._listeners):
            listener(change)
        return change
