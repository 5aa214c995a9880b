from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..errors import InvariantViolation
from .changes import ChangeFeed, ChangeKind, MutationOrigin
from .enums import ConnectionType, NodeType

# Shape fields that only make sense on the canvas and are never projected.
POSITIONAL_FIELDS = frozenset({"x", "y", "width", "height"})
PRESENTATION_FIELDS = frozenset({"icon", "color"})
# Shape fields mirrored onto the topology node (shape field -> node field).
PROJECTED_FIELDS: Dict[str, str] = {"label": "name", "node_type": "node_type"}

CONNECTOR_MUTABLE_FIELDS = frozenset(
    {"end_node_id", "connection_type", "start_x", "start_y", "end_x", "end_y"}
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )


class CanvasShape(_CamelModel):
    id: str
    node_type: NodeType = NodeType.MICROSERVICE
    label: str = ""
    x: float = 0.0
    y: float = 0.0
    width: float = 120.0
    height: float = 80.0
    icon: Optional[str] = None
    color: Optional[str] = None


class CanvasConnector(_CamelModel):
    """
    A drawn arrow. Either endpoint may be unset while the user is still
    dragging it; explicit coordinates are used for unsnapped endpoints.
    """

    id: str
    start_node_id: Optional[str] = None
    end_node_id: Optional[str] = None
    start_x: float = 0.0
    start_y: float = 0.0
    end_x: float = 0.0
    end_y: float = 0.0
    connection_type: ConnectionType = ConnectionType.CONNECTS_TO

    def triple(self) -> Tuple[Optional[str], Optional[str], ConnectionType]:
        return (self.start_node_id, self.end_node_id, self.connection_type)


class CanvasModel(ChangeFeed):
    """
    Owner of the visual graph: shapes keyed by node id, finalized connectors,
    and in-progress connector drafts.

    Drafts are pure interaction state and publish no changes.
    """

    def __init__(self) -> None:
        super().__init__()
        self._shapes: Dict[str, CanvasShape] = {}
        self._connectors: Dict[str, CanvasConnector] = {}
        self._drafts: Dict[str, CanvasConnector] = {}

    # queries

    def shape_ids(self) -> List[str]:
        return list(self._shapes)

    def shapes(self) -> List[CanvasShape]:
        return list(self._shapes.values())

    def connectors(self) -> List[CanvasConnector]:
        return list(self._connectors.values())

    def drafts(self) -> List[CanvasConnector]:
        return list(self._drafts.values())

    def has_shape(self, shape_id: str | None) -> bool:
        return shape_id is not None and shape_id in self._shapes

    def get_shape(self, shape_id: str) -> Optional[CanvasShape]:
        return self._shapes.get(shape_id)

    def get_connector(self, connector_id: str) -> Optional[CanvasConnector]:
        return self._connectors.get(connector_id)

    def find_connector(
        self,
        start_node_id: str | None,
        end_node_id: str | None,
        connection_type: ConnectionType,
    ) -> Optional[CanvasConnector]:
        for connector in self._connectors.values():
            if connector.triple() == (start_node_id, end_node_id, connection_type):
                return connector
        return None

    # shapes

    def add_shape(self, shape: CanvasShape, *, origin: MutationOrigin) -> bool:
        if shape.id in self._shapes:
            return False
        self._shapes[shape.id] = shape
        self._publish(ChangeKind.SHAPE_ADDED, origin, shape=shape)
        return True

    def remove_shape(self, shape_id: str, *, origin: MutationOrigin) -> Optional[CanvasShape]:
        """Remove a shape together with every connector attached to it."""
        shape = self._shapes.pop(shape_id, None)
        if shape is None:
            return None

        detached = [
            c.id
            for c in self._connectors.values()
            if shape_id in (c.start_node_id, c.end_node_id)
        ]
        for connector_id in detached:
            del self._connectors[connector_id]
        for draft_id in [d.id for d in self._drafts.values() if shape_id in (d.start_node_id, d.end_node_id)]:
            del self._drafts[draft_id]

        self._publish(ChangeKind.SHAPE_REMOVED, origin, shape=shape, connector_ids=detached)
        return shape

    def update_shape(
        self,
        shape_id: str,
        fields: Mapping[str, Any],
        *,
        origin: MutationOrigin,
    ) -> Optional[CanvasShape]:
        shape = self._shapes.get(shape_id)
        if shape is None:
            return None
        if "id" in fields and fields["id"] != shape_id:
            raise InvariantViolation("A shape id cannot change; it is shared with its topology node.")
        changed = {k: v for k, v in fields.items() if k != "id" and getattr(shape, k) != v}
        for key, value in changed.items():
            setattr(shape, key, value)
        if changed:
            self._publish(ChangeKind.SHAPE_UPDATED, origin, shape=shape, fields=changed)
        return shape

    # connectors

    def add_connector(self, connector: CanvasConnector, *, origin: MutationOrigin) -> bool:
        if connector.id in self._connectors:
            return False
        self._drafts.pop(connector.id, None)
        self._connectors[connector.id] = connector
        self._publish(ChangeKind.CONNECTOR_ADDED, origin, connector=connector)
        return True

    def remove_connector(self, connector_id: str, *, origin: MutationOrigin) -> Optional[CanvasConnector]:
        connector = self._connectors.pop(connector_id, None)
        if connector is not None:
            self._publish(ChangeKind.CONNECTOR_REMOVED, origin, connector=connector)
        return connector

    def update_connector(
        self,
        connector_id: str,
        fields: Mapping[str, Any],
        *,
        origin: MutationOrigin,
    ) -> Optional[Tuple[CanvasConnector, CanvasConnector]]:
        """
        Replace a connector with an updated copy. Returns (previous, current)
        or None when the connector does not exist.
        """
        previous = self._connectors.get(connector_id)
        if previous is None:
            return None
        unknown = set(fields) - CONNECTOR_MUTABLE_FIELDS
        if unknown:
            raise InvariantViolation(f"Connector fields {sorted(unknown)} cannot be updated.")
        current = CanvasConnector.model_validate({**previous.model_dump(), **fields})
        self._connectors[connector_id] = current
        self._publish(ChangeKind.CONNECTOR_UPDATED, origin, previous=previous, connector=current)
        return previous, current

    # drafts

    def begin_draft(self, connector: CanvasConnector) -> None:
        self._drafts[connector.id] = connector

    def update_draft(self, connector_id: str, **fields: Any) -> Optional[CanvasConnector]:
        draft = self._drafts.get(connector_id)
        if draft is None:
            return None
        for key, value in fields.items():
            setattr(draft, key, value)
        return draft

    def discard_draft(self, connector_id: str) -> Optional[CanvasConnector]:
        return self._drafts.pop(connector_id, None)

    # bulk

    def replace_shapes(self, shapes: Iterable[CanvasShape], *, origin: MutationOrigin) -> None:
        """
        Swap all shapes; connectors whose snapped endpoints disappear are
        dropped with them. Repeated shape ids are rejected.
        """
        shapes = list(shapes)
        ensure_unique_ids("Shape", (s.id for s in shapes))
        previous, previous_connectors = self.shapes(), self.connectors()
        self._shapes = {s.id: s for s in shapes}
        self._connectors = {
            cid: c
            for cid, c in self._connectors.items()
            if self._endpoint_alive(c.start_node_id) and (
                c.connection_type.is_cross_graph or self._endpoint_alive(c.end_node_id)
            )
        }
        self._publish(
            ChangeKind.SHAPES_REPLACED,
            origin,
            shapes=self.shapes(),
            previous=previous,
            previous_connectors=previous_connectors,
        )

    def replace_connectors(self, connectors: Iterable[CanvasConnector], *, origin: MutationOrigin) -> None:
        connectors = list(connectors)
        ensure_unique_ids("Connector", (c.id for c in connectors))
        previous = self.connectors()
        self._connectors = {c.id: c for c in connectors}
        self._publish(ChangeKind.CONNECTORS_REPLACED, origin, connectors=self.connectors(), previous=previous)

    def _endpoint_alive(self, node_id: str | None) -> bool:
        return node_id is None or node_id in self._shapes


def ensure_unique_ids(kind: str, ids: Iterable[str]) -> None:
    seen = set()
    for item_id in ids:
        if item_id in seen:
            raise InvariantViolation(f"{kind} id {item_id!r} is used more than once.")
        seen.add(item_id)
