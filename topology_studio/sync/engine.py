from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import structlog

from ..domain_metrics import RECONCILIATION_REJECTED, RECONCILIATIONS
from ..errors import (
    DanglingEdgeError,
    DuplicateNodeError,
    InvariantViolation,
    ReentrantMutationError,
    UnknownConnectorError,
    UnknownNodeError,
    UnresolvedConnectorError,
)
from ..models.canvas import (
    CONNECTOR_MUTABLE_FIELDS,
    POSITIONAL_FIELDS,
    PRESENTATION_FIELDS,
    PROJECTED_FIELDS,
    CanvasConnector,
    CanvasModel,
    CanvasShape,
    ensure_unique_ids,
)
from ..models.changes import ChangeKind, ModelChange, MutationOrigin
from ..models.enums import ConnectionType
from ..models.topology import Edge, Topology, TopologyModel, TopologyNode
from .layout import GridLayout

logger = structlog.get_logger("sync.engine")

SHAPE_FIELDS = POSITIONAL_FIELDS | PRESENTATION_FIELDS | frozenset(PROJECTED_FIELDS)
# Node field -> shape field, for topology-origin updates.
NODE_TO_SHAPE_FIELDS: Dict[str, str] = {v: k for k, v in PROJECTED_FIELDS.items()}

EdgeKey = Tuple[str, str, ConnectionType]


def connector_id_for(source_id: str, edge: Edge) -> str:
    """Stable id for a connector created from a topology edge."""
    return f"edge:{source_id}:{edge.connection_type.value}:{edge.target_node_id}"


class ConsistencyEngine:
    """
    Keeps a CanvasModel and a TopologyModel in step.

    Each public ``on_*`` intent validates first, applies the change to the
    model it originated from and then projects it onto the other one, all
    inside a reentrancy guard. The engine also listens to both models, so a
    mutation made directly on one of them is projected as well; notifications
    raised while the guard is held, or tagged with another side's origin, are
    the engine's own writes and are ignored.
    """

    def __init__(
        self,
        topology: TopologyModel,
        canvas: CanvasModel,
        *,
        layout: GridLayout | None = None,
    ):
        self._topology = topology
        self._canvas = canvas
        self._layout = layout or GridLayout()
        self._active: Optional[MutationOrigin] = None
        self._unsubscribe = [
            topology.subscribe(self._on_topology_change),
            canvas.subscribe(self._on_canvas_change),
        ]

    @property
    def topology(self) -> TopologyModel:
        return self._topology

    @property
    def canvas(self) -> CanvasModel:
        return self._canvas

    @property
    def reconciling(self) -> bool:
        return self._active is not None

    def close(self) -> None:
        """Stop listening to both models."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    @contextmanager
    def _reconciling(self, origin: MutationOrigin, kind: str) -> Iterator[None]:
        if self._active is not None:
            raise ReentrantMutationError(
                f"{kind} arrived while a {self._active.value}-origin reconciliation was in progress."
            )
        self._active = origin
        try:
            yield
        except InvariantViolation as exc:
            RECONCILIATION_REJECTED.labels(kind=kind).inc()
            logger.info("reconciliation_rejected", kind=kind, origin=origin.value, reason=str(exc))
            raise
        else:
            RECONCILIATIONS.labels(origin=origin.value, kind=kind).inc()
        finally:
            self._active = None

    # ================================================================== #
    # Canvas-origin intents
    # ================================================================== #

    def on_canvas_shape_added(self, shape: CanvasShape) -> TopologyNode:
        """
        Create the node behind a new shape. Idempotent: an existing node with
        the same id is returned unchanged.
        """
        with self._reconciling(MutationOrigin.CANVAS, "shape_added"):
            self._canvas.add_shape(shape, origin=MutationOrigin.CANVAS)
            return self._project_shape_added(shape)

    def on_canvas_shape_removed(self, shape_id: str) -> None:
        if not self._topology.has_node(shape_id) and not self._canvas.has_shape(shape_id):
            raise UnknownNodeError(shape_id)
        with self._reconciling(MutationOrigin.CANVAS, "shape_removed"):
            self._canvas.remove_shape(shape_id, origin=MutationOrigin.CANVAS)
            self._project_shape_removed(shape_id)

    def on_canvas_shape_updated(self, shape_id: str, fields: Mapping[str, Any]) -> CanvasShape:
        """
        Merge shape fields. Label and type reach the node; geometry and
        presentation hints stay on the canvas.
        """
        shape = self._canvas.get_shape(shape_id)
        if shape is None:
            raise UnknownNodeError(shape_id)
        unknown = set(fields) - SHAPE_FIELDS
        if unknown:
            raise InvariantViolation(f"Shape fields {sorted(unknown)} cannot be updated.")
        # validate the merged shape up front so a bad value changes nothing
        CanvasShape.model_validate({**shape.model_dump(), **fields})

        with self._reconciling(MutationOrigin.CANVAS, "shape_updated"):
            self._canvas.update_shape(shape_id, fields, origin=MutationOrigin.CANVAS)
            self._project_shape_updated(shape_id, fields)
        return shape

    def on_canvas_connector_finalized(self, connector: CanvasConnector) -> Edge:
        """
        Turn a finished drawing into an edge on its start node.

        A connector without a resolved start (or whose endpoints do not
        resolve) is discarded and the call raises. An existing edge with the
        same (source, target, connection_type) makes this a no-op.
        """
        try:
            edge = self._edge_for_connector(connector)
        except InvariantViolation:
            self._canvas.discard_draft(connector.id)
            RECONCILIATION_REJECTED.labels(kind="connector_finalized").inc()
            raise

        source = self._topology.get_node(connector.start_node_id)
        if source.has_edge(edge.target_node_id, edge.connection_type):
            self._canvas.discard_draft(connector.id)
            logger.debug("connector_duplicate_ignored", connector_id=connector.id)
            return edge

        if self._canvas.get_connector(connector.id) is not None:
            raise InvariantViolation(f"Connector id {connector.id!r} is already in use.")

        with self._reconciling(MutationOrigin.CANVAS, "connector_finalized"):
            self._canvas.add_connector(connector, origin=MutationOrigin.CANVAS)
            self._topology.add_edge(source.id, edge, origin=MutationOrigin.CANVAS)
        return edge

    def on_canvas_connector_updated(self, connector_id: str, fields: Mapping[str, Any]) -> CanvasConnector:
        """
        Re-target or re-type a finalized connector. Geometry-only updates
        never touch the topology.
        """
        previous = self._canvas.get_connector(connector_id)
        if previous is None:
            raise UnknownConnectorError(connector_id)
        unknown = set(fields) - CONNECTOR_MUTABLE_FIELDS
        if unknown:
            raise InvariantViolation(f"Connector fields {sorted(unknown)} cannot be updated.")
        candidate = CanvasConnector.model_validate({**previous.model_dump(), **fields})
        retyped = candidate.triple() != previous.triple()
        if retyped:
            self._ensure_new_edge(candidate)

        with self._reconciling(MutationOrigin.CANVAS, "connector_updated"):
            result = self._canvas.update_connector(connector_id, fields, origin=MutationOrigin.CANVAS)
            if result is None:
                raise UnknownConnectorError(connector_id)
            if retyped:
                self._project_connector_retyped(previous, result[1])
            return result[1]

    def on_canvas_connector_removed(self, connector: CanvasConnector | str) -> None:
        """Remove a connector (by object or id) and the edge it stands for."""
        connector_id = connector if isinstance(connector, str) else connector.id
        existing = self._canvas.get_connector(connector_id)
        if existing is None and not isinstance(connector, str):
            existing = self._canvas.find_connector(*connector.triple())
        if existing is None:
            raise UnknownConnectorError(connector_id)

        with self._reconciling(MutationOrigin.CANVAS, "connector_removed"):
            self._canvas.remove_connector(existing.id, origin=MutationOrigin.CANVAS)
            self._project_connector_removed(existing)

    def on_canvas_shapes_bulk_replaced(self, shapes: Iterable[CanvasShape]) -> None:
        """
        Replace every shape at once. Nodes for surviving ids keep their spec
        and edges; new ids get fresh nodes; vanished ids are removed with
        their incident edges.
        """
        shapes = list(shapes)
        _ensure_unique(s.id for s in shapes)
        with self._reconciling(MutationOrigin.CANVAS, "shapes_replaced"):
            self._canvas.replace_shapes(shapes, origin=MutationOrigin.CANVAS)
            self._project_shapes_replaced(shapes)

    def on_canvas_connectors_bulk_replaced(self, connectors: Iterable[CanvasConnector]) -> None:
        """
        Replace every connector at once and rebuild all edges from them.
        Connectors repeating an earlier (source, target, type) triple are
        dropped; a repeated connector id is rejected.
        """
        connectors = list(connectors)
        ensure_unique_ids("Connector", (c.id for c in connectors))
        kept: List[CanvasConnector] = []
        edges_by_source: Dict[str, List[Edge]] = defaultdict(list)
        seen: Set[EdgeKey] = set()
        for connector in connectors:
            edge = self._edge_for_connector(connector)
            key = edge.key(connector.start_node_id)
            if key in seen:
                continue
            seen.add(key)
            kept.append(connector)
            edges_by_source[connector.start_node_id].append(edge)

        with self._reconciling(MutationOrigin.CANVAS, "connectors_replaced"):
            self._canvas.replace_connectors(kept, origin=MutationOrigin.CANVAS)
            self._topology.replace_edges(edges_by_source, origin=MutationOrigin.CANVAS)

    # ================================================================== #
    # Topology-origin intents
    # ================================================================== #

    def on_topology_node_added(self, node: TopologyNode) -> CanvasShape:
        with self._reconciling(MutationOrigin.TOPOLOGY, "node_added"):
            if self._topology.add_node(node, origin=MutationOrigin.TOPOLOGY):
                self._project_node_added(self._topology.get_node(node.id))
        shape = self._canvas.get_shape(node.id)
        if shape is None:
            raise InvariantViolation(f"Node {node.id!r} exists without a shape.")
        return shape

    def on_topology_node_removed(self, node_id: str) -> None:
        self._topology.get_node(node_id)
        with self._reconciling(MutationOrigin.TOPOLOGY, "node_removed"):
            self._topology.remove_node(node_id, origin=MutationOrigin.TOPOLOGY)
            self._canvas.remove_shape(node_id, origin=MutationOrigin.TOPOLOGY)

    def on_topology_node_updated(self, node_id: str, fields: Mapping[str, Any]) -> TopologyNode:
        node = self._topology.get_node(node_id)
        TopologyNode.model_validate({**node.model_dump(), **fields})
        with self._reconciling(MutationOrigin.TOPOLOGY, "node_updated"):
            self._topology.update_node(node_id, fields, origin=MutationOrigin.TOPOLOGY)
            self._project_node_updated(node_id, fields)
        return node

    def on_topology_edge_added(self, source_id: str, edge: Edge) -> Optional[CanvasConnector]:
        with self._reconciling(MutationOrigin.TOPOLOGY, "edge_added"):
            if self._topology.add_edge(source_id, edge, origin=MutationOrigin.TOPOLOGY):
                return self._project_edge_added(source_id, edge)
        return self._canvas.find_connector(source_id, edge.target_node_id, edge.connection_type)

    def on_topology_edge_removed(self, source_id: str, edge: Edge) -> None:
        self._topology.get_node(source_id)
        with self._reconciling(MutationOrigin.TOPOLOGY, "edge_removed"):
            if self._topology.remove_edge(source_id, edge, origin=MutationOrigin.TOPOLOGY):
                self._project_edge_removed(source_id, edge)

    def on_topology_replaced(
        self,
        topology: Topology,
        *,
        origin: MutationOrigin = MutationOrigin.TOPOLOGY,
    ) -> None:
        """
        Swap the whole topology and rebuild the canvas from it. Shapes whose
        id survives keep their position; new ones get a grid slot.
        """
        with self._reconciling(origin, "topology_replaced"):
            self._topology.replace(topology, origin=origin)
            self._rebuild_canvas(origin)
        logger.info(
            "topology_replaced",
            graph_id=topology.id,
            nodes=len(topology.nodes),
            origin=origin.value,
        )

    def on_topology_nodes_bulk_replaced(
        self,
        nodes: Iterable[TopologyNode],
        *,
        origin: MutationOrigin = MutationOrigin.LOAD,
    ) -> None:
        with self._reconciling(origin, "nodes_replaced"):
            self._topology.replace_nodes(nodes, origin=origin)
            self._rebuild_canvas(origin)

    def on_topology_edges_bulk_replaced(
        self,
        edges_by_source: Mapping[str, Iterable[Edge]],
        *,
        origin: MutationOrigin = MutationOrigin.LOAD,
    ) -> None:
        with self._reconciling(origin, "edges_replaced"):
            self._topology.replace_edges(edges_by_source, origin=origin)
            self._rebuild_connectors(origin)

    # ================================================================== #
    # Diagnostics
    # ================================================================== #

    def divergence(self) -> Dict[str, Any]:
        """
        Differences between the two models; every value is empty when they
        are consistent.
        """
        node_ids = set(self._topology.node_ids())
        shape_ids = set(self._canvas.shape_ids())
        edge_keys = self._topology.edge_keys()
        connector_keys = {
            c.triple() for c in self._canvas.connectors()
        }
        return {
            "nodes_without_shape": sorted(node_ids - shape_ids),
            "shapes_without_node": sorted(shape_ids - node_ids),
            "edges_without_connector": sorted(edge_keys - connector_keys),
            "connectors_without_edge": sorted(connector_keys - edge_keys, key=str),
        }

    def is_consistent(self) -> bool:
        return not any(self.divergence().values())

    # ================================================================== #
    # Listeners for direct model mutations
    # ================================================================== #

    def _on_canvas_change(self, change: ModelChange) -> None:
        if self._active is not None or change.origin is not MutationOrigin.CANVAS:
            return
        payload = change.payload
        kind = change.kind
        with self._reconciling(MutationOrigin.CANVAS, kind.value):
            if kind is ChangeKind.SHAPE_ADDED:
                self._project_shape_added(payload["shape"])
            elif kind is ChangeKind.SHAPE_REMOVED:
                self._project_shape_removed(payload["shape"].id)
            elif kind is ChangeKind.SHAPE_UPDATED:
                self._project_shape_updated(payload["shape"].id, payload["fields"])
            elif kind is ChangeKind.CONNECTOR_ADDED:
                connector = payload["connector"]
                try:
                    edge = self._edge_for_connector(connector)
                except InvariantViolation:
                    self._canvas.remove_connector(connector.id, origin=MutationOrigin.CANVAS)
                    raise
                self._topology.add_edge(connector.start_node_id, edge, origin=MutationOrigin.CANVAS)
            elif kind is ChangeKind.CONNECTOR_REMOVED:
                self._project_connector_removed(payload["connector"])
            elif kind is ChangeKind.CONNECTOR_UPDATED:
                previous, current = payload["previous"], payload["connector"]
                if previous.triple() != current.triple():
                    try:
                        self._ensure_new_edge(current)
                    except InvariantViolation:
                        self._canvas.update_connector(
                            current.id,
                            {k: getattr(previous, k) for k in CONNECTOR_MUTABLE_FIELDS},
                            origin=MutationOrigin.CANVAS,
                        )
                        raise
                    self._project_connector_retyped(previous, current)
            elif kind is ChangeKind.SHAPES_REPLACED:
                try:
                    self._project_shapes_replaced(payload["shapes"])
                except InvariantViolation:
                    self._canvas.replace_shapes(payload["previous"], origin=MutationOrigin.CANVAS)
                    self._canvas.replace_connectors(
                        payload["previous_connectors"], origin=MutationOrigin.CANVAS
                    )
                    raise
            elif kind is ChangeKind.CONNECTORS_REPLACED:
                try:
                    edges_by_source: Dict[str, List[Edge]] = defaultdict(list)
                    for connector in payload["connectors"]:
                        edges_by_source[connector.start_node_id].append(self._edge_for_connector(connector))
                    self._topology.replace_edges(edges_by_source, origin=MutationOrigin.CANVAS)
                except InvariantViolation:
                    self._canvas.replace_connectors(payload["previous"], origin=MutationOrigin.CANVAS)
                    raise

    def _on_topology_change(self, change: ModelChange) -> None:
        if self._active is not None or change.origin is not MutationOrigin.TOPOLOGY:
            return
        payload = change.payload
        kind = change.kind
        with self._reconciling(MutationOrigin.TOPOLOGY, kind.value):
            if kind is ChangeKind.NODE_ADDED:
                self._project_node_added(payload["node"])
            elif kind is ChangeKind.NODE_REMOVED:
                self._canvas.remove_shape(payload["node"].id, origin=MutationOrigin.TOPOLOGY)
            elif kind is ChangeKind.NODE_UPDATED:
                self._project_node_updated(payload["node"].id, payload["fields"])
            elif kind is ChangeKind.EDGE_ADDED:
                self._project_edge_added(payload["source_id"], payload["edge"])
            elif kind is ChangeKind.EDGE_REMOVED:
                self._project_edge_removed(payload["source_id"], payload["edge"])
            elif kind is ChangeKind.BRIDGE_REMOVED:
                self._rebuild_connectors(MutationOrigin.TOPOLOGY)
            elif kind in (
                ChangeKind.TOPOLOGY_REPLACED,
                ChangeKind.NODES_REPLACED,
                ChangeKind.EDGES_REPLACED,
            ):
                self._rebuild_canvas(MutationOrigin.TOPOLOGY)

    # ================================================================== #
    # Canvas -> topology projections
    # ================================================================== #

    def _project_shape_added(self, shape: CanvasShape) -> TopologyNode:
        if self._topology.has_node(shape.id):
            return self._topology.get_node(shape.id)
        node = self._topology.new_node(
            shape.id,
            name=shape.label,
            node_type=shape.node_type,
        )
        self._topology.add_node(node, origin=MutationOrigin.CANVAS)
        return self._topology.get_node(shape.id)

    def _project_shape_removed(self, shape_id: str) -> None:
        if self._topology.has_node(shape_id):
            self._topology.remove_node(shape_id, origin=MutationOrigin.CANVAS)

    def _project_shape_updated(self, shape_id: str, fields: Mapping[str, Any]) -> None:
        projected = {
            PROJECTED_FIELDS[key]: value
            for key, value in fields.items()
            if key in PROJECTED_FIELDS
        }
        if projected:
            self._topology.update_node(shape_id, projected, origin=MutationOrigin.CANVAS)

    def _project_connector_removed(self, connector: CanvasConnector) -> None:
        if connector.start_node_id is None or connector.end_node_id is None:
            return
        if not self._topology.has_node(connector.start_node_id):
            return
        edge = Edge(connection_type=connector.connection_type, target_node_id=connector.end_node_id)
        self._topology.remove_edge(connector.start_node_id, edge, origin=MutationOrigin.CANVAS)

    def _project_connector_retyped(self, previous: CanvasConnector, current: CanvasConnector) -> None:
        new_edge = self._edge_for_connector(current)
        self._project_connector_removed(previous)
        self._topology.add_edge(current.start_node_id, new_edge, origin=MutationOrigin.CANVAS)

    def _project_shapes_replaced(self, shapes: List[CanvasShape]) -> None:
        surviving = {s.id for s in shapes}
        nodes: List[TopologyNode] = []
        for shape in shapes:
            if self._topology.has_node(shape.id):
                current = self._topology.get_node(shape.id)
                edges = [
                    e
                    for e in current.edges
                    if e.connection_type.is_cross_graph or e.target_node_id in surviving
                ]
                node = current.model_copy(
                    update={"name": shape.label, "node_type": shape.node_type, "edges": edges}
                )
            else:
                node = self._topology.new_node(shape.id, name=shape.label, node_type=shape.node_type)
            nodes.append(node)
        self._topology.replace_nodes(nodes, origin=MutationOrigin.CANVAS)

    def _edge_for_connector(self, connector: CanvasConnector) -> Edge:
        """Validate a connector against the topology and build its edge."""
        if connector.start_node_id is None:
            raise UnresolvedConnectorError(connector.id)
        if not self._topology.has_node(connector.start_node_id):
            raise UnknownNodeError(connector.start_node_id)
        if connector.end_node_id is None:
            raise DanglingEdgeError(connector.start_node_id, None, connector.connection_type.value)
        edge = Edge(connection_type=connector.connection_type, target_node_id=connector.end_node_id)
        self._topology.check_edge(connector.start_node_id, edge)
        return edge

    def _ensure_new_edge(self, connector: CanvasConnector) -> Edge:
        edge = self._edge_for_connector(connector)
        source = self._topology.get_node(connector.start_node_id)
        if source.has_edge(edge.target_node_id, edge.connection_type):
            raise InvariantViolation(
                f"Edge {source.id!r} -[{edge.connection_type.value}]-> "
                f"{edge.target_node_id!r} already exists."
            )
        return edge

    # ================================================================== #
    # Topology -> canvas projections
    # ================================================================== #

    def _project_node_added(self, node: TopologyNode) -> None:
        index = self._topology.node_ids().index(node.id)
        shape = self._layout.shape_for(node, index, self._canvas.get_shape(node.id))
        self._canvas.add_shape(shape, origin=MutationOrigin.TOPOLOGY)
        for edge in node.edges:
            self._project_edge_added(node.id, edge)

    def _project_node_updated(self, node_id: str, fields: Mapping[str, Any]) -> None:
        shape_fields = {
            NODE_TO_SHAPE_FIELDS[key]: value
            for key, value in fields.items()
            if key in NODE_TO_SHAPE_FIELDS
        }
        if shape_fields:
            self._canvas.update_shape(node_id, shape_fields, origin=MutationOrigin.TOPOLOGY)

    def _project_edge_added(self, source_id: str, edge: Edge) -> CanvasConnector:
        existing = self._canvas.find_connector(source_id, edge.target_node_id, edge.connection_type)
        if existing is not None:
            return existing
        connector = self._connector_for(source_id, edge)
        self._canvas.add_connector(connector, origin=MutationOrigin.TOPOLOGY)
        return connector

    def _project_edge_removed(self, source_id: str, edge: Edge) -> None:
        existing = self._canvas.find_connector(source_id, edge.target_node_id, edge.connection_type)
        if existing is not None:
            self._canvas.remove_connector(existing.id, origin=MutationOrigin.TOPOLOGY)

    def _connector_for(self, source_id: str, edge: Edge) -> CanvasConnector:
        start_x, start_y = self._layout.anchor(self._canvas.get_shape(source_id))
        end_x, end_y = self._layout.anchor(self._canvas.get_shape(edge.target_node_id))
        return CanvasConnector(
            id=connector_id_for(source_id, edge),
            start_node_id=source_id,
            end_node_id=edge.target_node_id,
            start_x=start_x,
            start_y=start_y,
            end_x=end_x,
            end_y=end_y,
            connection_type=edge.connection_type,
        )

    def _rebuild_canvas(self, origin: MutationOrigin) -> None:
        previous = {s.id: s for s in self._canvas.shapes()}
        shapes = [
            self._layout.shape_for(node, index, previous.get(node.id))
            for index, node in enumerate(self._topology.nodes())
        ]
        self._canvas.replace_shapes(shapes, origin=origin)
        self._rebuild_connectors(origin)

    def _rebuild_connectors(self, origin: MutationOrigin) -> None:
        """
        Recreate connectors from the topology's edges, reusing existing
        connectors (id and geometry) whose triple is unchanged.
        """
        by_triple = {c.triple(): c for c in self._canvas.connectors()}
        connectors: List[CanvasConnector] = []
        for source_id, edge in self._topology.edges():
            existing = by_triple.get((source_id, edge.target_node_id, edge.connection_type))
            connectors.append(existing or self._connector_for(source_id, edge))
        self._canvas.replace_connectors(connectors, origin=origin)


def _ensure_unique(ids: Iterable[str]) -> None:
    seen: Set[str] = set()
    for node_id in ids:
        if node_id in seen:
            raise DuplicateNodeError(node_id)
        seen.add(node_id)
