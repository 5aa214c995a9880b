from __future__ import annotations

from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors import (
    DanglingEdgeError,
    DuplicateNodeError,
    InvariantViolation,
    UnauthorizedBridgeError,
    UnknownNodeError,
)
from .changes import ChangeFeed, ChangeKind, MutationOrigin
from .enums import ConnectionType, DependencyType, GraphType, NodeType

logger = structlog.get_logger("models.topology")

# Fields of a node that callers may change after creation.
NODE_MUTABLE_FIELDS = frozenset({"name", "node_type", "dependency_type", "spec", "namespace"})


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )


class Edge(_CamelModel):
    """
    Directed relationship from the node that owns it to target_node_id.
    """

    model_config = ConfigDict(frozen=True)

    connection_type: ConnectionType
    target_node_id: str

    def key(self, source_id: str) -> Tuple[str, str, ConnectionType]:
        return (source_id, self.target_node_id, self.connection_type)


class Bridge(_CamelModel):
    """Typed link from this topology to another one."""

    model_config = ConfigDict(frozen=True)

    connection_type: ConnectionType = ConnectionType.DEPENDS_ON_GRAPH
    graph_id: str


class TopologyNode(_CamelModel):
    id: str
    name: str = ""
    node_type: NodeType = NodeType.MICROSERVICE
    dependency_type: Optional[DependencyType] = None
    spec: Dict[str, Any] = Field(default_factory=dict)
    company_id: str = ""
    user_id: str = ""
    namespace: Optional[str] = None
    edges: List[Edge] = Field(default_factory=list)

    def has_edge(self, target_node_id: str, connection_type: ConnectionType) -> bool:
        return any(
            e.target_node_id == target_node_id and e.connection_type == connection_type
            for e in self.edges
        )


class Topology(_CamelModel):
    id: str
    name: str = "Untitled Graph"
    description: str = ""
    graph_type: GraphType = GraphType.ABSTRACT
    company_id: str = ""
    user_id: str = ""
    namespace: Optional[str] = None
    nodes: List[TopologyNode] = Field(default_factory=list)
    bridges: List[Bridge] = Field(default_factory=list)
    parent_id: Optional[str] = None
    subgraphs: List["Topology"] = Field(default_factory=list)

    def bridged_graph_ids(self) -> Set[str]:
        return {b.graph_id for b in self.bridges}

    def check_invariants(self) -> None:
        """
        Raise an InvariantViolation if node ids repeat or an edge does not
        resolve. Subgraphs are checked on their own.
        """
        counts = Counter(n.id for n in self.nodes)
        for node_id, count in counts.items():
            if count > 1:
                raise DuplicateNodeError(node_id)

        local_ids = set(counts)
        bridged = self.bridged_graph_ids()
        for node in self.nodes:
            for edge in node.edges:
                _check_edge_target(node.id, edge, local_ids, bridged)

        for sub in self.subgraphs:
            sub.check_invariants()


def _check_edge_target(
    source_id: str,
    edge: Edge,
    local_ids: Set[str],
    bridged: Set[str],
) -> None:
    if edge.connection_type.is_cross_graph:
        ok = edge.target_node_id in bridged
    else:
        ok = edge.target_node_id in local_ids
    if not ok:
        raise DanglingEdgeError(source_id, edge.target_node_id, edge.connection_type.value)


BridgeAuthorizer = Callable[[str], bool]


def _allow_all(graph_id: str) -> bool:
    return True


class TopologyModel(ChangeFeed):
    """
    Owner of the logical graph.

    Every mutation checks the topology invariants before it is applied and
    publishes a ModelChange tagged with the caller-supplied origin. Edges are
    stored on their source node, in insertion order. Topologies and nodes
    handed in are copied, so the caller keeps no live handle on the model.
    """

    def __init__(
        self,
        topology: Topology,
        *,
        bridge_authorizer: BridgeAuthorizer | None = None,
    ):
        super().__init__()
        self._authorize_bridge = bridge_authorizer or _allow_all
        self._check_bridges(topology.bridges)
        topology.check_invariants()
        self._topology = topology.model_copy(deep=True)
        self._index: Dict[str, TopologyNode] = {n.id: n for n in self._topology.nodes}

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    @property
    def topology(self) -> Topology:
        """The live topology. Treat as read-only; mutate through this model."""
        return self._topology

    @property
    def graph_id(self) -> str:
        return self._topology.id

    def snapshot(self) -> Topology:
        """Deep copy, detached from later edits."""
        return self._topology.model_copy(deep=True)

    def node_ids(self) -> List[str]:
        return [n.id for n in self._topology.nodes]

    def nodes(self) -> List[TopologyNode]:
        return list(self._topology.nodes)

    def has_node(self, node_id: str | None) -> bool:
        return node_id is not None and node_id in self._index

    def get_node(self, node_id: str | None) -> TopologyNode:
        node = self._index.get(node_id) if node_id is not None else None
        if node is None:
            raise UnknownNodeError(node_id)
        return node

    def edges(self) -> List[Tuple[str, Edge]]:
        return [(n.id, e) for n in self._topology.nodes for e in n.edges]

    def edge_keys(self) -> Set[Tuple[str, str, ConnectionType]]:
        return {e.key(src) for src, e in self.edges()}

    # ------------------------------------------------------------------ #
    # Node mutations
    # ------------------------------------------------------------------ #

    def new_node(self, node_id: str, **fields: Any) -> TopologyNode:
        """Build a node that inherits this topology's ownership fields."""
        fields.setdefault("company_id", self._topology.company_id)
        fields.setdefault("user_id", self._topology.user_id)
        fields.setdefault("namespace", self._topology.namespace)
        return TopologyNode(id=node_id, **fields)

    def add_node(self, node: TopologyNode, *, origin: MutationOrigin) -> bool:
        """Append a node. Returns False (and changes nothing) if the id exists."""
        if node.id in self._index:
            return False
        for edge in node.edges:
            self.check_edge(node.id, edge, extra_ids={node.id})
        node = node.model_copy(deep=True)
        self._topology.nodes.append(node)
        self._index[node.id] = node
        self._publish(ChangeKind.NODE_ADDED, origin, node=node)
        return True

    def remove_node(self, node_id: str, *, origin: MutationOrigin) -> TopologyNode:
        """
        Remove a node and every edge, in any node, that targets it.
        """
        node = self.get_node(node_id)
        self._topology.nodes = [n for n in self._topology.nodes if n.id != node_id]
        del self._index[node_id]

        removed_edges = 0
        for other in self._topology.nodes:
            kept = [
                e
                for e in other.edges
                if e.connection_type.is_cross_graph or e.target_node_id != node_id
            ]
            removed_edges += len(other.edges) - len(kept)
            if len(kept) != len(other.edges):
                other.edges = kept

        logger.debug("node_removed", node_id=node_id, incident_edges=removed_edges)
        self._publish(ChangeKind.NODE_REMOVED, origin, node=node)
        return node

    def update_node(
        self,
        node_id: str,
        fields: Mapping[str, Any],
        *,
        origin: MutationOrigin,
    ) -> TopologyNode:
        node = self.get_node(node_id)
        unknown = set(fields) - NODE_MUTABLE_FIELDS
        if unknown:
            raise InvariantViolation(f"Node fields {sorted(unknown)} cannot be updated.")
        changed = {k: v for k, v in fields.items() if getattr(node, k) != v}
        for key, value in changed.items():
            setattr(node, key, value)
        if changed:
            self._publish(ChangeKind.NODE_UPDATED, origin, node=node, fields=changed)
        return node

    # ------------------------------------------------------------------ #
    # Edge mutations
    # ------------------------------------------------------------------ #

    def add_edge(self, source_id: str, edge: Edge, *, origin: MutationOrigin) -> bool:
        """
        Append an edge to its source node. Returns False if the same
        (source, target, connection_type) triple already exists.
        """
        source = self.get_node(source_id)
        self.check_edge(source_id, edge)
        if source.has_edge(edge.target_node_id, edge.connection_type):
            return False
        source.edges = [*source.edges, edge]
        self._publish(ChangeKind.EDGE_ADDED, origin, source_id=source_id, edge=edge)
        return True

    def remove_edge(self, source_id: str, edge: Edge, *, origin: MutationOrigin) -> bool:
        source = self.get_node(source_id)
        kept = [
            e
            for e in source.edges
            if not (
                e.target_node_id == edge.target_node_id
                and e.connection_type == edge.connection_type
            )
        ]
        if len(kept) == len(source.edges):
            return False
        source.edges = kept
        self._publish(ChangeKind.EDGE_REMOVED, origin, source_id=source_id, edge=edge)
        return True

    # ------------------------------------------------------------------ #
    # Bridges
    # ------------------------------------------------------------------ #

    def add_bridge(self, bridge: Bridge, *, origin: MutationOrigin) -> bool:
        self._check_bridges([bridge])
        if bridge.graph_id in self._topology.bridged_graph_ids():
            return False
        self._topology.bridges = [*self._topology.bridges, bridge]
        self._publish(ChangeKind.BRIDGE_ADDED, origin, bridge=bridge)
        return True

    def remove_bridge(self, graph_id: str, *, origin: MutationOrigin) -> bool:
        """Drop a bridge and every cross-graph edge that pointed through it."""
        kept = [b for b in self._topology.bridges if b.graph_id != graph_id]
        if len(kept) == len(self._topology.bridges):
            return False
        self._topology.bridges = kept
        for node in self._topology.nodes:
            node.edges = [
                e
                for e in node.edges
                if not (e.connection_type.is_cross_graph and e.target_node_id == graph_id)
            ]
        self._publish(ChangeKind.BRIDGE_REMOVED, origin, graph_id=graph_id)
        return True

    # ------------------------------------------------------------------ #
    # Bulk replacement
    # ------------------------------------------------------------------ #

    def replace(self, topology: Topology, *, origin: MutationOrigin) -> None:
        self._check_bridges(topology.bridges)
        topology.check_invariants()
        self._topology = topology.model_copy(deep=True)
        self._index = {n.id: n for n in self._topology.nodes}
        self._publish(ChangeKind.TOPOLOGY_REPLACED, origin, topology=self._topology)

    def replace_nodes(self, nodes: Iterable[TopologyNode], *, origin: MutationOrigin) -> None:
        """Swap the node list wholesale; nodes bring their own edges."""
        nodes = [n.model_copy(deep=True) for n in nodes]
        candidate = self._topology.model_copy(update={"nodes": nodes})
        candidate.check_invariants()
        self._topology.nodes = nodes
        self._index = {n.id: n for n in nodes}
        self._publish(ChangeKind.NODES_REPLACED, origin, nodes=nodes)

    def replace_edges(
        self,
        edges_by_source: Mapping[str, Iterable[Edge]],
        *,
        origin: MutationOrigin,
    ) -> None:
        """
        Rebuild every node's edge list from an adjacency mapping. Nodes absent
        from the mapping end up with no edges.
        """
        for source_id in edges_by_source:
            if source_id not in self._index:
                raise UnknownNodeError(source_id)

        rebuilt: Dict[str, List[Edge]] = {}
        local_ids = set(self._index)
        bridged = self._topology.bridged_graph_ids()
        for node in self._topology.nodes:
            edges: List[Edge] = []
            seen: Set[Tuple[str, ConnectionType]] = set()
            for edge in edges_by_source.get(node.id, ()):
                _check_edge_target(node.id, edge, local_ids, bridged)
                if (edge.target_node_id, edge.connection_type) in seen:
                    continue
                seen.add((edge.target_node_id, edge.connection_type))
                edges.append(edge)
            rebuilt[node.id] = edges

        for node in self._topology.nodes:
            node.edges = rebuilt[node.id]
        self._publish(ChangeKind.EDGES_REPLACED, origin, edges_by_source=rebuilt)

    def clear(self, *, origin: MutationOrigin) -> None:
        """Drop all nodes, keeping identity, ownership and bridges."""
        self.replace(
            self._topology.model_copy(update={"nodes": []}, deep=True),
            origin=origin,
        )

    # ------------------------------------------------------------------ #
    # Checks
    # ------------------------------------------------------------------ #

    def check_edge(self, source_id: str, edge: Edge, extra_ids: Set[str] | None = None) -> None:
        local_ids = set(self._index) | (extra_ids or set())
        _check_edge_target(source_id, edge, local_ids, self._topology.bridged_graph_ids())

    def _check_bridges(self, bridges: Iterable[Bridge]) -> None:
        for bridge in bridges:
            if not self._authorize_bridge(bridge.graph_id):
                raise UnauthorizedBridgeError(bridge.graph_id)


Topology.model_rebuild()
