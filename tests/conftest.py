from __future__ import annotations

from typing import Iterable, List, Optional

import pytest

from topology_studio.models import (
    CanvasModel,
    ConnectionType,
    Edge,
    NodeType,
    Topology,
    TopologyModel,
    TopologyNode,
)
from topology_studio.sync import ConsistencyEngine, GridLayout


def make_node(node_id: str, *edges: Edge, name: Optional[str] = None, node_type: NodeType = NodeType.MICROSERVICE) -> TopologyNode:
    return TopologyNode(id=node_id, name=name or node_id.upper(), node_type=node_type, edges=list(edges))


def edge(target: str, ctype: ConnectionType = ConnectionType.CONNECTS_TO) -> Edge:
    return Edge(connection_type=ctype, target_node_id=target)


def make_topology(nodes: Iterable[TopologyNode] = (), graph_id: str = "g1", **fields) -> Topology:
    fields.setdefault("company_id", "acme")
    fields.setdefault("user_id", "u1")
    return Topology(id=graph_id, name="Payments", nodes=list(nodes), **fields)


@pytest.fixture
def three_tier() -> Topology:
    """web -> api -> db, plus api -> cache."""
    return make_topology(
        [
            make_node("web", edge("api")),
            make_node("api", edge("db", ConnectionType.DEPENDS_ON), edge("cache", ConnectionType.CACHES)),
            make_node("db", node_type=NodeType.DATABASE),
            make_node("cache", node_type=NodeType.CACHE),
        ]
    )


@pytest.fixture
def layout() -> GridLayout:
    return GridLayout(shape_width=100, shape_height=50, spacing=10, columns=3)


@pytest.fixture
def engine(layout: GridLayout) -> ConsistencyEngine:
    topology = TopologyModel(make_topology())
    return ConsistencyEngine(topology, CanvasModel(), layout=layout)


def edge_triples(model: TopologyModel) -> List[tuple]:
    return sorted((src, e.target_node_id, e.connection_type.value) for src, e in model.edges())
