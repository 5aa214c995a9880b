from __future__ import annotations

from typing import Any, Dict

from ..models.generation import GenerationConfig
from ..models.topology import Topology


def graph_input(topology: Topology) -> Dict[str, Any]:
    """
    Shape a topology the way the generation service's GraphInput expects it:
    camelCase keys, nodes with their edges, bridges, and subgraphs flattened
    into their own GraphInput documents.
    """
    return {
        "id": topology.id,
        "name": topology.name or "Untitled Graph",
        "description": topology.description,
        "graphType": topology.graph_type.value,
        "companyId": topology.company_id,
        "userId": topology.user_id,
        "namespace": topology.namespace,
        "nodes": [n.model_dump(mode="json", by_alias=True) for n in topology.nodes],
        "bridges": [b.model_dump(mode="json", by_alias=True) for b in topology.bridges],
        "subgraphs": [graph_input(sub) for sub in topology.subgraphs],
    }


def codegen_request(topology: Topology, config: GenerationConfig) -> Dict[str, Any]:
    """Body of POST /api/v1/public/graph/codegen."""
    body: Dict[str, Any] = {
        "graph": graph_input(topology),
        "project": {"id": topology.id, "name": topology.name or "Untitled Graph"},
        "llmConfig": {"provider": config.provider, "model": config.model},
    }
    if config.context:
        body["context"] = [m.model_dump(by_alias=True) for m in config.context]
    return body
