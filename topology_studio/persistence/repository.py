from __future__ import annotations

from typing import Dict, List, Protocol

import structlog

from ..errors import TopologyNotFoundError
from ..models.topology import Topology
from .redis_client import RedisJsonStore

logger = structlog.get_logger("persistence.repository")


class TopologyRepository(Protocol):
    async def load_topology(self, graph_id: str) -> Topology:
        """Raise TopologyNotFoundError when nothing is stored under graph_id."""
        ...

    async def save_topology(self, topology: Topology) -> None:
        ...

    async def list_topologies(self) -> List[str]:
        ...

    async def delete_topology(self, graph_id: str) -> bool:
        ...


class InMemoryTopologyRepository:
    """Process-local repository; used when Redis is not configured and in tests."""

    def __init__(self) -> None:
        self._docs: Dict[str, Topology] = {}

    async def load_topology(self, graph_id: str) -> Topology:
        topology = self._docs.get(graph_id)
        if topology is None:
            raise TopologyNotFoundError(graph_id)
        return topology.model_copy(deep=True)

    async def save_topology(self, topology: Topology) -> None:
        self._docs[topology.id] = topology.model_copy(deep=True)

    async def list_topologies(self) -> List[str]:
        return sorted(self._docs)

    async def delete_topology(self, graph_id: str) -> bool:
        return self._docs.pop(graph_id, None) is not None


class RedisTopologyRepository:
    """
    Topologies as camelCase JSON documents under `<prefix>topology:<id>`.
    """

    def __init__(self, store: RedisJsonStore):
        self._store = store

    @staticmethod
    def _key(graph_id: str) -> str:
        return f"topology:{graph_id}"

    async def load_topology(self, graph_id: str) -> Topology:
        data = await self._store.get_json(self._key(graph_id))
        if data is None:
            raise TopologyNotFoundError(graph_id)
        return Topology.model_validate(data)

    async def save_topology(self, topology: Topology) -> None:
        await self._store.set_json(
            self._key(topology.id),
            topology.model_dump(mode="json", by_alias=True),
        )
        logger.info("topology_saved", graph_id=topology.id, nodes=len(topology.nodes))

    async def list_topologies(self) -> List[str]:
        keys = await self._store.keys(self._key("*"))
        return sorted(k[len("topology:"):] for k in keys)

    async def delete_topology(self, graph_id: str) -> bool:
        return await self._store.delete(self._key(graph_id))
