from __future__ import annotations

"""
Topology persistence.

- TopologyRepository protocol with in-memory and Redis implementations
- RedisJsonStore: namespaced JSON documents over redis.asyncio

The Redis client itself is created and closed in topology_studio.dependencies.
"""

from .redis_client import RedisJsonStore, create_redis_client
from .repository import InMemoryTopologyRepository, RedisTopologyRepository, TopologyRepository

__all__ = [
    "InMemoryTopologyRepository",
    "RedisJsonStore",
    "RedisTopologyRepository",
    "TopologyRepository",
    "create_redis_client",
]
