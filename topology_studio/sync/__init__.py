from __future__ import annotations

"""
Canvas/topology synchronization.

- ConsistencyEngine: projects every mutation from one model onto the other
- GridLayout: deterministic placement for nodes that have no shape yet
"""

from .engine import ConsistencyEngine, connector_id_for
from .layout import GridLayout

__all__ = [
    "ConsistencyEngine",
    "GridLayout",
    "connector_id_for",
]
