from __future__ import annotations

"""
Topology Studio core.

Keeps a visual canvas and a logical infrastructure topology in sync, and
drives remote artifact generation jobs for a topology.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
