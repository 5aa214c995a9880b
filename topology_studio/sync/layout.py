from __future__ import annotations

from typing import Optional, Tuple

from ..config import Settings
from ..models.canvas import CanvasShape
from ..models.topology import TopologyNode


class GridLayout:
    """
    Deterministic row-major grid used for nodes that have no shape yet.

    The slot depends only on the node's index in the topology, so rebuilding
    the same topology twice yields the same coordinates.
    """

    def __init__(
        self,
        *,
        shape_width: float = 120.0,
        shape_height: float = 80.0,
        spacing: float = 60.0,
        columns: int = 5,
    ):
        if columns < 1:
            raise ValueError("columns must be at least 1")
        self.shape_width = shape_width
        self.shape_height = shape_height
        self.spacing = spacing
        self.columns = columns

    @classmethod
    def from_settings(cls, settings: Settings) -> "GridLayout":
        return cls(
            shape_width=settings.canvas_shape_width,
            shape_height=settings.canvas_shape_height,
            spacing=settings.canvas_layout_spacing,
            columns=settings.canvas_layout_columns,
        )

    def position(self, index: int) -> Tuple[float, float]:
        row, col = divmod(index, self.columns)
        x = self.spacing + col * (self.shape_width + self.spacing)
        y = self.spacing + row * (self.shape_height + self.spacing)
        return x, y

    def shape_for(
        self,
        node: TopologyNode,
        index: int,
        existing: Optional[CanvasShape] = None,
    ) -> CanvasShape:
        """
        Shape mirroring a node. An existing shape keeps its geometry and
        presentation hints; only label and type are refreshed from the node.
        """
        if existing is not None:
            return existing.model_copy(
                update={"label": node.name or node.id, "node_type": node.node_type}
            )
        x, y = self.position(index)
        return CanvasShape(
            id=node.id,
            node_type=node.node_type,
            label=node.name or node.id,
            x=x,
            y=y,
            width=self.shape_width,
            height=self.shape_height,
        )

    @staticmethod
    def anchor(shape: Optional[CanvasShape]) -> Tuple[float, float]:
        """Centre point a connector snaps to."""
        if shape is None:
            return 0.0, 0.0
        return shape.x + shape.width / 2, shape.y + shape.height / 2
