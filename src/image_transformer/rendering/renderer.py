"""Turns grids back into packed bytes for bitmap construction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from image_transformer.grid.sample_grid import SampleGrid


@dataclass(slots=True)
class RenderedImage:
    data: bytes
    width: int
    height: int
    bytes_per_sample: int

    @property
    def stride(self) -> int:
        return self.width * self.bytes_per_sample

    def to_array(self) -> np.ndarray:
        """Greyscale array (uint8 or uint16) suitable for image writers."""
        if self.bytes_per_sample == 2:
            packed = np.frombuffer(self.data, dtype="<u2").astype(np.uint16)
        else:
            packed = np.frombuffer(self.data, dtype=np.uint8).copy()
        return packed.reshape(self.height, self.width)


def render(grid: SampleGrid, layer: Optional[int] = None) -> RenderedImage:
    """Render a 2D grid, or one layer of a volume (``layer`` defaults to 0 for 3D)."""
    if grid.ndim == 3:
        layer = 0 if layer is None else layer
        return RenderedImage(
            data=grid.to_bytes(layer=layer),
            width=grid.width,
            height=grid.height,
            bytes_per_sample=grid.bytes_per_sample,
        )
    if layer not in (None, 0):
        raise IndexError(f"A 2D grid has no layer {layer}")
    return RenderedImage(
        data=grid.to_bytes(),
        width=grid.width,
        height=grid.height,
        bytes_per_sample=grid.bytes_per_sample,
    )


def render_layers(grid: SampleGrid) -> List[RenderedImage]:
    if grid.ndim == 2:
        return [render(grid)]
    return [render(grid, layer) for layer in range(grid.depth)]
