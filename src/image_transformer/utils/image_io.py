"""Image IO helper routines."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import cv2
from loguru import logger

from image_transformer.grid.sample_grid import SampleGrid
from image_transformer.rendering import render


def save_grid_png(
    grid: SampleGrid,
    directory: Path,
    stem: Optional[str] = None,
    layer: Optional[int] = None,
) -> Path:
    """Persist a rendered grid (or one volume layer) as an 8/16-bit greyscale PNG."""
    if grid.width == 0 or grid.height == 0:
        raise ValueError(f"Cannot write an empty grid {grid.shape}")
    directory.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    stem = stem or "grid"
    suffix = "" if layer is None else f"_layer{layer:04d}"
    path = directory / f"{stem}{suffix}_{timestamp}.png"
    image = render(grid, layer).to_array()
    if not cv2.imwrite(str(path), image):
        raise RuntimeError(f"Failed to write grid to {path}")
    logger.debug(f"Saved grid {grid.shape} to {path}")
    return path
