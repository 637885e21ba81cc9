"""Reads raw sample files and their JSON sidecar metadata."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from image_transformer.grid.sample_grid import MAX_DEPTH, SampleGrid


class ImageMetadata(BaseModel):
    """Sidecar ``<name>.json`` next to ``<name>.raw``."""

    model_config = ConfigDict(populate_by_name=True)

    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    bytes_per_sample: int = Field(2, alias="bytePerPixel")
    brightness_factor: float = Field(1.0, alias="brightnessFactor")

    @field_validator("bytes_per_sample")
    @classmethod
    def ensure_supported_depth(cls, value: int) -> int:
        if value not in (1, 2):
            raise ValueError(f"bytePerPixel must be 1 or 2, got {value}")
        return value

    @property
    def layer_size(self) -> int:
        """Bytes occupied by one layer."""
        return self.width * self.height * self.bytes_per_sample


@dataclass(slots=True)
class LoadedImage:
    grid: SampleGrid
    metadata: ImageMetadata
    layer: int
    layer_count: int


def sidecar_path(path: str | Path) -> Path:
    return Path(path).with_suffix(".json")


def load_metadata(path: str | Path) -> ImageMetadata:
    """Parse the sidecar of ``path``; keys are matched case-insensitively on the first letter."""
    meta_path = sidecar_path(path)
    if not meta_path.exists():
        raise FileNotFoundError(f"Metadata sidecar missing for {path}: {meta_path}")
    with open(meta_path, "r", encoding="utf-8") as handle:
        raw: Dict[str, object] = json.load(handle)
    normalized = {key[:1].lower() + key[1:]: value for key, value in raw.items()}
    return ImageMetadata.model_validate(normalized)


class RawImageLoader:
    """Loads single layers (2D) or whole files (3D) of flat, layer-concatenated raw data."""

    def layer_count(self, path: str | Path) -> int:
        metadata = load_metadata(path)
        return Path(path).stat().st_size // metadata.layer_size

    def load_layer(self, path: str | Path, layer: int = 0) -> LoadedImage:
        path = Path(path)
        metadata = load_metadata(path)
        layer_count = path.stat().st_size // metadata.layer_size
        if not 0 <= layer < layer_count:
            raise IndexError(f"Layer {layer} out of range: {path} holds {layer_count} layer(s)")

        with open(path, "rb") as handle:
            handle.seek(layer * metadata.layer_size)
            data = handle.read(metadata.layer_size)

        grid = SampleGrid.from_bytes(data, metadata.width, metadata.height, metadata.bytes_per_sample)
        logger.info(
            f"Loaded layer {layer}/{layer_count} of {path.name} "
            f"({metadata.width}x{metadata.height}, {metadata.bytes_per_sample} byte(s)/sample)"
        )
        return LoadedImage(grid=grid, metadata=metadata, layer=layer, layer_count=layer_count)

    def load_volume(self, path: str | Path) -> LoadedImage:
        path = Path(path)
        metadata = load_metadata(path)
        layer_count = path.stat().st_size // metadata.layer_size
        depth = min(layer_count, MAX_DEPTH)
        if depth < layer_count:
            logger.warning(f"{path.name} has {layer_count} layers; only the first {depth} are loaded")
        if depth == 0:
            raise ValueError(f"{path} is smaller than a single {metadata.width}x{metadata.height} layer")

        with open(path, "rb") as handle:
            data = handle.read(depth * metadata.layer_size)

        grid = SampleGrid.from_bytes(
            data, metadata.width, metadata.height, metadata.bytes_per_sample, depth=depth
        )
        logger.info(f"Loaded volume {path.name} with shape {grid.shape}")
        return LoadedImage(grid=grid, metadata=metadata, layer=0, layer_count=layer_count)
