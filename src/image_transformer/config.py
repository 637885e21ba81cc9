"""Configuration schema and loader for the transformation pipelines."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class LoggingConfig(BaseModel):
    level: str = Field("INFO")
    output: str = Field("stdout")


class EngineConfig(BaseModel):
    max_workers: Optional[int] = Field(None, ge=1)
    band_size: int = Field(16, ge=1)


class ImageParameters(BaseModel):
    """2D parameter surface exposed to UI code."""

    rotation: float = 0.0
    scale: List[float] = Field(default_factory=lambda: [1.0, 1.0], min_length=2, max_length=2)
    shear: List[float] = Field(default_factory=lambda: [0.0, 0.0], min_length=2, max_length=2)
    shift: List[int] = Field(default_factory=lambda: [0, 0], min_length=2, max_length=2)
    brightness: float = 0.0
    layer: int = Field(0, ge=0)
    source_to_target: bool = True
    target_size: List[int] = Field(default_factory=lambda: [512, 512], min_length=2, max_length=2)
    projection_quad: Optional[List[List[float]]] = None
    bilinear_quad: Optional[List[List[float]]] = None

    @field_validator("projection_quad", "bilinear_quad")
    @classmethod
    def ensure_four_points(cls, value: Optional[List[List[float]]]) -> Optional[List[List[float]]]:
        if value is None:
            return value
        if len(value) != 4 or any(len(point) != 2 for point in value):
            raise ValueError("A quadrilateral needs exactly four [x, y] points")
        return value

    @field_validator("target_size")
    @classmethod
    def ensure_positive_size(cls, value: List[int]) -> List[int]:
        if any(size <= 0 for size in value):
            raise ValueError(f"target_size entries must be positive, got {value}")
        return value


class VolumeParameters(BaseModel):
    """3D parameter surface."""

    rotation: List[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0], min_length=3, max_length=3)
    scale: List[float] = Field(default_factory=lambda: [1.0, 1.0, 1.0], min_length=3, max_length=3)
    shear: List[float] = Field(default_factory=lambda: [0.0] * 6, min_length=6, max_length=6)
    shift: List[int] = Field(default_factory=lambda: [0, 0, 0], min_length=3, max_length=3)
    brightness: float = 0.0
    source_to_target: bool = True
    target_size: List[int] = Field(default_factory=lambda: [256, 256, 64], min_length=3, max_length=3)

    @field_validator("target_size")
    @classmethod
    def ensure_positive_size(cls, value: List[int]) -> List[int]:
        if any(size <= 0 for size in value):
            raise ValueError(f"target_size entries must be positive, got {value}")
        return value


class OutputConfig(BaseModel):
    directory: Path = Field(Path("output"))

    @field_validator("directory", mode="before")
    @classmethod
    def ensure_dir(cls, value: str | Path) -> Path:
        path = Path(value)
        path.mkdir(parents=True, exist_ok=True)
        return path


class AppConfig(BaseModel):
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    image: ImageParameters = Field(default_factory=ImageParameters)
    volume: VolumeParameters = Field(default_factory=VolumeParameters)
    output: OutputConfig = Field(default_factory=OutputConfig)


def load_config(path: str | Path) -> AppConfig:
    """Load configuration from YAML file."""
    with open(path, "r", encoding="utf-8") as handle:
        raw: Dict[str, object] = yaml.safe_load(handle) or {}
    return AppConfig.model_validate(raw)
