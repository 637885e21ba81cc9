"""pytest configuration and fixtures for the image_transformer test suite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Dict, Optional

import numpy as np
import pytest

from image_transformer.grid import SampleGrid


@pytest.fixture
def write_raw(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing ``<name>.raw`` plus its JSON sidecar from a 2D or 3D array."""

    def _write(
        samples: np.ndarray,
        bytes_per_sample: int = 2,
        brightness_factor: Optional[float] = None,
        name: str = "image",
    ) -> Path:
        array = np.asarray(samples)
        layers = array if array.ndim == 3 else array[None]
        dtype = "<u2" if bytes_per_sample == 2 else np.uint8
        raw_path = tmp_path / f"{name}.raw"
        raw_path.write_bytes(layers.astype(dtype).tobytes())

        meta: Dict[str, object] = {
            "Width": int(layers.shape[2]),
            "Height": int(layers.shape[1]),
            "BytePerPixel": bytes_per_sample,
        }
        if brightness_factor is not None:
            meta["BrightnessFactor"] = brightness_factor
        raw_path.with_suffix(".json").write_text(json.dumps(meta), encoding="utf-8")
        return raw_path

    return _write


@pytest.fixture
def ramp_grid() -> SampleGrid:
    """4 rows x 5 columns, every sample distinct and non-zero."""
    return SampleGrid(np.arange(1, 21, dtype=np.uint16).reshape(4, 5))


@pytest.fixture
def small_volume() -> SampleGrid:
    """2 layers x 3 rows x 3 columns."""
    return SampleGrid(np.arange(1, 19, dtype=np.uint16).reshape(2, 3, 3))
