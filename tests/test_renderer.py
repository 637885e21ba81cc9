"""Tests for rendering grids to packed bytes and PNG files."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from image_transformer.grid import SampleGrid
from image_transformer.rendering import render, render_layers
from image_transformer.utils import save_grid_png


def test_render_two_byte_grid() -> None:
    grid = SampleGrid(np.array([[1, 513]], dtype=np.uint16))
    image = render(grid)
    assert (image.width, image.height, image.bytes_per_sample, image.stride) == (2, 1, 2, 4)
    assert image.data == b"\x01\x00\x01\x02"
    assert image.to_array().tolist() == [[1, 513]]


def test_render_volume_layer(small_volume: SampleGrid) -> None:
    image = render(small_volume, layer=1)
    assert image.to_array().tolist() == small_volume.samples[1].tolist()
    assert render(small_volume).to_array().tolist() == small_volume.samples[0].tolist()


def test_render_2d_rejects_layer(ramp_grid: SampleGrid) -> None:
    with pytest.raises(IndexError):
        render(ramp_grid, layer=1)


def test_render_layers(small_volume: SampleGrid, ramp_grid: SampleGrid) -> None:
    assert len(render_layers(small_volume)) == 2
    assert len(render_layers(ramp_grid)) == 1


def test_save_grid_png_round_trip(tmp_path, ramp_grid: SampleGrid) -> None:
    path = save_grid_png(ramp_grid, tmp_path, stem="ramp")
    assert path.exists()
    assert path.name.startswith("ramp_")
    loaded = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    assert loaded.dtype == np.uint16
    assert np.array_equal(loaded, ramp_grid.samples)


def test_save_single_byte_layer(tmp_path) -> None:
    volume = SampleGrid(np.full((2, 2, 3), 300, dtype=np.uint16), bytes_per_sample=1)
    path = save_grid_png(volume, tmp_path, stem="vol", layer=1)
    assert "_layer0001_" in path.name
    loaded = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    assert loaded.dtype == np.uint8
    assert loaded.tolist() == [[255, 255, 255], [255, 255, 255]]


def test_save_empty_grid_raises(tmp_path) -> None:
    with pytest.raises(ValueError):
        save_grid_png(SampleGrid.empty((0, 0)), tmp_path)
