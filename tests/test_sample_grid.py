"""Tests for sample grids and the forward/backward transform engine."""

from __future__ import annotations

import math
import threading
from typing import Dict, Optional

import numpy as np
import pytest

from image_transformer.errors import DimensionMismatchError, TransformCancelled
from image_transformer.geometry import IDENTITY_3X3, IDENTITY_4X4
from image_transformer.grid import MAX_WIDTH, CancellationSlot, SampleGrid


def test_constructor_validates_input() -> None:
    with pytest.raises(ValueError):
        SampleGrid(np.zeros(5))
    with pytest.raises(ValueError):
        SampleGrid(np.zeros((2, 2)), bytes_per_sample=3)
    with pytest.raises(ValueError):
        SampleGrid(np.array([[70000]]))


def test_grid_is_read_only(ramp_grid: SampleGrid) -> None:
    with pytest.raises(ValueError):
        ramp_grid.samples[0, 0] = 99


def test_dimensions(ramp_grid: SampleGrid, small_volume: SampleGrid) -> None:
    assert (ramp_grid.width, ramp_grid.height, ramp_grid.depth) == (5, 4, 1)
    assert (small_volume.width, small_volume.height, small_volume.depth) == (3, 3, 2)
    assert ramp_grid[1, 2] == 8


def test_from_bytes_little_endian() -> None:
    grid = SampleGrid.from_bytes(b"\x01\x00\x02\x01", width=2, height=1, bytes_per_sample=2)
    assert grid.samples.tolist() == [[1, 258]]
    assert grid.to_bytes() == b"\x01\x00\x02\x01"


def test_from_bytes_rejects_wrong_length() -> None:
    with pytest.raises(ValueError):
        SampleGrid.from_bytes(b"\x00" * 5, width=2, height=1, bytes_per_sample=2)


def test_single_byte_overflow_renders_as_255() -> None:
    grid = SampleGrid(np.array([[12, 300]]), bytes_per_sample=1)
    assert grid.to_bytes() == bytes([12, 255])


def test_brightness_scales_and_clamps() -> None:
    grid = SampleGrid(np.array([[100, 40000]], dtype=np.uint16))
    brighter = grid.adjust_brightness(2.0)
    assert brighter.samples.tolist() == [[200, 65535]]
    assert grid.samples.tolist() == [[100, 40000]]


def test_brightness_clamps_to_single_byte_range() -> None:
    grid = SampleGrid(np.array([[100, 200]]), bytes_per_sample=1)
    assert grid.adjust_brightness(2.0).samples.tolist() == [[200, 255]]


def test_brightness_truncates() -> None:
    grid = SampleGrid(np.array([[3, 5]], dtype=np.uint16))
    assert grid.adjust_brightness(0.5).samples.tolist() == [[1, 2]]


def test_layer_extraction(small_volume: SampleGrid) -> None:
    layer = small_volume.layer(1)
    assert layer.ndim == 2
    assert layer.samples.tolist() == [[10, 11, 12], [13, 14, 15], [16, 17, 18]]
    with pytest.raises(IndexError):
        small_volume.layer(2)


def test_forward_identity_returns_equal_grid(ramp_grid: SampleGrid) -> None:
    assert ramp_grid.transform_forward(IDENTITY_3X3) == ramp_grid


def test_forward_shift_is_normalised_to_origin(ramp_grid: SampleGrid) -> None:
    assert ramp_grid.transform_forward(IDENTITY_3X3.shift(7, -3)) == ramp_grid


def test_forward_scale_leaves_holes() -> None:
    grid = SampleGrid(np.array([[1, 2], [3, 4]], dtype=np.uint16))
    scaled = grid.transform_forward(IDENTITY_3X3.scale(2, 2))
    assert scaled.samples.tolist() == [[1, 0, 2], [0, 0, 0], [3, 0, 4]]


def test_forward_half_turn_flips_grid() -> None:
    grid = SampleGrid(np.arange(1, 10, dtype=np.uint16).reshape(3, 3))
    rotated = grid.transform_forward(IDENTITY_3X3.rotate(math.pi, 1, 1))
    assert np.array_equal(rotated.samples, grid.samples[::-1, ::-1])


def test_forward_full_turn_is_identity(ramp_grid: SampleGrid) -> None:
    assert ramp_grid.transform_forward(IDENTITY_3X3.rotate(2 * math.pi, 2, 2)) == ramp_grid


def test_forward_last_writer_wins(ramp_grid: SampleGrid) -> None:
    collapsed = ramp_grid.transform_forward(lambda x, y: (np.zeros_like(x), np.zeros_like(y)))
    assert collapsed.shape == (1, 1)
    assert collapsed[0, 0] == 20


def test_forward_skips_non_finite_positions() -> None:
    grid = SampleGrid(np.array([[1, 2], [3, 4]], dtype=np.uint16))

    def hide_origin(x: np.ndarray, y: np.ndarray):
        return np.where((x == 0) & (y == 0), np.nan, x), y

    result = grid.transform_forward(hide_origin)
    assert result.samples.tolist() == [[0, 2], [3, 4]]


def test_forward_all_non_finite_gives_empty_grid(ramp_grid: SampleGrid) -> None:
    result = ramp_grid.transform_forward(lambda x, y: (x * np.nan, y))
    assert result.shape == (0, 0)


def test_forward_output_is_clamped_to_maximum_width() -> None:
    grid = SampleGrid(np.array([[5, 6]], dtype=np.uint16))
    result = grid.transform_forward(lambda x, y: (x * 10_000, y))
    assert result.shape == (1, MAX_WIDTH)
    assert result[0, 0] == 5
    assert int(result.samples.sum()) == 5


def test_forward_volume_half_turn_about_z(small_volume: SampleGrid) -> None:
    rotated = small_volume.transform_forward(IDENTITY_4X4.rotate_z(math.pi, 1, 1, 0))
    assert np.array_equal(rotated.samples, small_volume.samples[:, ::-1, ::-1])


def test_within_keeps_canvas_and_drops_overflow(ramp_grid: SampleGrid) -> None:
    shifted = ramp_grid.transform_within(IDENTITY_3X3.shift(1, 0))
    assert shifted.shape == ramp_grid.shape
    assert shifted.samples[:, 0].tolist() == [0, 0, 0, 0]
    assert np.array_equal(shifted.samples[:, 1:], ramp_grid.samples[:, :-1])


def test_within_shift_round_trip_keeps_inner_region(ramp_grid: SampleGrid) -> None:
    back = ramp_grid.transform_within(IDENTITY_3X3.shift(1, 1)).transform_within(IDENTITY_3X3.shift(-1, -1))
    assert np.array_equal(back.samples[:-1, :-1], ramp_grid.samples[:-1, :-1])
    assert back.samples[-1].tolist() == [0] * 5


def test_matrix_dimensionality_must_match_grid(ramp_grid: SampleGrid) -> None:
    with pytest.raises(DimensionMismatchError):
        ramp_grid.transform_forward(IDENTITY_4X4)
    with pytest.raises(DimensionMismatchError):
        ramp_grid.transform_backward(IDENTITY_3X3, (2, 2, 2))


def test_backward_identity(ramp_grid: SampleGrid) -> None:
    assert ramp_grid.transform_backward(IDENTITY_3X3, ramp_grid.shape) == ramp_grid


def test_backward_with_inverse_shift(ramp_grid: SampleGrid) -> None:
    forward = IDENTITY_3X3.shift(2, 1)
    result = ramp_grid.transform_backward(forward.inverse(), ramp_grid.shape, band_size=1)
    assert result is not None
    expected = np.zeros_like(ramp_grid.samples)
    expected[1:, 2:] = ramp_grid.samples[:-1, :-2]
    assert np.array_equal(result.samples, expected)


def test_backward_larger_target_is_zero_outside_source(ramp_grid: SampleGrid) -> None:
    result = ramp_grid.transform_backward(IDENTITY_3X3, (6, 7), max_workers=3, band_size=2)
    assert result is not None
    assert result.shape == (6, 7)
    assert np.array_equal(result.samples[:4, :5], ramp_grid.samples)
    assert int(result.samples[4:].sum()) == 0
    assert int(result.samples[:, 5:].sum()) == 0


def test_backward_rotation_matches_forward_for_half_turn() -> None:
    grid = SampleGrid(np.arange(1, 26, dtype=np.uint16).reshape(5, 5))
    matrix = IDENTITY_3X3.rotate(math.pi, 2, 2)
    backward = grid.transform_backward(matrix.inverse(), grid.shape)
    assert backward == grid.transform_forward(matrix)


def test_backward_volume_shift(small_volume: SampleGrid) -> None:
    inverse = IDENTITY_4X4.shift_3d(0, 0, 1).inverse()
    result = small_volume.transform_backward(inverse, small_volume.shape, band_size=1)
    assert result is not None
    assert int(result.samples[0].sum()) == 0
    assert np.array_equal(result.samples[1], small_volume.samples[0])


def test_new_backward_request_cancels_running_one(ramp_grid: SampleGrid) -> None:
    started = threading.Event()
    release = threading.Event()
    results: Dict[str, Optional[SampleGrid]] = {}

    def slow_identity(x: np.ndarray, y: np.ndarray):
        started.set()
        release.wait(5)
        return x, y

    def first_request() -> None:
        results["first"] = ramp_grid.transform_backward(
            slow_identity, ramp_grid.shape, max_workers=1, band_size=ramp_grid.height
        )

    worker = threading.Thread(target=first_request)
    worker.start()
    assert started.wait(5)

    second = ramp_grid.transform_backward(IDENTITY_3X3, ramp_grid.shape)
    release.set()
    worker.join(5)

    assert not worker.is_alive()
    assert results["first"] is None
    assert second == ramp_grid


def test_cancel_pending_returns_fresh_handle(ramp_grid: SampleGrid) -> None:
    first = ramp_grid.cancel_pending()
    second = ramp_grid.cancel_pending()
    assert first.cancelled
    assert not second.cancelled


def test_slot_renew_cancels_previous_handle() -> None:
    slot = CancellationSlot()
    first = slot.renew()
    second = slot.renew()

    assert first.cancelled
    assert not second.cancelled
    with pytest.raises(TransformCancelled):
        first.raise_if_cancelled()
    second.raise_if_cancelled()
