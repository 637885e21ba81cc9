"""Dense single-channel sample grids and the two transform-application strategies."""

from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger

from image_transformer.errors import DimensionMismatchError, TransformCancelled
from image_transformer.geometry.matrix import TransformationMatrix
from image_transformer.grid.cancellation import CancellationHandle, CancellationSlot

MAX_WIDTH = 8192
MAX_HEIGHT = 8192
MAX_DEPTH = 4096

# Positions beyond this magnitude cannot be indexed and are treated like NaN.
COORDINATE_LIMIT = float(2**31)

PositionFunction = Callable[..., Tuple[np.ndarray, ...]]
Transform = Union[TransformationMatrix, PositionFunction]


@dataclass(frozen=True, slots=True)
class SizeInfo:
    """Bounds of all transformed positions, in (x, y[, z]) axis order."""

    smallest: Tuple[int, ...]
    biggest: Tuple[int, ...]

    @classmethod
    def from_positions(cls, positions: np.ndarray) -> "SizeInfo":
        return cls(
            smallest=tuple(int(v) for v in positions.min(axis=1)),
            biggest=tuple(int(v) for v in positions.max(axis=1)),
        )

    @property
    def requested_extent(self) -> Tuple[int, ...]:
        return tuple(hi - lo + 1 for lo, hi in zip(self.smallest, self.biggest))

    @property
    def extent(self) -> Tuple[int, ...]:
        caps = (MAX_WIDTH, MAX_HEIGHT, MAX_DEPTH)
        return tuple(min(size, cap) for size, cap in zip(self.requested_extent, caps))

    @property
    def array_shape(self) -> Tuple[int, ...]:
        return tuple(reversed(self.extent))

    @property
    def clipped(self) -> bool:
        return self.extent != self.requested_extent


def _round_positions(positions: Sequence[np.ndarray]) -> Tuple[np.ndarray, np.ndarray]:
    """Round positions half-up to integer indices.

    Returns an int64 array of shape (ndim, n) and a mask of usable positions;
    NaN, infinite and out-of-range entries are masked out (and left at 0).
    """
    stacked = np.vstack([np.asarray(p, dtype=np.float64).ravel() for p in positions])
    with np.errstate(invalid="ignore"):
        valid = np.all(np.isfinite(stacked), axis=0) & np.all(np.abs(stacked) < COORDINATE_LIMIT, axis=0)
    rounded = np.zeros(stacked.shape, dtype=np.int64)
    rounded[:, valid] = np.floor(stacked[:, valid] + 0.5).astype(np.int64)
    return rounded, valid


def _inside(positions: np.ndarray, extent: Sequence[int]) -> np.ndarray:
    mask = np.ones(positions.shape[1], dtype=bool)
    for axis, size in enumerate(extent):
        mask &= (positions[axis] >= 0) & (positions[axis] < size)
    return mask


def _clamp_shape(shape: Sequence[int]) -> Tuple[int, ...]:
    caps = (MAX_HEIGHT, MAX_WIDTH) if len(shape) == 2 else (MAX_DEPTH, MAX_HEIGHT, MAX_WIDTH)
    return tuple(max(0, min(int(size), cap)) for size, cap in zip(shape, caps))


class SampleGrid:
    """Dense grid of uint16 intensity samples, 2D ``[y, x]`` or 3D ``[z, y, x]``.

    ``bytes_per_sample`` (1 or 2) records how the samples are packed on disk
    and rendered. Grids are immutable: every transform returns a new grid.
    The only mutable state is the cancellation slot used by
    :meth:`transform_backward`.
    """

    __slots__ = ("_samples", "_bytes_per_sample", "_cancellation")

    def __init__(self, samples: np.ndarray, bytes_per_sample: int = 2) -> None:
        array = np.asarray(samples)
        if array.ndim not in (2, 3):
            raise ValueError(f"SampleGrid supports 2D and 3D data only, got {array.ndim} dimensions")
        if bytes_per_sample not in (1, 2):
            raise ValueError(f"bytes_per_sample must be 1 or 2, got {bytes_per_sample}")
        if array.shape != _clamp_shape(array.shape):
            raise ValueError(
                f"Grid shape {array.shape} exceeds the limits "
                f"(depth<={MAX_DEPTH}, height<={MAX_HEIGHT}, width<={MAX_WIDTH})"
            )
        if array.dtype != np.uint16 and array.size and (array.min() < 0 or array.max() > np.iinfo(np.uint16).max):
            raise ValueError("Sample values must fit into an unsigned 16-bit integer")

        owned = np.array(array, dtype=np.uint16, order="C")
        owned.setflags(write=False)
        self._samples = owned
        self._bytes_per_sample = int(bytes_per_sample)
        self._cancellation = CancellationSlot()

    @classmethod
    def empty(cls, shape: Sequence[int], bytes_per_sample: int = 2) -> "SampleGrid":
        """Zero-filled grid; oversized axes are clamped to the limits."""
        return cls._wrap(np.zeros(_clamp_shape(shape), dtype=np.uint16), bytes_per_sample)

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        width: int,
        height: int,
        bytes_per_sample: int,
        depth: Optional[int] = None,
    ) -> "SampleGrid":
        """Unpack little-endian, row-major, ``bytes_per_sample``-packed samples."""
        if bytes_per_sample not in (1, 2):
            raise ValueError(f"bytes_per_sample must be 1 or 2, got {bytes_per_sample}")
        shape = (height, width) if depth is None else (depth, height, width)
        expected = int(np.prod(shape)) * bytes_per_sample
        if len(data) != expected:
            raise ValueError(f"Expected {expected} bytes for shape {shape}, got {len(data)}")
        dtype = np.dtype("<u2") if bytes_per_sample == 2 else np.dtype(np.uint8)
        samples = np.frombuffer(data, dtype=dtype).astype(np.uint16).reshape(shape)
        return cls(samples, bytes_per_sample)

    @classmethod
    def _wrap(cls, samples: np.ndarray, bytes_per_sample: int) -> "SampleGrid":
        grid = cls.__new__(cls)
        samples.setflags(write=False)
        grid._samples = samples
        grid._bytes_per_sample = int(bytes_per_sample)
        grid._cancellation = CancellationSlot()
        return grid

    # Shape and access

    @property
    def samples(self) -> np.ndarray:
        """Read-only sample array."""
        return self._samples

    @property
    def bytes_per_sample(self) -> int:
        return self._bytes_per_sample

    @property
    def max_value(self) -> int:
        return (1 << (8 * self._bytes_per_sample)) - 1

    @property
    def ndim(self) -> int:
        return self._samples.ndim

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self._samples.shape)

    @property
    def width(self) -> int:
        return self._samples.shape[-1]

    @property
    def height(self) -> int:
        return self._samples.shape[-2]

    @property
    def depth(self) -> int:
        return self._samples.shape[0] if self.ndim == 3 else 1

    def __getitem__(self, index: Tuple[int, ...]) -> int:
        return int(self._samples[index])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SampleGrid):
            return NotImplemented
        return self._bytes_per_sample == other._bytes_per_sample and bool(
            np.array_equal(self._samples, other._samples)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"SampleGrid(shape={self.shape}, bytes_per_sample={self._bytes_per_sample})"

    def layer(self, index: int) -> "SampleGrid":
        """One z-slice of a volume as a 2D grid."""
        if self.ndim != 3:
            raise ValueError("layer() is only defined for 3D grids")
        if not 0 <= index < self.depth:
            raise IndexError(f"Layer {index} out of range for depth {self.depth}")
        return SampleGrid._wrap(self._samples[index].copy(), self._bytes_per_sample)

    def to_bytes(self, layer: Optional[int] = None) -> bytes:
        """Pack samples back into the on-disk layout.

        Single-byte grids emit 255 for any value that does not fit a byte.
        """
        data = self._samples if layer is None else self.layer(layer).samples
        if self._bytes_per_sample == 2:
            return data.astype("<u2").tobytes()
        return np.minimum(data, 0xFF).astype(np.uint8).tobytes()

    # Intensity

    def adjust_brightness(self, factor: float) -> "SampleGrid":
        """Multiply every sample by ``factor``, clamped to ``[0, max_value]`` (never wraps)."""
        scaled = self._samples.astype(np.float64) * float(factor)
        np.clip(scaled, 0, self.max_value, out=scaled)
        return SampleGrid._wrap(scaled.astype(np.uint16), self._bytes_per_sample)

    # Geometric transforms

    def transform_forward(self, transform: Transform) -> "SampleGrid":
        """Scatter every source sample to its transformed position.

        The output is sized to the bounding box of all usable positions
        (clamped to the limits) and shifted so the smallest position lands on
        index 0. Later samples in row-major order overwrite earlier ones;
        positions outside the clamped canvas are dropped.
        """
        position_function = self._position_function(transform)
        start = time.perf_counter()

        rounded, valid = _round_positions(position_function(*self._source_coordinates()))
        positions = rounded[:, valid]
        values = self._samples.reshape(-1)[valid]

        if values.size == 0:
            logger.warning(f"Forward transform of {self.shape} produced no finite positions; returning an empty grid")
            return SampleGrid.empty((0,) * self.ndim, self._bytes_per_sample)

        size = SizeInfo.from_positions(positions)
        if size.clipped:
            logger.warning(
                f"Forward transform requested extent {size.requested_extent}, clamped to {size.extent}"
            )
        shifted = positions - np.array(size.smallest, dtype=np.int64)[:, None]
        target = np.zeros(size.array_shape, dtype=np.uint16)
        self._scatter(target, shifted, values)

        elapsed_ms = (time.perf_counter() - start) * 1_000
        logger.info(f"Forward transform {self.shape} -> {target.shape} in {elapsed_ms:.1f} ms")
        return SampleGrid._wrap(target, self._bytes_per_sample)

    def transform_within(self, transform: Transform) -> "SampleGrid":
        """Scatter onto a canvas of the source's own size, dropping what falls outside."""
        position_function = self._position_function(transform)
        rounded, valid = _round_positions(position_function(*self._source_coordinates()))
        target = np.zeros(self._samples.shape, dtype=np.uint16)
        self._scatter(target, rounded[:, valid], self._samples.reshape(-1)[valid])
        return SampleGrid._wrap(target, self._bytes_per_sample)

    def transform_backward(
        self,
        inverse: Transform,
        target_shape: Sequence[int],
        max_workers: Optional[int] = None,
        band_size: int = 16,
    ) -> Optional["SampleGrid"]:
        """Fill a fixed-size target by pulling each cell from ``inverse(cell)`` in the source.

        ``inverse`` maps target positions to source positions. ``target_shape``
        is in array order (``(height, width)`` or ``(depth, height, width)``).
        Cells whose source position is outside the source stay 0.

        The outer axis is split into bands processed by a thread pool. Starting
        a backward transform cancels any earlier one still running on this
        grid; a cancelled call returns ``None``.
        """
        if len(target_shape) != self.ndim:
            raise DimensionMismatchError(
                f"Target shape {tuple(target_shape)} does not match a {self.ndim}D source grid"
            )
        if band_size < 1:
            raise ValueError(f"band_size must be positive, got {band_size}")
        position_function = self._position_function(inverse)
        handle = self.cancel_pending()

        start = time.perf_counter()
        target = np.zeros(_clamp_shape(target_shape), dtype=np.uint16)
        outer = target.shape[0]
        bands = [(lo, min(lo + band_size, outer)) for lo in range(0, outer, band_size)]
        workers = max(1, min(max_workers or os.cpu_count() or 1, len(bands) or 1))

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._gather_band, target, band, position_function, handle) for band in bands
            ]
            try:
                for future in as_completed(futures):
                    future.result()
            except TransformCancelled:
                executor.shutdown(wait=True, cancel_futures=True)
                logger.debug(f"Backward transform on {self.shape} cancelled")
                return None
            except Exception:
                handle.cancel()
                raise

        if handle.cancelled:
            logger.debug(f"Backward transform on {self.shape} superseded after completion")
            return None

        elapsed_ms = (time.perf_counter() - start) * 1_000
        logger.info(
            f"Backward transform {self.shape} -> {target.shape} in {elapsed_ms:.1f} ms "
            f"({len(bands)} bands, {workers} workers)"
        )
        return SampleGrid._wrap(target, self._bytes_per_sample)

    def cancel_pending(self) -> CancellationHandle:
        """Cancel any in-flight backward transform on this grid and return a fresh handle."""
        return self._cancellation.renew()

    # Internals

    def _position_function(self, transform: Transform) -> PositionFunction:
        if isinstance(transform, TransformationMatrix):
            if transform.shape != (self.ndim + 1, self.ndim + 1):
                raise DimensionMismatchError(
                    f"A {transform.height}x{transform.width} matrix cannot transform a {self.ndim}D grid"
                )
            return transform.apply
        if not callable(transform):
            raise TypeError(f"Expected a TransformationMatrix or a callable, got {type(transform).__name__}")
        return transform

    def _source_coordinates(self) -> Tuple[np.ndarray, ...]:
        """Flat (x, y[, z]) coordinates of every sample in row-major order."""
        grids = np.indices(self._samples.shape, dtype=np.float64)
        return tuple(axis.ravel() for axis in reversed(grids))

    def _scatter(self, target: np.ndarray, positions: np.ndarray, values: np.ndarray) -> None:
        extent = tuple(reversed(target.shape))
        inside = _inside(positions, extent)
        dropped = int(inside.size - np.count_nonzero(inside))
        if dropped:
            logger.warning(f"Dropped {dropped} samples outside the {target.shape} canvas")

        linear = np.ravel_multi_index(tuple(positions[::-1, inside]), target.shape)
        kept = values[inside]
        # Last writer wins: keep the final occurrence of each target index.
        _, first_from_end = np.unique(linear[::-1], return_index=True)
        last = linear.size - 1 - first_from_end
        target.reshape(-1)[linear[last]] = kept[last]

    def _gather_band(
        self,
        target: np.ndarray,
        band: Tuple[int, int],
        position_function: PositionFunction,
        handle: CancellationHandle,
    ) -> None:
        handle.raise_if_cancelled()
        lo, hi = band
        cells = np.mgrid[tuple(slice(lo, hi) if axis == 0 else slice(0, size) for axis, size in enumerate(target.shape))]
        coordinates = tuple(axis.ravel().astype(np.float64) for axis in reversed(cells))

        rounded, valid = _round_positions(position_function(*coordinates))
        source_extent = tuple(reversed(self._samples.shape))
        inside = valid & _inside(rounded, source_extent)

        handle.raise_if_cancelled()
        band_view = target[lo:hi].reshape(-1)
        band_view[inside] = self._samples[tuple(rounded[::-1, inside])]
