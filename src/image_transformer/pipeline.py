"""High-level orchestration: brightness, quad mapping, shift and matrix stages with caching."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Generic, Hashable, Iterable, Optional, Sequence, Tuple, TypeVar, Union

from loguru import logger

from image_transformer.config import AppConfig
from image_transformer.errors import SingularMatrixError, TransformError
from image_transformer.geometry import (
    IDENTITY_3X3,
    IDENTITY_4X4,
    BilinearMapper,
    BilinearMapping,
    Quadrilateral,
    TransformationMatrix,
    projective_mapping,
)
from image_transformer.grid import SampleGrid
from image_transformer.loading import ImageMetadata, LoadedImage, RawImageLoader

T = TypeVar("T")
Token = Tuple[str, int]
QuadInput = Union[Quadrilateral, Iterable[Sequence[float]], None]

_UNSET = object()


class StageCache(Generic[T]):
    """Memoizes the output of one stage for the inputs it was computed from.

    A ``None`` result (a cancelled backward pass) is never stored, so the last
    good output survives superseded and failed builds.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = threading.Lock()
        self._key: object = _UNSET
        self._value: Optional[T] = None
        self._version = 0

    @property
    def value(self) -> Optional[T]:
        return self._value

    def lookup(
        self,
        key: Hashable,
        compute: Callable[[], Optional[T]],
        is_current: Optional[Callable[[], bool]] = None,
    ) -> Tuple[Optional[T], Token]:
        """Return the cached output for ``key`` or compute and store a new one.

        ``is_current`` is checked under the cache lock right before storing;
        when it returns False the freshly computed value is handed back but
        not stored.
        """
        with self._lock:
            if self._key is not _UNSET and self._key == key:
                logger.debug(f"{self._name}: unchanged, reusing cached output")
                return self._value, (self._name, self._version)

        logger.debug(f"{self._name}: inputs changed, recomputing")
        value = compute()
        if value is None:
            return None, (self._name, self._version)

        with self._lock:
            if is_current is not None and not is_current():
                logger.debug(f"{self._name}: superseded by a newer build, not storing")
                return value, (self._name, self._version)
            self._key = key
            self._value = value
            self._version += 1
            return value, (self._name, self._version)


def _as_quadrilateral(points: QuadInput) -> Optional[Quadrilateral]:
    if points is None:
        return None
    if isinstance(points, Quadrilateral):
        return points
    return Quadrilateral.from_points(points)


class _PipelineBase:
    """Source -> brightness -> geometric -> shift -> matrix, shared by 2D and 3D.

    Each stage compares its current inputs (its own parameters plus the
    upstream stage's output token) with the ones it last ran on and only
    recomputes when they differ.
    """

    _ndim = 2

    def __init__(
        self,
        loader: Optional[RawImageLoader] = None,
        max_workers: Optional[int] = None,
        band_size: int = 16,
    ) -> None:
        self._loader = loader or RawImageLoader()
        self._max_workers = max_workers
        self._band_size = band_size

        self._path: Optional[Path] = None
        self._memory_source: Optional[LoadedImage] = None
        self._memory_token = 0
        self._brightness = 0.0
        self._source_to_target = True

        self._source_cache: StageCache[LoadedImage] = StageCache("source")
        self._brightness_cache: StageCache[SampleGrid] = StageCache("brightness")
        self._shift_cache: StageCache[SampleGrid] = StageCache("shift")
        self._matrix_cache: StageCache[SampleGrid] = StageCache("matrix")
        self._last_result: Optional[SampleGrid] = None
        self._build_lock = threading.Lock()
        self._generation = 0

    # Common parameters

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def brightness(self) -> float:
        """Custom brightness factor; values <= 0 defer to the metadata default."""
        return self._brightness

    @property
    def source_to_target(self) -> bool:
        return self._source_to_target

    @property
    def layer_count(self) -> int:
        loaded = self._source_cache.value
        return loaded.layer_count if loaded is not None else 0

    @property
    def default_brightness(self) -> float:
        loaded = self._source_cache.value
        return loaded.metadata.brightness_factor if loaded is not None else 1.0

    @property
    def last_result(self) -> Optional[SampleGrid]:
        """Most recent successfully built grid."""
        return self._last_result

    def set_path(self, path: str | Path):
        self._path = Path(path)
        self._memory_source = None
        return self

    def set_source(self, grid: SampleGrid, default_brightness: float = 1.0):
        """Use an in-memory grid instead of a file."""
        if grid.ndim != self._ndim:
            raise ValueError(f"{type(self).__name__} expects a {self._ndim}D grid, got {grid.ndim}D")
        metadata = ImageMetadata(
            width=max(grid.width, 1),
            height=max(grid.height, 1),
            bytes_per_sample=grid.bytes_per_sample,
            brightness_factor=default_brightness,
        )
        self._memory_token += 1
        self._memory_source = LoadedImage(grid=grid, metadata=metadata, layer=0, layer_count=grid.depth)
        self._path = None
        return self

    def set_brightness(self, brightness: float):
        self._brightness = float(brightness)
        return self

    def set_source_to_target(self, enabled: bool):
        self._source_to_target = bool(enabled)
        return self

    def effective_brightness(self, metadata: ImageMetadata) -> float:
        return self._brightness if self._brightness > 0 else metadata.brightness_factor

    # Build

    def build(self) -> Optional[SampleGrid]:
        """Run every stage that needs it.

        Returns ``None`` if a newer build started before this one finished;
        a superseded build never overwrites the newer one's cached output or
        ``last_result``. Engine errors propagate; cached outputs and
        ``last_result`` keep their last good values.
        """
        with self._build_lock:
            self._generation += 1
            generation = self._generation

        def is_current() -> bool:
            return self._generation == generation

        try:
            loaded, token = self._source_stage()
            grid, token = self._brightness_stage(loaded, token)
            grid, token = self._geometric_stage(grid, token)
            if self._source_to_target:
                grid, token = self._shift_stage(grid, token)
            result = self._matrix_stage(grid, token, is_current)
        except TransformError as exc:
            logger.error(f"{type(self).__name__} build failed: {exc}")
            raise

        if result is None:
            return None
        with self._build_lock:
            if not is_current():
                logger.debug(f"{type(self).__name__} build {generation} superseded, discarding its result")
                return None
            self._last_result = result
        return result

    def _source_stage(self) -> Tuple[LoadedImage, Token]:
        if self._memory_source is not None:
            memory = self._memory_source
            loaded, token = self._source_cache.lookup(("memory", self._memory_token), lambda: memory)
        elif self._path is not None:
            loaded, token = self._source_cache.lookup(self._source_key(), self._load)
        else:
            raise ValueError("No source set: call set_path() or set_source() before build()")
        assert loaded is not None
        return loaded, token

    def _brightness_stage(self, loaded: LoadedImage, token: Token) -> Tuple[SampleGrid, Token]:
        factor = self.effective_brightness(loaded.metadata)
        if factor == 1.0:
            return loaded.grid, token
        grid, token = self._brightness_cache.lookup(
            (factor, token), lambda: loaded.grid.adjust_brightness(factor)
        )
        assert grid is not None
        return grid, token

    def _shift_stage(self, grid: SampleGrid, token: Token) -> Tuple[SampleGrid, Token]:
        shift = self._shift_matrix()
        if shift.is_identity():
            return grid, token
        shifted, token = self._shift_cache.lookup((shift, token), lambda: grid.transform_within(shift))
        assert shifted is not None
        return shifted, token

    def _matrix_stage(
        self, grid: SampleGrid, token: Token, is_current: Callable[[], bool]
    ) -> Optional[SampleGrid]:
        matrix = self.transformation_matrix(grid)
        if matrix.is_identity():
            logger.debug("matrix: identity, skipping full-grid pass")
            return grid

        if self._source_to_target:
            key: Hashable = (matrix, True, None, token)
            result, _ = self._matrix_cache.lookup(key, lambda: grid.transform_forward(matrix), is_current)
            return result

        target_shape = self.target_shape
        key = (matrix, False, target_shape, token)

        def gather() -> Optional[SampleGrid]:
            return grid.transform_backward(
                matrix.inverse(),
                target_shape,
                max_workers=self._max_workers,
                band_size=self._band_size,
            )

        result, _ = self._matrix_cache.lookup(key, gather, is_current)
        return result

    def _reset_common(self) -> None:
        self._brightness = 0.0
        self._source_to_target = True

    # Hooks

    def _source_key(self) -> Hashable:
        raise NotImplementedError

    def _load(self) -> LoadedImage:
        raise NotImplementedError

    def _geometric_stage(self, grid: SampleGrid, token: Token) -> Tuple[SampleGrid, Token]:
        return grid, token

    def _shift_matrix(self) -> TransformationMatrix:
        raise NotImplementedError

    def transformation_matrix(self, grid: SampleGrid) -> TransformationMatrix:
        raise NotImplementedError

    @property
    def target_shape(self) -> Tuple[int, ...]:
        raise NotImplementedError


class TransformPipeline(_PipelineBase):
    """2D pipeline: layer selection, brightness, bilinear quad map, shift, affine/projective matrix.

    In forward (source-to-target) mode the shift is a separate fixed-canvas
    pass and the matrix is scattered onto a grow-to-fit canvas. In backward
    mode the shift is folded into the matrix, which is inverted and gathered
    into a ``target_width x target_height`` canvas.
    """

    _ndim = 2

    def __init__(
        self,
        loader: Optional[RawImageLoader] = None,
        max_workers: Optional[int] = None,
        band_size: int = 16,
    ) -> None:
        super().__init__(loader=loader, max_workers=max_workers, band_size=band_size)
        self._layer = 0
        self._bilinear_cache: StageCache[SampleGrid] = StageCache("bilinear")
        self.reset()

    @classmethod
    def from_config(cls, config: AppConfig, loader: Optional[RawImageLoader] = None) -> "TransformPipeline":
        params = config.image
        pipeline = cls(loader=loader, max_workers=config.engine.max_workers, band_size=config.engine.band_size)
        (
            pipeline.rotate(params.rotation)
            .scale(*params.scale)
            .shear(*params.shear)
            .shift(*params.shift)
            .set_brightness(params.brightness)
            .set_layer(params.layer)
            .set_source_to_target(params.source_to_target)
            .set_target_size(*params.target_size)
            .project(params.projection_quad)
            .map_bilinear(params.bilinear_quad)
        )
        logger.info(
            f"2D pipeline configured ({'forward' if params.source_to_target else 'backward'} mode, "
            f"workers={config.engine.max_workers or 'auto'})"
        )
        return pipeline

    # Parameters

    @property
    def rotation(self) -> float:
        return self._rotation

    @property
    def scale_factors(self) -> Tuple[float, float]:
        return self._scale

    @property
    def shear_factors(self) -> Tuple[float, float]:
        return self._shear

    @property
    def offset(self) -> Tuple[int, int]:
        return self._shift

    @property
    def layer(self) -> int:
        return self._layer

    @property
    def projection_quad(self) -> Optional[Quadrilateral]:
        return self._projection_quad

    @property
    def bilinear_quad(self) -> Optional[Quadrilateral]:
        return self._bilinear_quad

    @property
    def target_size(self) -> Tuple[int, int]:
        return self._target_size

    @property
    def target_shape(self) -> Tuple[int, int]:
        width, height = self._target_size
        return (height, width)

    def rotate(self, alpha: float) -> "TransformPipeline":
        self._rotation = float(alpha)
        return self

    def scale(self, sx: float, sy: float) -> "TransformPipeline":
        self._scale = (float(sx), float(sy))
        return self

    def shear(self, bx: float, by: float) -> "TransformPipeline":
        self._shear = (float(bx), float(by))
        return self

    def shift(self, dx: int, dy: int) -> "TransformPipeline":
        self._shift = (int(dx), int(dy))
        return self

    def set_layer(self, layer: int) -> "TransformPipeline":
        if layer < 0:
            raise ValueError(f"Layer index must be non-negative, got {layer}")
        self._layer = int(layer)
        return self

    def set_target_size(self, width: int, height: int) -> "TransformPipeline":
        if width <= 0 or height <= 0:
            raise ValueError(f"Target size must be positive, got {width}x{height}")
        self._target_size = (int(width), int(height))
        return self

    def project(self, points: QuadInput) -> "TransformPipeline":
        """Set (or clear with ``None``) the quadrilateral for the projective mapping.

        A degenerate quadrilateral is rejected and the previous one stays active.
        """
        quad = _as_quadrilateral(points)
        if quad is None:
            self._projection_quad = None
            return self
        if not quad.is_set:
            logger.warning("Projection needs exactly four points; keeping the previous quadrilateral")
            return self
        try:
            projective_mapping(quad)
        except SingularMatrixError as exc:
            logger.warning(f"Rejected projection quadrilateral {quad.points}: {exc}")
            return self
        self._projection_quad = quad
        return self

    def map_bilinear(self, points: QuadInput) -> "TransformPipeline":
        """Set (or clear with ``None``) the quadrilateral for the bilinear mapping."""
        quad = _as_quadrilateral(points)
        if quad is None:
            self._bilinear_quad = None
            self._bilinear_mapping = None
            return self
        if not quad.is_set:
            logger.warning("Bilinear mapping needs exactly four points; keeping the previous quadrilateral")
            return self
        try:
            mapping = BilinearMapper(quad).solve()
        except SingularMatrixError as exc:
            logger.warning(f"Rejected bilinear quadrilateral {quad.points}: {exc}")
            return self
        self._bilinear_quad = quad
        self._bilinear_mapping = mapping
        return self

    def reset(self) -> "TransformPipeline":
        """Restore default parameters; the source and caches are kept."""
        self._reset_common()
        self._rotation = 0.0
        self._scale: Tuple[float, float] = (1.0, 1.0)
        self._shear: Tuple[float, float] = (0.0, 0.0)
        self._shift: Tuple[int, int] = (0, 0)
        self._target_size: Tuple[int, int] = (512, 512)
        self._projection_quad: Optional[Quadrilateral] = None
        self._bilinear_quad: Optional[Quadrilateral] = None
        self._bilinear_mapping: Optional[BilinearMapping] = None
        return self

    def transformation_matrix(self, grid: SampleGrid) -> TransformationMatrix:
        """``Shear · Scale · Rotate(centre) · Project [· Shift in backward mode]``."""
        matrix = (
            IDENTITY_3X3.shear(*self._shear)
            .scale(*self._scale)
            .rotate(self._rotation, grid.width // 2, grid.height // 2)
            .project_from_quadrilateral(self._projection_quad)
        )
        if not self._source_to_target:
            matrix = matrix.shift(*self._shift)
        return matrix

    # Hooks

    def _source_key(self) -> Hashable:
        return ("file", self._path, self._layer)

    def _load(self) -> LoadedImage:
        assert self._path is not None
        return self._loader.load_layer(self._path, self._layer)

    def _geometric_stage(self, grid: SampleGrid, token: Token) -> Tuple[SampleGrid, Token]:
        mapping = self._bilinear_mapping
        if mapping is None:
            return grid, token
        mapped, token = self._bilinear_cache.lookup(
            (self._bilinear_quad, token), lambda: grid.transform_forward(mapping)
        )
        assert mapped is not None
        return mapped, token

    def _shift_matrix(self) -> TransformationMatrix:
        return IDENTITY_3X3.shift(*self._shift)


class VolumeTransformPipeline(_PipelineBase):
    """3D pipeline: brightness, shear, scale, rotation about the volume centre, shift."""

    _ndim = 3

    def __init__(
        self,
        loader: Optional[RawImageLoader] = None,
        max_workers: Optional[int] = None,
        band_size: int = 16,
    ) -> None:
        super().__init__(loader=loader, max_workers=max_workers, band_size=band_size)
        self.reset()

    @classmethod
    def from_config(cls, config: AppConfig, loader: Optional[RawImageLoader] = None) -> "VolumeTransformPipeline":
        params = config.volume
        pipeline = cls(loader=loader, max_workers=config.engine.max_workers, band_size=config.engine.band_size)
        (
            pipeline.rotate(*params.rotation)
            .scale(*params.scale)
            .shear(*params.shear)
            .shift(*params.shift)
            .set_brightness(params.brightness)
            .set_source_to_target(params.source_to_target)
            .set_target_size(*params.target_size)
        )
        logger.info(f"3D pipeline configured ({'forward' if params.source_to_target else 'backward'} mode)")
        return pipeline

    @property
    def rotation(self) -> Tuple[float, float, float]:
        return self._rotation

    @property
    def scale_factors(self) -> Tuple[float, float, float]:
        return self._scale

    @property
    def shear_factors(self) -> Tuple[float, float, float, float, float, float]:
        return self._shear

    @property
    def offset(self) -> Tuple[int, int, int]:
        return self._shift

    @property
    def target_size(self) -> Tuple[int, int, int]:
        return self._target_size

    @property
    def target_shape(self) -> Tuple[int, int, int]:
        width, height, depth = self._target_size
        return (depth, height, width)

    def rotate(self, ax: float, ay: float, az: float) -> "VolumeTransformPipeline":
        self._rotation = (float(ax), float(ay), float(az))
        return self

    def scale(self, sx: float, sy: float, sz: float) -> "VolumeTransformPipeline":
        self._scale = (float(sx), float(sy), float(sz))
        return self

    def shear(
        self, bxy: float, byx: float, bxz: float, bzx: float, byz: float, bzy: float
    ) -> "VolumeTransformPipeline":
        self._shear = tuple(float(b) for b in (bxy, byx, bxz, bzx, byz, bzy))  # type: ignore[assignment]
        return self

    def shift(self, dx: int, dy: int, dz: int) -> "VolumeTransformPipeline":
        self._shift = (int(dx), int(dy), int(dz))
        return self

    def set_target_size(self, width: int, height: int, depth: int) -> "VolumeTransformPipeline":
        if min(width, height, depth) <= 0:
            raise ValueError(f"Target size must be positive, got {width}x{height}x{depth}")
        self._target_size = (int(width), int(height), int(depth))
        return self

    def reset(self) -> "VolumeTransformPipeline":
        self._reset_common()
        self._rotation: Tuple[float, float, float] = (0.0, 0.0, 0.0)
        self._scale: Tuple[float, float, float] = (1.0, 1.0, 1.0)
        self._shear: Tuple[float, float, float, float, float, float] = (0.0,) * 6  # type: ignore[assignment]
        self._shift: Tuple[int, int, int] = (0, 0, 0)
        self._target_size: Tuple[int, int, int] = (256, 256, 64)
        return self

    def transformation_matrix(self, grid: SampleGrid) -> TransformationMatrix:
        centre = (grid.width // 2, grid.height // 2, grid.depth // 2)
        ax, ay, az = self._rotation
        matrix = (
            IDENTITY_4X4.shear_3d(*self._shear)
            .scale_3d(*self._scale)
            .rotate_x(ax, *centre)
            .rotate_y(ay, *centre)
            .rotate_z(az, *centre)
        )
        if not self._source_to_target:
            matrix = matrix.shift_3d(*self._shift)
        return matrix

    def _source_key(self) -> Hashable:
        return ("file", self._path)

    def _load(self) -> LoadedImage:
        assert self._path is not None
        return self._loader.load_volume(self._path)

    def _shift_matrix(self) -> TransformationMatrix:
        return IDENTITY_4X4.shift_3d(*self._shift)
