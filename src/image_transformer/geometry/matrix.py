"""Homogeneous transformation matrices for 2D (3x3) and 3D (4x4) sample grids."""

from __future__ import annotations

import math
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from image_transformer.errors import DimensionMismatchError, SingularMatrixError
from image_transformer.geometry.quadrilateral import Quadrilateral

SINGULAR_TOLERANCE = 1e-12


class TransformationMatrix:
    """Immutable matrix of doubles.

    Normal use is 3x3 (2D homogeneous) or 4x4 (3D homogeneous), but any
    height x width is accepted so that column vectors can be composed too.
    Every operation returns a new matrix.

    The builder methods (``shift``, ``scale``, ``shear``, ``rotate`` ...)
    post-multiply: ``m.shear(...).scale(...)`` is ``m @ Shear @ Scale``.
    Applied to a point, the builder chained last acts first.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Iterable[Iterable[float]] | np.ndarray) -> None:
        array = np.array(values, dtype=np.float64)
        if array.ndim != 2:
            raise ValueError(f"Transformation matrix must be two-dimensional, got shape {array.shape}")
        array.setflags(write=False)
        self._values = array

    @classmethod
    def identity(cls, size: int) -> "TransformationMatrix":
        return cls(np.eye(size, dtype=np.float64))

    @property
    def height(self) -> int:
        return int(self._values.shape[0])

    @property
    def width(self) -> int:
        return int(self._values.shape[1])

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def values(self) -> np.ndarray:
        """Read-only view of the underlying array."""
        return self._values

    def __getitem__(self, index: Tuple[int, int]) -> float:
        return float(self._values[index])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TransformationMatrix):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._values, other._values))

    def __hash__(self) -> int:
        return hash((self.shape, self._values.tobytes()))

    def __repr__(self) -> str:
        rows = ", ".join("[" + ", ".join(f"{v:.6g}" for v in row) + "]" for row in self._values)
        return f"TransformationMatrix([{rows}])"

    def __matmul__(self, other: "TransformationMatrix") -> "TransformationMatrix":
        if not isinstance(other, TransformationMatrix):
            return NotImplemented
        return self.compose(other)

    def __mul__(self, value: float) -> "TransformationMatrix":
        if isinstance(value, TransformationMatrix):
            return self.compose(value)
        return self.scalar_multiply(value)

    __rmul__ = __mul__

    def is_close(self, other: "TransformationMatrix", atol: float = 1e-9) -> bool:
        return self.shape == other.shape and bool(np.allclose(self._values, other._values, atol=atol))

    def is_identity(self) -> bool:
        return self.height == self.width and self == TransformationMatrix.identity(self.height)

    # Algebra

    def compose(self, other: "TransformationMatrix") -> "TransformationMatrix":
        """Matrix product ``self · other``."""
        if self.width != other.height:
            raise DimensionMismatchError(
                f"Cannot compose {self.height}x{self.width} with {other.height}x{other.width}: "
                "the column count of the left matrix must equal the row count of the right matrix"
            )
        return TransformationMatrix(self._values @ other._values)

    def scalar_multiply(self, value: float) -> "TransformationMatrix":
        return TransformationMatrix(self._values * float(value))

    def determinant(self) -> float:
        self._require_shape(3, "determinant")
        (a00, a01, a02), (a10, a11, a12), (a20, a21, a22) = self._values.tolist()
        return (
            a00 * a11 * a22
            + a01 * a12 * a20
            + a02 * a10 * a21
            - a00 * a12 * a21
            - a01 * a10 * a22
            - a02 * a11 * a20
        )

    def adjugate(self) -> "TransformationMatrix":
        self._require_shape(3, "adjugate")
        (a00, a01, a02), (a10, a11, a12), (a20, a21, a22) = self._values.tolist()
        return TransformationMatrix(
            [
                [a11 * a22 - a12 * a21, a02 * a21 - a01 * a22, a01 * a12 - a02 * a11],
                [a12 * a20 - a10 * a22, a00 * a22 - a02 * a20, a02 * a10 - a00 * a12],
                [a10 * a21 - a11 * a20, a01 * a20 - a00 * a21, a00 * a11 - a01 * a10],
            ]
        )

    def invert(self) -> "TransformationMatrix":
        """Inverse of a 3x3 matrix via adjugate and determinant.

        Raises:
            SingularMatrixError: if the determinant is (numerically) zero.
        """
        determinant = self.determinant()
        if abs(determinant) <= SINGULAR_TOLERANCE:
            raise SingularMatrixError(f"Matrix is singular (determinant={determinant!r}): {self!r}")
        return self.adjugate().scalar_multiply(1.0 / determinant)

    def invert_3d(self) -> "TransformationMatrix":
        """Inverse of a 4x4 affine matrix: ``[M t; 0 1] -> [M⁻¹ -M⁻¹t; 0 1]``."""
        self._require_shape(4, "invert_3d")
        if not np.array_equal(self._values[3], [0.0, 0.0, 0.0, 1.0]):
            raise ValueError(f"invert_3d requires an affine matrix with bottom row [0 0 0 1], got {self._values[3]}")
        linear_inverse = TransformationMatrix(self._values[:3, :3]).invert()
        translation = TransformationMatrix(self._values[:3, 3:4])
        moved = linear_inverse.scalar_multiply(-1.0).compose(translation)

        result = np.eye(4, dtype=np.float64)
        result[:3, :3] = linear_inverse.values
        result[:3, 3] = moved.values[:, 0]
        return TransformationMatrix(result)

    def inverse(self) -> "TransformationMatrix":
        """``invert`` for 3x3 matrices, ``invert_3d`` for 4x4 affine ones."""
        if self.shape == (4, 4):
            return self.invert_3d()
        return self.invert()

    # 2D builders

    def shift(self, dx: float, dy: float) -> "TransformationMatrix":
        return self.compose(TransformationMatrix([[1, 0, dx], [0, 1, dy], [0, 0, 1]]))

    def scale(self, sx: float, sy: float) -> "TransformationMatrix":
        return self.compose(TransformationMatrix([[sx, 0, 0], [0, sy, 0], [0, 0, 1]]))

    def shear(self, bx: float, by: float) -> "TransformationMatrix":
        return self.compose(TransformationMatrix([[1, bx, 0], [by, 1, 0], [0, 0, 1]]))

    def rotate(self, alpha: float, xc: float, yc: float) -> "TransformationMatrix":
        """Rotate by ``alpha`` radians about ``(xc, yc)``."""
        cos, sin = math.cos(alpha), math.sin(alpha)
        rotation = TransformationMatrix([[cos, -sin, 0], [sin, cos, 0], [0, 0, 1]])
        to_origin = IDENTITY_3X3.shift(xc, yc)
        back = IDENTITY_3X3.shift(-xc, -yc)
        return self.compose(to_origin).compose(rotation).compose(back)

    def project_from_quadrilateral(self, quadrilateral: Optional[Quadrilateral]) -> "TransformationMatrix":
        """Append the projective mapping of ``quadrilateral`` onto its target rectangle.

        An unset or missing quadrilateral leaves the matrix unchanged.
        """
        if quadrilateral is None or not quadrilateral.is_set:
            return self
        return self.compose(projective_mapping(quadrilateral))

    # 3D builders

    def shift_3d(self, dx: float, dy: float, dz: float) -> "TransformationMatrix":
        return self.compose(
            TransformationMatrix([[1, 0, 0, dx], [0, 1, 0, dy], [0, 0, 1, dz], [0, 0, 0, 1]])
        )

    def scale_3d(self, sx: float, sy: float, sz: float) -> "TransformationMatrix":
        return self.compose(
            TransformationMatrix([[sx, 0, 0, 0], [0, sy, 0, 0], [0, 0, sz, 0], [0, 0, 0, 1]])
        )

    def shear_3d(
        self, bxy: float, byx: float, bxz: float, bzx: float, byz: float, bzy: float
    ) -> "TransformationMatrix":
        return self.compose(
            TransformationMatrix(
                [[1, bxy, bxz, 0], [byx, 1, byz, 0], [bzx, bzy, 1, 0], [0, 0, 0, 1]]
            )
        )

    def rotate_x(self, alpha: float, xc: float, yc: float, zc: float) -> "TransformationMatrix":
        cos, sin = math.cos(alpha), math.sin(alpha)
        rotation = TransformationMatrix([[1, 0, 0, 0], [0, cos, -sin, 0], [0, sin, cos, 0], [0, 0, 0, 1]])
        return self._rotate_about(rotation, xc, yc, zc)

    def rotate_y(self, alpha: float, xc: float, yc: float, zc: float) -> "TransformationMatrix":
        cos, sin = math.cos(alpha), math.sin(alpha)
        rotation = TransformationMatrix([[cos, 0, sin, 0], [0, 1, 0, 0], [-sin, 0, cos, 0], [0, 0, 0, 1]])
        return self._rotate_about(rotation, xc, yc, zc)

    def rotate_z(self, alpha: float, xc: float, yc: float, zc: float) -> "TransformationMatrix":
        cos, sin = math.cos(alpha), math.sin(alpha)
        rotation = TransformationMatrix([[cos, -sin, 0, 0], [sin, cos, 0, 0], [0, 0, 1, 0], [0, 0, 0, 1]])
        return self._rotate_about(rotation, xc, yc, zc)

    # Application

    def apply(self, *coordinates: np.ndarray) -> Tuple[np.ndarray, ...]:
        """Map coordinate arrays ``(x, y[, z])`` through the matrix.

        The result is divided by the homogeneous ``w`` component; ``w == 0``
        yields inf/NaN positions, which callers must filter.
        """
        if len(coordinates) != self.height - 1 or self.height != self.width:
            raise DimensionMismatchError(
                f"A {self.height}x{self.width} matrix cannot map {len(coordinates)}-dimensional points"
            )
        arrays = [np.asarray(c, dtype=np.float64) for c in coordinates]
        shape = np.broadcast(*arrays).shape
        flat = [np.broadcast_to(a, shape).ravel() for a in arrays]
        homogeneous = np.vstack(flat + [np.ones(flat[0].size, dtype=np.float64)])
        mapped = self._values @ homogeneous
        with np.errstate(divide="ignore", invalid="ignore"):
            cartesian = mapped[:-1] / mapped[-1]
        return tuple(row.reshape(shape) for row in cartesian)

    def __call__(self, *coordinates: np.ndarray) -> Tuple[np.ndarray, ...]:
        return self.apply(*coordinates)

    def _rotate_about(self, rotation: "TransformationMatrix", xc: float, yc: float, zc: float) -> "TransformationMatrix":
        to_origin = IDENTITY_4X4.shift_3d(xc, yc, zc)
        back = IDENTITY_4X4.shift_3d(-xc, -yc, -zc)
        return self.compose(to_origin).compose(rotation).compose(back)

    def _require_shape(self, size: int, operation: str) -> None:
        if self.shape != (size, size):
            raise DimensionMismatchError(f"{operation} requires a {size}x{size} matrix, got {self.height}x{self.width}")


IDENTITY_3X3 = TransformationMatrix.identity(3)
IDENTITY_4X4 = TransformationMatrix.identity(4)


def unit_square_to_quadrilateral(quadrilateral: Quadrilateral) -> TransformationMatrix:
    """Projective matrix mapping the unit square onto ``quadrilateral``.

    Closed form (Heckbert): the perspective terms a20/a21 come from the
    "skew" of the opposite edges; the remaining coefficients follow from them.
    """
    x0, x1, x2, x3 = quadrilateral.xs
    y0, y1, y2, y3 = quadrilateral.ys

    denominator = (x1 - x2) * (y3 - y2) - (x3 - x2) * (y1 - y2)
    if denominator == 0:
        raise SingularMatrixError(f"Degenerate quadrilateral {quadrilateral.points}: edges p1-p2 and p3-p2 are parallel")

    sx = x0 - x1 + x2 - x3
    sy = y0 - y1 + y2 - y3
    a20 = (sx * (y3 - y2) - sy * (x3 - x2)) / denominator
    a21 = (sy * (x1 - x2) - sx * (y1 - y2)) / denominator

    a00 = x1 - x0 + a20 * x1
    a01 = x3 - x0 + a21 * x3
    a02 = x0
    a10 = y1 - y0 + a20 * y1
    a11 = y3 - y0 + a21 * y3
    a12 = y0

    return TransformationMatrix([[a00, a01, a02], [a10, a11, a12], [a20, a21, 1.0]])


def projective_mapping(quadrilateral: Quadrilateral) -> TransformationMatrix:
    """Quad -> unit square -> target rectangle, composed into a single matrix.

    Raises:
        SingularMatrixError: for degenerate quadrilaterals (e.g. three collinear points).
    """
    source_from_unit = unit_square_to_quadrilateral(quadrilateral)
    unit_from_source = source_from_unit.invert()
    target_from_unit = unit_square_to_quadrilateral(quadrilateral.target_rectangle())
    return target_from_unit.compose(unit_from_source)


def homogeneous_point(*coordinates: float) -> TransformationMatrix:
    """Column vector ``[x, y(, z), 1]ᵀ``."""
    return TransformationMatrix([[float(c)] for c in coordinates] + [[1.0]])


def point_from_homogeneous(vector: TransformationMatrix) -> Sequence[float]:
    w = vector[vector.height - 1, 0]
    return tuple(vector[i, 0] / w for i in range(vector.height - 1))
