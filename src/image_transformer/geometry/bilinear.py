"""Bilinear (non-affine) quad-to-rectangle mapping."""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from loguru import logger
from scipy import linalg

from image_transformer.errors import SingularMatrixError
from image_transformer.geometry.quadrilateral import Quadrilateral


@dataclass(frozen=True, slots=True)
class BilinearMapping:
    """``x' = a0·x + a1·y + a2·x·y + a3``, ``y' = b0·x + b1·y + b2·x·y + b3``.

    There is no closed-form inverse, so the mapping is only ever used as a
    forward (source -> target) scatter.
    """

    a: Tuple[float, float, float, float]
    b: Tuple[float, float, float, float]

    def __call__(self, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        a0, a1, a2, a3 = self.a
        b0, b1, b2, b3 = self.b
        xy = x * y
        return a0 * x + a1 * y + a2 * xy + a3, b0 * x + b1 * y + b2 * xy + b3


class BilinearMapper:
    """Derives the eight bilinear coefficients that send a source quadrilateral
    onto its axis-aligned target rectangle.

    Each vertex contributes a row ``(x, y, x·y, 1)`` to a 4x4 system ``M``;
    solving ``M·a = x'`` and ``M·b = y'`` yields the coefficients.
    """

    def __init__(self, quadrilateral: Quadrilateral) -> None:
        if not quadrilateral.is_set:
            raise ValueError("BilinearMapper requires a quadrilateral built from exactly four points")
        self._source = quadrilateral
        self._target = quadrilateral.target_rectangle()

    @property
    def source(self) -> Quadrilateral:
        return self._source

    @property
    def target(self) -> Quadrilateral:
        return self._target

    def coefficient_matrix(self) -> np.ndarray:
        xs = np.array(self._source.xs, dtype=np.float64)
        ys = np.array(self._source.ys, dtype=np.float64)
        return np.column_stack([xs, ys, xs * ys, np.ones(4, dtype=np.float64)])

    def solve(self) -> BilinearMapping:
        """Solve both linear systems.

        Raises:
            SingularMatrixError: when the source vertices do not determine a unique mapping.
        """
        m = self.coefficient_matrix()
        rhs = np.column_stack([self._target.xs, self._target.ys])
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", linalg.LinAlgWarning)
                solution = linalg.solve(m, rhs, check_finite=True)
        except (linalg.LinAlgError, linalg.LinAlgWarning) as exc:
            raise SingularMatrixError(f"Bilinear system for {self._source.points} is singular") from exc
        if not np.all(np.isfinite(solution)):
            raise SingularMatrixError(f"Bilinear system for {self._source.points} has no finite solution")

        a = tuple(float(v) for v in solution[:, 0])
        b = tuple(float(v) for v in solution[:, 1])
        logger.debug(f"Bilinear coefficients a={a} b={b}")
        return BilinearMapping(a=a, b=b)  # type: ignore[arg-type]
