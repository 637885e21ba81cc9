"""Canonical vertex ordering for four user-picked points."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

Point = Tuple[float, float]


@dataclass(frozen=True, slots=True)
class Quadrilateral:
    """Four vertices ordered for projective and bilinear mapping.

    Image coordinates grow downward, so the layout is::

        p0---p1
        |    |
        p3---p2

    p0/p1 are the two points with the smallest y (left, right), p2/p3 the two
    with the largest y (right, left). Ties keep input order.

    A quadrilateral built from anything but exactly four points is left unset:
    every coordinate is 0.0 and ``is_set`` is False.
    """

    p0: Point = (0.0, 0.0)
    p1: Point = (0.0, 0.0)
    p2: Point = (0.0, 0.0)
    p3: Point = (0.0, 0.0)
    is_set: bool = False

    @classmethod
    def from_points(cls, points: Optional[Iterable[Sequence[float]]]) -> "Quadrilateral":
        if points is None:
            return cls()
        pts = [(float(p[0]), float(p[1])) for p in points]
        if len(pts) != 4:
            return cls()

        by_y = sorted(pts, key=lambda point: point[1])
        lower = sorted(by_y[:2], key=lambda point: point[0])
        upper = sorted(by_y[2:], key=lambda point: point[0])
        return cls(p0=lower[0], p1=lower[-1], p2=upper[-1], p3=upper[0], is_set=True)

    @classmethod
    def rectangle(cls, width: float, height: float) -> "Quadrilateral":
        """Axis-aligned rectangle anchored at the origin."""
        return cls.from_points([(0.0, 0.0), (0.0, height), (width, 0.0), (width, height)])

    @property
    def points(self) -> Tuple[Point, Point, Point, Point]:
        return (self.p0, self.p1, self.p2, self.p3)

    @property
    def xs(self) -> Tuple[float, float, float, float]:
        return (self.p0[0], self.p1[0], self.p2[0], self.p3[0])

    @property
    def ys(self) -> Tuple[float, float, float, float]:
        return (self.p0[1], self.p1[1], self.p2[1], self.p3[1])

    def target_rectangle(self) -> "Quadrilateral":
        """Rectangle ``[0,0]-[W,H]`` spanned by the quadrilateral's own edge extents."""
        x0, x1, x2, x3 = self.xs
        y0, y1, y2, y3 = self.ys
        width = max(x1 - x0, x2 - x3)
        height = max(y2 - y1, y3 - y0)
        return Quadrilateral.rectangle(width, height)

    def as_array(self) -> np.ndarray:
        """Vertices as a (4, 2) float array in canonical order."""
        return np.array(self.points, dtype=np.float64)
