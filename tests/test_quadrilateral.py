"""Tests for quadrilateral vertex canonicalization."""

from __future__ import annotations

import numpy as np

from image_transformer.geometry import Quadrilateral


def test_points_are_ordered_clockwise_from_top_left() -> None:
    quad = Quadrilateral.from_points([(10, 8), (0, 7), (9, 2), (1, 1)])
    assert quad.is_set
    assert quad.points == ((1.0, 1.0), (9.0, 2.0), (10.0, 8.0), (0.0, 7.0))


def test_input_order_does_not_matter() -> None:
    points = [(2, 0), (8, 1), (9, 9), (1, 7)]
    assert Quadrilateral.from_points(points) == Quadrilateral.from_points(list(reversed(points)))


def test_wrong_point_count_leaves_quadrilateral_unset() -> None:
    for points in ([], [(0, 0), (1, 0), (1, 1)], [(0, 0)] * 5, None):
        quad = Quadrilateral.from_points(points)
        assert not quad.is_set
        assert quad.points == ((0.0, 0.0),) * 4


def test_target_rectangle_uses_longest_edges() -> None:
    quad = Quadrilateral.from_points([(2, 0), (8, 1), (9, 9), (1, 7)])
    # p0=(2,0) p1=(8,1) p2=(9,9) p3=(1,7)
    target = quad.target_rectangle()
    assert target.points == ((0.0, 0.0), (8.0, 0.0), (8.0, 8.0), (0.0, 8.0))


def test_rectangle_helper() -> None:
    rect = Quadrilateral.rectangle(4, 3)
    assert rect.xs == (0.0, 4.0, 4.0, 0.0)
    assert rect.ys == (0.0, 0.0, 3.0, 3.0)
    assert rect.as_array().shape == (4, 2)
    assert np.array_equal(rect.as_array()[2], [4.0, 3.0])
