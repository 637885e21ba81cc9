"""Geometry primitives: quadrilaterals, homogeneous matrices, bilinear maps."""

from .bilinear import BilinearMapper, BilinearMapping  # noqa: F401
from .matrix import (  # noqa: F401
    IDENTITY_3X3,
    IDENTITY_4X4,
    TransformationMatrix,
    projective_mapping,
    unit_square_to_quadrilateral,
)
from .quadrilateral import Quadrilateral  # noqa: F401
