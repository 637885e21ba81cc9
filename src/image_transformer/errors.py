"""Exception types raised by the transformation engine."""

from __future__ import annotations


class TransformError(Exception):
    """Base class for all engine failures."""


class DimensionMismatchError(TransformError, ValueError):
    """Raised when matrix shapes (or matrix and grid dimensionality) do not fit together."""


class SingularMatrixError(TransformError, ArithmeticError):
    """Raised when a matrix or quadrilateral mapping cannot be inverted."""


class TransformCancelled(TransformError):
    """Raised inside backward-transform workers once their handle is cancelled."""
