"""Sample grids and the forward/backward transform engine."""

from .cancellation import CancellationHandle, CancellationSlot  # noqa: F401
from .sample_grid import (  # noqa: F401
    MAX_DEPTH,
    MAX_HEIGHT,
    MAX_WIDTH,
    SampleGrid,
    SizeInfo,
)
