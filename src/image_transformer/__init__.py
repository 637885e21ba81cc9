"""Geometric transformation engine for 2D images and 3D volumes of greyscale samples."""

from .config import AppConfig, load_config  # noqa: F401
from .errors import DimensionMismatchError, SingularMatrixError, TransformCancelled, TransformError  # noqa: F401
from .geometry import BilinearMapper, Quadrilateral, TransformationMatrix  # noqa: F401
from .grid import SampleGrid  # noqa: F401
from .pipeline import StageCache, TransformPipeline, VolumeTransformPipeline  # noqa: F401

__version__ = "0.1.0"
