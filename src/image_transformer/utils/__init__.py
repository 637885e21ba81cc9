"""Helpers shared by the scripts."""

from .image_io import save_grid_png  # noqa: F401
from .log_setup import configure_logging  # noqa: F401
