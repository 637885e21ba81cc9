"""Render contract: packed bytes plus dimensions."""

from .renderer import RenderedImage, render, render_layers  # noqa: F401
