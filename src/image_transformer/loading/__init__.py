"""Raw image loading."""

from .raw_loader import ImageMetadata, LoadedImage, RawImageLoader, load_metadata  # noqa: F401
