"""Load a raw image (or volume), run the configured transform and write PNGs."""

from __future__ import annotations

import argparse
from pathlib import Path

from loguru import logger

from image_transformer.config import load_config
from image_transformer.pipeline import TransformPipeline, VolumeTransformPipeline
from image_transformer.utils import configure_logging, save_grid_png


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply the configured geometric transform to a raw image")
    parser.add_argument("--config", type=Path, required=True, help="Path to transform YAML configuration")
    parser.add_argument("--input", type=Path, required=True, help="Raw file; its .json sidecar must sit next to it")
    parser.add_argument("--volume", action="store_true", help="Load every layer and use the 3D pipeline")
    parser.add_argument("--stem", type=str, default=None, help="Output file name prefix (defaults to the input name)")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    cfg = load_config(args.config)
    configure_logging(cfg.logging)

    if args.volume:
        pipeline = VolumeTransformPipeline.from_config(cfg)
    else:
        pipeline = TransformPipeline.from_config(cfg)
    pipeline.set_path(args.input)

    result = pipeline.build()
    if result is None:
        logger.warning("Transform was superseded before it finished; nothing written")
        return

    stem = args.stem or args.input.stem
    if result.ndim == 3:
        for layer in range(result.depth):
            save_grid_png(result, cfg.output.directory, stem=stem, layer=layer)
        logger.info(f"Wrote {result.depth} layer(s) of {result.shape} to {cfg.output.directory}")
    else:
        path = save_grid_png(result, cfg.output.directory, stem=stem)
        logger.info(f"Wrote {result.shape} image to {path}")


if __name__ == "__main__":
    main()
