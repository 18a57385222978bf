"""Worker function for parallel preprocessing.

This module exists separately from __main__.py to support Windows multiprocessing,
which requires worker functions to be importable (not defined in __main__).
"""

from __future__ import annotations

import logging
from pathlib import Path

from gigaview.core.errors import GigaViewError

from .pyramid import build_pyramid_directory

logger = logging.getLogger(__name__)


def process_single_image(
    image_path: Path,
    output_dir: Path,
    tile_size: int,
    force: bool = False,
) -> tuple[Path | None, str | None, bool]:
    """Process a single image.

    Args:
        image_path: Path to the source image
        output_dir: Output directory
        tile_size: Tile size in pixels
        force: Force rebuild

    Returns:
        Tuple of (result_path, error_message, was_skipped)
        - result_path: Path to .gigaview dir, or None if skipped/error
        - error_message: Error string if failed, None otherwise
        - was_skipped: True if the image was skipped (already complete)
    """
    logger.info("Processing %s", image_path.name)
    try:
        result = build_pyramid_directory(image_path, output_dir, tile_size, force=force)
        if result is None:
            return None, None, True
        return result, None, False
    except (GigaViewError, OSError) as e:
        logger.error("Failed to process %s: %s", image_path.name, e)
        return None, str(e), False
