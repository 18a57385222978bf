"""Centralized configuration for GigaView.

All tunable parameters are defined here with sensible defaults.
Values can be overridden via environment variables.

Environment Variables:
    GIGAVIEW_TILE_SIZE: Pyramid tile size in pixels (default: 512)
    GIGAVIEW_MAX_SOURCE_MB: Largest accepted source image file in MB (default: 100)
    GIGAVIEW_TILE_WORKERS: Threads used for asynchronous tile decoding (default: 4)
    GIGAVIEW_TILE_CACHE_MAX: Tiles kept in the decoded tile cache, 0 = unbounded (default: 0)
    GIGAVIEW_JPEG_QUALITY: JPEG quality for generated tiles (default: 85)
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


def _get_env_int(name: str, default: int) -> int:
    """Get an integer from environment variable with fallback."""
    value = os.environ.get(name)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Invalid integer for %s: %r, using default %d", name, value, default
            )
    return default


def _get_env_float(name: str, default: float) -> float:
    """Get a float from environment variable with fallback."""
    value = os.environ.get(name)
    if value is not None:
        try:
            return float(value)
        except ValueError:
            logger.warning(
                "Invalid number for %s: %r, using default %s", name, value, default
            )
    return default


# =============================================================================
# Tile Generation Defaults
# =============================================================================

#: Default tile size in pixels
DEFAULT_TILE_SIZE: int = _get_env_int("GIGAVIEW_TILE_SIZE", 512)

#: JPEG quality for generated tiles and overview
JPEG_QUALITY: int = _get_env_int("GIGAVIEW_JPEG_QUALITY", 85)

#: Bounding box the overview raster is fitted into (width, height)
OVERVIEW_MAX_SIZE: tuple[int, int] = (1440, 900)

#: Largest accepted source image file, in megabytes
MAX_SOURCE_MB: float = _get_env_float("GIGAVIEW_MAX_SOURCE_MB", 100.0)

#: Supported source image extensions
IMAGE_EXTENSIONS: frozenset[str] = frozenset({
    ".jpg", ".jpeg", ".png", ".tif", ".tiff", ".webp"
})

#: Manifest file name inside a pyramid directory
MANIFEST_NAME: str = "image_data.json"

#: Overview image file name inside a pyramid directory
OVERVIEW_NAME: str = "overview.jpg"

#: Suffix of pyramid directories written by the preprocessing CLI
PYRAMID_DIR_SUFFIX: str = ".gigaview"

#: Default parallel images for batch preprocessing
DEFAULT_PARALLEL_IMAGES: int = 2


# =============================================================================
# Tile Cache Configuration
# =============================================================================

#: Worker threads for asynchronous tile decoding
TILE_LOAD_WORKERS: int = _get_env_int("GIGAVIEW_TILE_WORKERS", 4)

#: Decoded tiles kept before the oldest are trimmed (0 disables trimming)
TILE_CACHE_MAX_TILES: int = _get_env_int("GIGAVIEW_TILE_CACHE_MAX", 0)


# =============================================================================
# Viewport Configuration
# =============================================================================

#: Zoom bounds for the overview surface
OVERVIEW_ZOOM_RANGE: tuple[float, float] = (0.1, 10.0)

#: Zoom bounds for detail surfaces (tiles are already full resolution)
DETAIL_ZOOM_RANGE: tuple[float, float] = (0.5, 10.0)

#: Rubber-band boxes must exceed this size in both dimensions to be committed
MIN_BOX_SIZE: float = 5.0

#: Zoom factors applied per wheel step (in, out)
WHEEL_ZOOM_FACTORS: tuple[float, float] = (1.1, 0.9)

#: Zoom factors applied by the zoom buttons / keyboard (in, out)
BUTTON_ZOOM_FACTORS: tuple[float, float] = (1.2, 0.8)


# =============================================================================
# Annotation Configuration
# =============================================================================

#: Annotation set key for labels drawn in overview space
GLOBAL_ANNOTATION_KEY: str = "global"

#: Name given to labels created without one
DEFAULT_LABEL_NAME: str = "Unlabeled"


# =============================================================================
# Validation
# =============================================================================


def _validate_config() -> None:
    """Validate configuration values and log warnings for out-of-range settings."""
    global DEFAULT_TILE_SIZE, JPEG_QUALITY, TILE_LOAD_WORKERS, TILE_CACHE_MAX_TILES

    if DEFAULT_TILE_SIZE < 16:
        logger.warning("DEFAULT_TILE_SIZE=%d is too low, clamping to 16", DEFAULT_TILE_SIZE)
        DEFAULT_TILE_SIZE = 16

    if not 1 <= JPEG_QUALITY <= 100:
        logger.warning("JPEG_QUALITY=%d is out of range, clamping to 1-100", JPEG_QUALITY)
        JPEG_QUALITY = min(100, max(1, JPEG_QUALITY))

    if TILE_LOAD_WORKERS < 1:
        logger.warning("TILE_LOAD_WORKERS=%d is too low, clamping to 1", TILE_LOAD_WORKERS)
        TILE_LOAD_WORKERS = 1

    if TILE_CACHE_MAX_TILES < 0:
        logger.warning(
            "TILE_CACHE_MAX_TILES=%d is negative, disabling trimming", TILE_CACHE_MAX_TILES
        )
        TILE_CACHE_MAX_TILES = 0


_validate_config()
