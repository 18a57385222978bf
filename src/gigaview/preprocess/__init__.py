"""Preprocessing pipeline for converting large images to tile pyramids."""

from .metadata import (
    PyramidMetadata,
    PyramidStatus,
    check_pyramid_status,
)
from .pyramid import (
    PyramidBuilder,
    build_pyramid,
    build_pyramid_directory,
    calculate_levels,
    compute_zoom_levels,
)
from .backends import (
    is_vips_available,
    VIPSBackend,
)

__all__ = [
    "PyramidMetadata",
    "PyramidBuilder",
    "PyramidStatus",
    "check_pyramid_status",
    "build_pyramid",
    "build_pyramid_directory",
    "calculate_levels",
    "compute_zoom_levels",
    "is_vips_available",
    "VIPSBackend",
]
