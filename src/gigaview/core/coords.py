"""Coordinate transforms between the viewer's coordinate spaces.

Spaces:
    screen    - widget pixels
    world     - what a viewport's zoom/pan operates on (overview pixels for the
                overview surface, tile-local pixels for a detail surface)
    overview  - pixels of the downscaled overview raster
    original  - full-resolution source pixels
    tile      - pixels relative to one finest-level tile's origin

All functions are pure. Tile lookups outside the finest grid return ``None``;
``GeometryError`` is raised by ``check_tile`` only and never leaves this module's
public mapper methods.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .errors import GeometryError

logger = logging.getLogger(__name__)


def world_to_screen(
    x: float, y: float, zoom: float, offset_x: float, offset_y: float
) -> tuple[float, float]:
    """``screen = world * zoom + offset``."""
    return x * zoom + offset_x, y * zoom + offset_y


def screen_to_world(
    x: float, y: float, zoom: float, offset_x: float, offset_y: float
) -> tuple[float, float]:
    """Inverse of ``world_to_screen``."""
    return (x - offset_x) / zoom, (y - offset_y) / zoom


def original_to_tile(x: float, y: float, tile_size: int) -> tuple[int, int]:
    """Tile address containing an original-space point.

    Returns:
        ``(row, col)``; row follows Y and col follows X
    """
    return math.floor(y / tile_size), math.floor(x / tile_size)


def tile_to_original_origin(row: int, col: int, tile_size: int) -> tuple[int, int]:
    """Original-space ``(x, y)`` of a tile's top-left corner."""
    return col * tile_size, row * tile_size


@dataclass(frozen=True)
class CoordinateMapper:
    """Geometry of one loaded image: original size, overview size and finest grid.

    Attributes:
        original_width: Full-resolution width in pixels
        original_height: Full-resolution height in pixels
        overview_width: Overview raster width in pixels
        overview_height: Overview raster height in pixels
        tile_size: Finest-level tile size in pixels
        rows: Finest-level tile rows
        cols: Finest-level tile columns
    """

    original_width: int
    original_height: int
    overview_width: int
    overview_height: int
    tile_size: int
    rows: int
    cols: int

    @classmethod
    def from_metadata(cls, metadata) -> CoordinateMapper:
        """Build a mapper from a ``PyramidMetadata``."""
        return cls(
            original_width=metadata.original_width,
            original_height=metadata.original_height,
            overview_width=metadata.overview.width,
            overview_height=metadata.overview.height,
            tile_size=metadata.tile_size,
            rows=metadata.grid.rows,
            cols=metadata.grid.cols,
        )

    @property
    def scale_x(self) -> float:
        """Overview pixels per original pixel, horizontally."""
        return self.overview_width / self.original_width

    @property
    def scale_y(self) -> float:
        return self.overview_height / self.original_height

    def overview_to_original(self, x: float, y: float) -> tuple[float, float]:
        return (
            x * self.original_width / self.overview_width,
            y * self.original_height / self.overview_height,
        )

    def original_to_overview(self, x: float, y: float) -> tuple[float, float]:
        return (
            x * self.overview_width / self.original_width,
            y * self.overview_height / self.original_height,
        )

    def is_valid_tile(self, row: int, col: int) -> bool:
        return 0 <= row < self.rows and 0 <= col < self.cols

    def check_tile(self, row: int, col: int) -> tuple[int, int]:
        """Validate a tile address against the finest grid.

        Raises:
            GeometryError: If the address is outside the grid
        """
        if not self.is_valid_tile(row, col):
            raise GeometryError(row, col, self.rows, self.cols)
        return row, col

    def tile_at_original(self, x: float, y: float) -> tuple[int, int] | None:
        """Tile containing an original-space point, or None outside the grid."""
        row, col = original_to_tile(x, y, self.tile_size)
        try:
            return self.check_tile(row, col)
        except GeometryError as e:
            logger.debug("No tile at original (%.1f, %.1f): %s", x, y, e)
            return None

    def tile_at_overview(self, x: float, y: float) -> tuple[int, int] | None:
        """Tile under an overview-space point, or None outside the grid."""
        return self.tile_at_original(*self.overview_to_original(x, y))

    def tile_rect_in_overview(self, row: int, col: int) -> tuple[float, float, float, float]:
        """Overview-space ``(x, y, width, height)`` of a nominal tile cell.

        Edge cells extend past the overview raster just as the tile grid
        extends past the original image.
        """
        x, y = tile_to_original_origin(row, col, self.tile_size)
        return (
            x * self.scale_x,
            y * self.scale_y,
            self.tile_size * self.scale_x,
            self.tile_size * self.scale_y,
        )

    def tile_size_at(self, row: int, col: int) -> tuple[int, int] | None:
        """Clipped pixel size of a finest-level tile, or None outside the grid."""
        if not self.is_valid_tile(row, col):
            return None
        x, y = tile_to_original_origin(row, col, self.tile_size)
        return (
            min(self.tile_size, self.original_width - x),
            min(self.tile_size, self.original_height - y),
        )

    def local_to_original(
        self, row: int, col: int, x: float, y: float
    ) -> tuple[float, float]:
        """Tile-local point to original space."""
        origin_x, origin_y = tile_to_original_origin(row, col, self.tile_size)
        return origin_x + x, origin_y + y

    def original_to_local(
        self, row: int, col: int, x: float, y: float
    ) -> tuple[float, float]:
        """Original-space point relative to a tile's origin."""
        origin_x, origin_y = tile_to_original_origin(row, col, self.tile_size)
        return x - origin_x, y - origin_y
