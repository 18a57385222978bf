"""Shared type definitions for GigaView core module."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np

#: Decoded raster: ``(height, width, 3)`` RGB ``uint8`` array
Raster = np.ndarray


class TileKey(NamedTuple):
    """Address of one decoded tile in the pyramid.

    Attributes:
        level: Pyramid level (0 = coarsest)
        row: Row index (0-based, follows Y)
        col: Column index (0-based, follows X)
    """

    level: int
    row: int
    col: int


@dataclass(frozen=True)
class TileInfo:
    """Geometry of one tile, in the scaled pixel space of its level."""

    row: int
    col: int
    x: int
    y: int
    width: int
    height: int

    def to_dict(self) -> dict:
        return {
            "row": self.row,
            "col": self.col,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TileInfo:
        return cls(
            row=int(data["row"]),
            col=int(data["col"]),
            x=int(data["x"]),
            y=int(data["y"]),
            width=int(data["width"]),
            height=int(data["height"]),
        )


@dataclass(frozen=True)
class LevelInfo:
    """Information about a pyramid level.

    Attributes:
        level: Level index (0 = coarsest, last = full resolution)
        scale_factor: Scale relative to the original image (1.0 = full res)
        cols: Number of tile columns at this level
        rows: Number of tile rows at this level
        scaled_width: Width of the level raster in pixels
        scaled_height: Height of the level raster in pixels
        tiles: Row-major tile geometry for this level
    """

    level: int
    scale_factor: float
    cols: int
    rows: int
    scaled_width: int
    scaled_height: int
    tiles: tuple[TileInfo, ...] = field(default=(), repr=False)

    def tile(self, row: int, col: int) -> TileInfo | None:
        """Get the tile at ``(row, col)``, or None outside the grid."""
        if 0 <= row < self.rows and 0 <= col < self.cols:
            return self.tiles[row * self.cols + col]
        return None


@dataclass(frozen=True)
class OverviewInfo:
    """Size (and optional file name) of the overview raster."""

    width: int
    height: int
    path: str | None = None


@dataclass(frozen=True)
class GridSize:
    """Tile grid of the finest pyramid level."""

    rows: int
    cols: int
