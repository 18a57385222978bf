"""Pyramid metadata, manifest (de)serialization and directory validation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from gigaview.config import MANIFEST_NAME, PYRAMID_DIR_SUFFIX
from gigaview.core.paths import atomic_json_save
from gigaview.core.types import GridSize, LevelInfo, OverviewInfo, TileInfo

logger = logging.getLogger(__name__)


class PyramidStatus(Enum):
    """Status of an existing pyramid directory."""

    NOT_EXISTS = "not_exists"  # No pyramid directory
    COMPLETE = "complete"  # Valid and complete
    INCOMPLETE = "incomplete"  # Missing required files
    CORRUPTED = "corrupted"  # Invalid manifest or structure


@dataclass(frozen=True)
class PyramidMetadata:
    """Metadata for a tile pyramid built from one source image.

    Level ``zoom_levels - 1`` is always full resolution.
    """

    original_width: int
    original_height: int
    tile_size: int
    zoom_levels: int
    overview: OverviewInfo
    levels: tuple[LevelInfo, ...]
    source_image: str | None = None

    @property
    def finest(self) -> LevelInfo:
        """Full-resolution level."""
        return self.levels[-1]

    @property
    def grid(self) -> GridSize:
        """Tile grid of the finest level."""
        return GridSize(rows=self.finest.rows, cols=self.finest.cols)

    def level(self, index: int) -> LevelInfo | None:
        if 0 <= index < len(self.levels):
            return self.levels[index]
        return None

    @property
    def tile_count(self) -> int:
        return sum(info.rows * info.cols for info in self.levels)

    def to_manifest(self) -> dict:
        """Serialize to the pyramid manifest JSON shape."""
        overview: dict = {"width": self.overview.width, "height": self.overview.height}
        if self.overview.path is not None:
            overview["path"] = self.overview.path

        data: dict = {}
        if self.source_image is not None:
            data["source_image"] = self.source_image
        data.update({
            "original_width": self.original_width,
            "original_height": self.original_height,
            "tile_size": self.tile_size,
            "zoom_levels": self.zoom_levels,
            "overview": overview,
            "pyramid": [
                {
                    "zoom_level": info.level,
                    "scale_factor": info.scale_factor,
                    "cols": info.cols,
                    "rows": info.rows,
                    "scaled_width": info.scaled_width,
                    "scaled_height": info.scaled_height,
                    "tiles": [t.to_dict() for t in info.tiles],
                }
                for info in self.levels
            ],
            "grid": {"rows": self.grid.rows, "cols": self.grid.cols},
        })
        return data

    @classmethod
    def from_manifest(cls, data: dict) -> PyramidMetadata:
        """Parse a manifest dict.

        Raises:
            KeyError, TypeError, ValueError: On missing or malformed fields
        """
        levels = tuple(
            LevelInfo(
                level=int(l["zoom_level"]),
                scale_factor=float(l["scale_factor"]),
                cols=int(l["cols"]),
                rows=int(l["rows"]),
                scaled_width=int(l["scaled_width"]),
                scaled_height=int(l["scaled_height"]),
                tiles=tuple(TileInfo.from_dict(t) for t in l["tiles"]),
            )
            for l in data["pyramid"]
        )
        if not levels:
            raise ValueError("Manifest has no pyramid levels")
        if len(levels) != int(data["zoom_levels"]):
            raise ValueError(
                f"Manifest declares {data['zoom_levels']} zoom levels "
                f"but lists {len(levels)}"
            )
        for index, info in enumerate(levels):
            _check_level(index, info)

        overview = data["overview"]
        metadata = cls(
            original_width=int(data["original_width"]),
            original_height=int(data["original_height"]),
            tile_size=int(data["tile_size"]),
            zoom_levels=int(data["zoom_levels"]),
            overview=OverviewInfo(
                width=int(overview["width"]),
                height=int(overview["height"]),
                path=overview.get("path"),
            ),
            levels=levels,
            source_image=data.get("source_image"),
        )

        grid = data.get("grid")
        if grid is not None and (grid["rows"], grid["cols"]) != (
            metadata.grid.rows, metadata.grid.cols
        ):
            logger.warning(
                "Manifest grid %sx%s disagrees with finest level %dx%d, using the level",
                grid["rows"], grid["cols"], metadata.grid.rows, metadata.grid.cols,
            )
        return metadata


def _check_level(index: int, info: LevelInfo) -> None:
    """Reject levels whose tile list is not a full row-major grid."""
    if info.level != index:
        raise ValueError(f"Level at position {index} is numbered {info.level}")
    if info.rows < 1 or info.cols < 1:
        raise ValueError(f"Level {index} has an empty {info.rows}x{info.cols} grid")
    expected = info.rows * info.cols
    if len(info.tiles) != expected:
        raise ValueError(
            f"Level {index} lists {len(info.tiles)} tiles, expected {expected}"
        )
    for position, tile in enumerate(info.tiles):
        if (tile.row, tile.col) != divmod(position, info.cols):
            raise ValueError(
                f"Level {index} tile {position} is at ({tile.row}, {tile.col}), "
                f"expected {divmod(position, info.cols)}"
            )


def pyramid_dir_for_image(image_path: Path, output_dir: Path) -> Path:
    """Pyramid directory path for a source image (``<stem>.gigaview``)."""
    return Path(output_dir) / f"{Path(image_path).stem}{PYRAMID_DIR_SUFFIX}"


def write_manifest(pyramid_dir: Path, metadata: PyramidMetadata) -> Path:
    """Atomically write the manifest JSON into a pyramid directory."""
    path = Path(pyramid_dir) / MANIFEST_NAME
    atomic_json_save(path, metadata.to_manifest())
    return path


def read_manifest(pyramid_dir: Path) -> PyramidMetadata:
    """Read and parse the manifest of a pyramid directory.

    Raises:
        FileNotFoundError: If the manifest is missing
        json.JSONDecodeError, KeyError, TypeError, ValueError: If malformed
    """
    with open(Path(pyramid_dir) / MANIFEST_NAME) as f:
        return PyramidMetadata.from_manifest(json.load(f))


def check_pyramid_status(pyramid_dir: Path) -> PyramidStatus:
    """Check the status of an existing pyramid directory.

    Args:
        pyramid_dir: Path to the pyramid directory

    Returns:
        PyramidStatus indicating the state
    """
    pyramid_dir = Path(pyramid_dir)
    if not pyramid_dir.exists():
        return PyramidStatus.NOT_EXISTS

    if not (pyramid_dir / MANIFEST_NAME).exists():
        return PyramidStatus.INCOMPLETE

    try:
        metadata = read_manifest(pyramid_dir)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return PyramidStatus.CORRUPTED

    overview_name = metadata.overview.path
    if not overview_name or not (pyramid_dir / overview_name).exists():
        return PyramidStatus.INCOMPLETE

    # Every level directory must exist and hold at least its first tile
    for info in metadata.levels:
        level_dir = pyramid_dir / "tiles" / f"zoom_{info.level}"
        if not (level_dir / "tile_0_0.jpg").exists():
            return PyramidStatus.INCOMPLETE

    finest = metadata.finest
    last_tile = (
        pyramid_dir / "tiles" / f"zoom_{finest.level}"
        / f"tile_{finest.rows - 1}_{finest.cols - 1}.jpg"
    )
    if not last_tile.exists():
        return PyramidStatus.INCOMPLETE

    return PyramidStatus.COMPLETE
