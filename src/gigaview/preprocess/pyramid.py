"""Pyramid generation for large images.

Every level is resampled independently from the original raster with
``scale_factor = 1 / 2**(zoom_levels - level - 1)`` so the finest level is
always exactly full resolution. Level rasters are sliced row-major into
``tile_size`` tiles; tiles on the last row/column are clipped to the remaining
pixels, never padded.

Rounding rule (used everywhere): scaled and overview dimensions are
``floor(size * scale)`` with a 1e-9 tolerance and a 1 px minimum; grid counts
are ``ceil(scaled / tile_size)``.
"""

from __future__ import annotations

import logging
import math
import shutil
from pathlib import Path
from typing import Any, Callable

import numpy as np
import pyvips

from gigaview.config import (
    DEFAULT_TILE_SIZE,
    JPEG_QUALITY,
    MAX_SOURCE_MB,
    OVERVIEW_MAX_SIZE,
    OVERVIEW_NAME,
)
from gigaview.core.errors import GeometryError, PyramidBuildError, SourceLoadError
from gigaview.core.types import LevelInfo, OverviewInfo, Raster, TileInfo, TileKey

from .backends import VIPSBackend
from .metadata import (
    PyramidMetadata,
    PyramidStatus,
    check_pyramid_status,
    pyramid_dir_for_image,
    write_manifest,
)
from .tiles import DirectoryTileStore, TileStore

logger = logging.getLogger(__name__)

#: progress(percentage 0-100, message)
ProgressCallback = Callable[[int, str], None]

_FLOOR_TOLERANCE = 1e-9


def compute_zoom_levels(width: int, height: int, tile_size: int) -> int:
    """Number of pyramid levels: ``max(1, ceil(log2(max(w, h) / tile_size)) + 1)``."""
    if width <= 0 or height <= 0 or tile_size <= 0:
        raise ValueError(
            f"Dimensions and tile size must be positive, got {width}x{height} / {tile_size}"
        )
    return max(1, math.ceil(math.log2(max(width, height) / tile_size)) + 1)


def level_scale_factor(level: int, zoom_levels: int) -> float:
    """Scale of ``level`` relative to the original (finest level = 1.0 exactly)."""
    return 1.0 / (2 ** (zoom_levels - level - 1))


def scaled_dimension(size: int, scale: float) -> int:
    """Floor ``size * scale``, tolerant to binary float error, never below 1."""
    return max(1, math.floor(size * scale + _FLOOR_TOLERANCE))


def fit_overview_size(
    width: int, height: int, max_size: tuple[int, int] = OVERVIEW_MAX_SIZE
) -> tuple[int, int]:
    """Size of the overview raster fitted into ``max_size`` keeping aspect ratio.

    The overview only ever shrinks; images already inside the box keep their size.
    """
    max_width, max_height = max_size
    ratio = min(max_width / width, max_height / height, 1.0)
    return scaled_dimension(width, ratio), scaled_dimension(height, ratio)


def _level_tiles(scaled_width: int, scaled_height: int, tile_size: int) -> tuple[TileInfo, ...]:
    cols = math.ceil(scaled_width / tile_size)
    rows = math.ceil(scaled_height / tile_size)
    tiles = []
    for row in range(rows):
        for col in range(cols):
            x = col * tile_size
            y = row * tile_size
            tiles.append(TileInfo(
                row=row,
                col=col,
                x=x,
                y=y,
                width=min(tile_size, scaled_width - x),
                height=min(tile_size, scaled_height - y),
            ))
    return tuple(tiles)


def calculate_levels(width: int, height: int, tile_size: int) -> tuple[LevelInfo, ...]:
    """Compute the full pyramid geometry without touching any pixels.

    Returns:
        LevelInfo per level, coarsest first
    """
    zoom_levels = compute_zoom_levels(width, height, tile_size)
    levels = []
    for level in range(zoom_levels):
        scale = level_scale_factor(level, zoom_levels)
        scaled_width = scaled_dimension(width, scale)
        scaled_height = scaled_dimension(height, scale)
        levels.append(LevelInfo(
            level=level,
            scale_factor=scale,
            cols=math.ceil(scaled_width / tile_size),
            rows=math.ceil(scaled_height / tile_size),
            scaled_width=scaled_width,
            scaled_height=scaled_height,
            tiles=_level_tiles(scaled_width, scaled_height, tile_size),
        ))
    return tuple(levels)


def load_source_image(path: Path, max_mb: float = MAX_SOURCE_MB) -> "pyvips.Image":
    """Open a source image, enforcing the configured file size ceiling.

    Raises:
        SourceLoadError: If the file is missing, too large or undecodable
    """
    path = Path(path)
    if not path.is_file():
        raise SourceLoadError("Source image not found", path)

    size_mb = path.stat().st_size / (1024 * 1024)
    if size_mb > max_mb:
        raise SourceLoadError(
            f"File too large ({size_mb:.1f} MB). Please use an image under {max_mb:g} MB.",
            path,
        )

    try:
        image = VIPSBackend.to_rgb(VIPSBackend.load_image(path))
        # Force header + decoder validation now rather than mid-build
        image.avg()
    except pyvips.error.Error as e:
        raise SourceLoadError(f"Cannot decode image: {e}", path) from e

    logger.info("Loaded %s: %d x %d px (%.1f MB)", path.name, image.width, image.height, size_mb)
    return image


class PyramidBuilder:
    """Builds a tile pyramid from one decoded source raster.

    Only one scaled level raster is kept alive at a time; ``tile_at`` reuses it
    while consecutive requests stay on the same level.

    Output:
        - Tiles written to a ``TileStore`` keyed by ``TileKey(level, row, col)``
        - An overview raster fitted into ``overview_max_size``
    """

    def __init__(
        self,
        tile_size: int = DEFAULT_TILE_SIZE,
        overview_max_size: tuple[int, int] = OVERVIEW_MAX_SIZE,
        jpeg_quality: int = JPEG_QUALITY,
    ) -> None:
        if tile_size <= 0:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        self.tile_size = tile_size
        self.overview_max_size = overview_max_size
        self.jpeg_quality = jpeg_quality
        self._source: Any = None
        self._levels: tuple[LevelInfo, ...] = ()
        self._overview: Any = None
        self._live_level: tuple[int, Any] | None = None

    @property
    def levels(self) -> tuple[LevelInfo, ...]:
        return self._levels

    def prepare(
        self, source: Raster | "pyvips.Image", original_width: int, original_height: int
    ) -> tuple[LevelInfo, ...]:
        """Attach a source raster and compute the level geometry.

        Raises:
            SourceLoadError: If the raster size does not match the declared size
        """
        image = VIPSBackend.from_numpy(source) if isinstance(source, np.ndarray) else source
        if (image.width, image.height) != (original_width, original_height):
            raise SourceLoadError(
                f"Raster is {image.width}x{image.height}, "
                f"expected {original_width}x{original_height}"
            )
        self._source = VIPSBackend.to_rgb(image)
        self._live_level = None
        self._overview = None
        self._levels = calculate_levels(original_width, original_height, self.tile_size)
        return self._levels

    def build(
        self,
        source: Raster | "pyvips.Image",
        original_width: int,
        original_height: int,
        tile_store: TileStore,
        progress_callback: ProgressCallback | None = None,
        source_name: str | None = None,
    ) -> PyramidMetadata:
        """Build the pyramid, emitting every tile into ``tile_store``.

        Args:
            source: Decoded source raster (numpy RGB array or pyvips image)
            original_width: Source width in pixels
            original_height: Source height in pixels
            tile_store: Destination for encoded tiles
            progress_callback: Optional callback(percentage, message)
            source_name: Source file name recorded in the manifest

        Returns:
            PyramidMetadata describing the generated pyramid

        Raises:
            PyramidBuildError: On any failure, carrying the stage reached
        """
        stage = "load"

        def report(percentage: float, message: str) -> None:
            if progress_callback:
                progress_callback(int(percentage), message)

        try:
            report(10, "Loading image...")
            levels = self.prepare(source, original_width, original_height)
            zoom_levels = len(levels)
            report(20, f"Image loaded: {original_width}x{original_height}")

            stage = "overview"
            report(30, "Creating overview...")
            overview = self.overview_image()
            logger.debug("Overview %dx%d", overview.width, overview.height)

            stage = "levels"
            logger.info("Will generate %d zoom levels", zoom_levels)
            report(40, "Generating tiles...")
            for info in levels:
                stage = f"level_{info.level}"
                report(
                    40 + (info.level / zoom_levels) * 55,
                    f"Generating zoom level {info.level + 1}/{zoom_levels}...",
                )
                self._emit_level(info, tile_store)
        except SourceLoadError as e:
            raise PyramidBuildError(stage, e.message) from e
        except (pyvips.error.Error, OSError, ValueError, MemoryError) as e:
            raise PyramidBuildError(stage, str(e)) from e
        finally:
            self._live_level = None

        report(100, "Complete!")
        return PyramidMetadata(
            original_width=original_width,
            original_height=original_height,
            tile_size=self.tile_size,
            zoom_levels=zoom_levels,
            overview=OverviewInfo(width=overview.width, height=overview.height),
            levels=levels,
            source_image=source_name,
        )

    def _emit_level(self, info: LevelInfo, tile_store: TileStore) -> None:
        scaled = self._scaled_level(info)
        for tile in info.tiles:
            region = VIPSBackend.crop(scaled, tile.x, tile.y, tile.width, tile.height)
            tile_store.put(
                TileKey(info.level, tile.row, tile.col),
                VIPSBackend.encode_jpeg(region, quality=self.jpeg_quality),
            )
        logger.debug(
            "Level %d: %dx%d px, %dx%d tiles",
            info.level, info.scaled_width, info.scaled_height, info.cols, info.rows,
        )

    def _scaled_level(self, info: LevelInfo) -> "pyvips.Image":
        """Scaled raster for a level, resampled from the original."""
        if self._source is None:
            raise RuntimeError("PyramidBuilder.prepare() must be called first")
        if self._live_level is not None and self._live_level[0] == info.level:
            return self._live_level[1]

        # Drop the previous level before producing the next one
        self._live_level = None
        if info.scale_factor == 1.0:
            scaled = self._source
        else:
            scaled = VIPSBackend.materialize(
                VIPSBackend.resize(self._source, (info.scaled_width, info.scaled_height))
            )
        self._live_level = (info.level, scaled)
        return scaled

    def overview_image(self) -> "pyvips.Image":
        """Overview raster, independent of the pyramid levels."""
        if self._source is None:
            raise RuntimeError("PyramidBuilder.prepare() must be called first")
        if self._overview is None:
            size = fit_overview_size(
                self._source.width, self._source.height, self.overview_max_size
            )
            self._overview = VIPSBackend.materialize(VIPSBackend.resize(self._source, size))
        return self._overview

    def tile_at(self, level: int, row: int, col: int) -> Raster:
        """Produce one tile raster on demand.

        Raises:
            GeometryError: If the address is outside the level's grid
        """
        if not 0 <= level < len(self._levels):
            raise ValueError(f"Level {level} outside 0-{len(self._levels) - 1}")
        info = self._levels[level]
        tile = info.tile(row, col)
        if tile is None:
            raise GeometryError(row, col, info.rows, info.cols)
        scaled = self._scaled_level(info)
        return VIPSBackend.to_numpy(
            VIPSBackend.crop(scaled, tile.x, tile.y, tile.width, tile.height)
        )


def build_pyramid(
    raster: Raster | "pyvips.Image",
    width: int,
    height: int,
    tile_size: int = DEFAULT_TILE_SIZE,
    tile_store: TileStore | None = None,
    progress_callback: ProgressCallback | None = None,
) -> PyramidMetadata:
    """Build a pyramid from a decoded raster.

    Tiles are written to ``tile_store`` when given and discarded otherwise.

    Raises:
        PyramidBuildError: On any failure
    """
    builder = PyramidBuilder(tile_size=tile_size)
    return builder.build(
        raster, width, height,
        tile_store if tile_store is not None else _DiscardTileStore(),
        progress_callback,
    )


class _DiscardTileStore:
    def put(self, key: TileKey, data: bytes) -> None:
        pass

    def read(self, key: TileKey) -> bytes | None:
        return None


def build_pyramid_directory(
    image_path: Path,
    output_dir: Path,
    tile_size: int = DEFAULT_TILE_SIZE,
    progress_callback: ProgressCallback | None = None,
    force: bool = False,
) -> Path | None:
    """Build an on-disk pyramid (manifest, overview, tiles) for an image file.

    The manifest is written last, so an interrupted build is detected as
    ``INCOMPLETE`` and cleaned up on the next run.

    Returns:
        Path to the pyramid directory, or None if skipped (already complete)

    Raises:
        SourceLoadError: If the source image cannot be used
        PyramidBuildError: If tile generation fails
    """
    image_path = Path(image_path)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    pyramid_dir = pyramid_dir_for_image(image_path, output_dir)

    status = check_pyramid_status(pyramid_dir)
    if status == PyramidStatus.COMPLETE and not force:
        logger.info("Skipping %s: already preprocessed (use --force to rebuild)", image_path.name)
        return None
    if status != PyramidStatus.NOT_EXISTS:
        if status == PyramidStatus.INCOMPLETE:
            logger.info("Found incomplete pyramid for %s, cleaning up...", image_path.name)
        elif status == PyramidStatus.CORRUPTED:
            logger.warning("Found corrupted pyramid for %s, cleaning up...", image_path.name)
        else:
            logger.info("Force rebuild for %s, removing existing...", image_path.name)
        shutil.rmtree(pyramid_dir)

    source = load_source_image(image_path)
    pyramid_dir.mkdir()

    builder = PyramidBuilder(tile_size=tile_size)
    metadata = builder.build(
        source,
        source.width,
        source.height,
        DirectoryTileStore(pyramid_dir),
        progress_callback,
        source_name=image_path.name,
    )

    try:
        VIPSBackend.save_jpeg(
            builder.overview_image(), pyramid_dir / OVERVIEW_NAME, quality=builder.jpeg_quality
        )
    except pyvips.error.Error as e:
        raise PyramidBuildError("write", str(e)) from e

    metadata = PyramidMetadata(
        original_width=metadata.original_width,
        original_height=metadata.original_height,
        tile_size=metadata.tile_size,
        zoom_levels=metadata.zoom_levels,
        overview=OverviewInfo(
            width=metadata.overview.width,
            height=metadata.overview.height,
            path=OVERVIEW_NAME,
        ),
        levels=metadata.levels,
        source_image=metadata.source_image,
    )
    write_manifest(pyramid_dir, metadata)

    logger.info("Generated %d pyramid levels for %s", metadata.zoom_levels, image_path.name)
    return pyramid_dir
