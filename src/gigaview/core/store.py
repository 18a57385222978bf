"""PyramidStore: the explicit owner of the loaded pyramid and its tile cache."""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from pathlib import Path

import pyvips
from PySide6.QtCore import QObject, Signal, Slot, Property

from gigaview.config import (
    DEFAULT_TILE_SIZE,
    MAX_SOURCE_MB,
    OVERVIEW_NAME,
    TILE_CACHE_MAX_TILES,
    TILE_LOAD_WORKERS,
)
from gigaview.preprocess.backends import VIPSBackend
from gigaview.preprocess.metadata import PyramidMetadata, read_manifest
from gigaview.preprocess.pyramid import (
    ProgressCallback,
    PyramidBuilder,
    load_source_image,
)
from gigaview.preprocess.tiles import DirectoryTileStore, MemoryTileStore, TileStore

from .cache import TileCache
from .coords import CoordinateMapper
from .errors import PyramidBuildError, SourceLoadError, TileDecodeError
from .paths import to_local_path
from .types import Raster, TileKey
from .viewport import SurfaceKind, ViewportController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _LoadedPyramid:
    metadata: PyramidMetadata
    overview: Raster
    tile_store: TileStore
    mapper: CoordinateMapper
    source_path: Path | None


def decode_tile(tile_store: TileStore, key: TileKey) -> Raster | None:
    """Read and decode one tile.

    Returns:
        Decoded raster, or None if the store has no such tile

    Raises:
        TileDecodeError: If the stored bytes cannot be decoded
    """
    data = tile_store.read(key)
    if data is None:
        logger.debug("Tile %s not in store", key)
        return None
    try:
        return VIPSBackend.to_numpy(VIPSBackend.decode(data))
    except pyvips.error.Error as e:
        raise TileDecodeError(str(e).strip(), level=key.level, row=key.row, col=key.col) from e


class PyramidStore(QObject):
    """Holds the pyramid of the current image, its overview and the tile cache.

    Passed explicitly to every surface and to the session manager. Replacing
    the image (build or manifest load) clears the cache; a failed build keeps
    the previous pyramid.
    """

    pyramidLoaded = Signal()
    pyramidCleared = Signal()
    tileLoaded = Signal(int, int, int)  # level, row, col
    buildProgress = Signal(int, str)
    buildFailed = Signal(str)

    def __init__(
        self,
        parent: QObject | None = None,
        max_workers: int = TILE_LOAD_WORKERS,
        max_cached_tiles: int = TILE_CACHE_MAX_TILES,
        max_source_mb: float = MAX_SOURCE_MB,
    ) -> None:
        super().__init__(parent)
        self.cache = TileCache()
        self.max_cached_tiles = max_cached_tiles
        self.max_source_mb = max_source_mb
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="gigaview-tile"
        )
        self._loaded: _LoadedPyramid | None = None

    # --- State ---

    @Property(bool, notify=pyramidLoaded)
    def isLoaded(self) -> bool:
        """Whether a pyramid is currently loaded."""
        return self._loaded is not None

    @property
    def metadata(self) -> PyramidMetadata | None:
        return self._loaded.metadata if self._loaded else None

    @property
    def mapper(self) -> CoordinateMapper | None:
        return self._loaded.mapper if self._loaded else None

    @property
    def overview(self) -> Raster | None:
        """Overview raster of the current image."""
        return self._loaded.overview if self._loaded else None

    @property
    def source_path(self) -> Path | None:
        return self._loaded.source_path if self._loaded else None

    def image_data(self) -> dict | None:
        """Source name and dimensions, as recorded in label exports."""
        loaded = self._loaded
        if loaded is None:
            return None
        return {
            "source": loaded.metadata.source_image,
            "dimensions": {
                "width": loaded.metadata.original_width,
                "height": loaded.metadata.original_height,
            },
        }

    def _install(
        self,
        metadata: PyramidMetadata,
        overview: Raster,
        tile_store: TileStore,
        source_path: Path | None,
    ) -> None:
        overview.flags.writeable = False
        self._loaded = _LoadedPyramid(
            metadata=metadata,
            overview=overview,
            tile_store=tile_store,
            mapper=CoordinateMapper.from_metadata(metadata),
            source_path=source_path,
        )
        self.cache.clear()
        logger.info(
            "Pyramid ready: %dx%d px, %d levels, %dx%d finest tiles",
            metadata.original_width, metadata.original_height, metadata.zoom_levels,
            metadata.grid.cols, metadata.grid.rows,
        )
        self.pyramidLoaded.emit()

    # --- Loading ---

    def build_pyramid(
        self,
        raster: Raster | "pyvips.Image",
        width: int,
        height: int,
        tile_size: int = DEFAULT_TILE_SIZE,
        progress_callback: ProgressCallback | None = None,
        source_name: str | None = None,
        source_path: Path | None = None,
    ) -> PyramidMetadata:
        """Build an in-memory pyramid from a decoded raster and make it current.

        Raises:
            PyramidBuildError: On failure; the previous pyramid stays loaded
        """
        def report(percentage: int, message: str) -> None:
            self.buildProgress.emit(percentage, message)
            if progress_callback:
                progress_callback(percentage, message)

        tile_store = MemoryTileStore()
        builder = PyramidBuilder(tile_size=tile_size)
        try:
            metadata = builder.build(raster, width, height, tile_store, report, source_name)
            overview = VIPSBackend.to_numpy(builder.overview_image())
        except PyramidBuildError as e:
            logger.error("%s", e)
            self.buildFailed.emit(str(e))
            raise
        except pyvips.error.Error as e:
            error = PyramidBuildError("overview", str(e))
            logger.error("%s", error)
            self.buildFailed.emit(str(error))
            raise error from e

        logger.debug("Encoded tiles: %d (%.1f MB)", len(tile_store), tile_store.nbytes / 1e6)
        self._install(metadata, overview, tile_store, source_path)
        return metadata

    def build_from_image(
        self,
        path: Path | str,
        tile_size: int = DEFAULT_TILE_SIZE,
        progress_callback: ProgressCallback | None = None,
    ) -> PyramidMetadata:
        """Load a local image file and build its pyramid.

        Raises:
            SourceLoadError: If the file is unreadable or too large
            PyramidBuildError: If tile generation fails
        """
        path = to_local_path(path)
        try:
            source = load_source_image(path, self.max_source_mb)
        except SourceLoadError as e:
            logger.error("%s", e)
            self.buildFailed.emit(e.message)
            raise
        return self.build_pyramid(
            source,
            source.width,
            source.height,
            tile_size,
            progress_callback,
            source_name=path.name,
            source_path=path,
        )

    def load_manifest(self, pyramid_dir: Path | str) -> PyramidMetadata:
        """Open a previously generated pyramid directory.

        Raises:
            SourceLoadError: If the manifest or overview is missing or invalid
        """
        pyramid_dir = to_local_path(pyramid_dir)
        try:
            metadata = read_manifest(pyramid_dir)
        except FileNotFoundError as e:
            raise SourceLoadError("Pyramid manifest not found", pyramid_dir) from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise SourceLoadError(f"Invalid pyramid manifest: {e}", pyramid_dir) from e

        overview_path = pyramid_dir / (metadata.overview.path or OVERVIEW_NAME)
        if not overview_path.exists():
            raise SourceLoadError("Overview image not found", overview_path)
        try:
            overview = VIPSBackend.to_numpy(VIPSBackend.load_image(overview_path))
        except pyvips.error.Error as e:
            raise SourceLoadError(f"Cannot decode overview: {e}", overview_path) from e

        if overview.shape[:2] != (metadata.overview.height, metadata.overview.width):
            logger.warning(
                "Overview is %dx%d but manifest says %dx%d",
                overview.shape[1], overview.shape[0],
                metadata.overview.width, metadata.overview.height,
            )

        self._install(metadata, overview, DirectoryTileStore(pyramid_dir), pyramid_dir)
        return metadata

    @Slot()
    def clear(self) -> None:
        """Drop the current pyramid and every cached tile."""
        self._loaded = None
        self.cache.clear()
        self.pyramidCleared.emit()

    def close(self) -> None:
        """Clear and stop the tile worker threads."""
        self.clear()
        self._executor.shutdown(wait=False)

    # --- Tiles ---

    def _tile_key(self, level: int, row: int, col: int) -> tuple[_LoadedPyramid, TileKey] | None:
        loaded = self._loaded
        if loaded is None:
            return None
        info = loaded.metadata.level(level)
        if info is None or info.tile(row, col) is None:
            logger.debug("No tile at level=%d row=%d col=%d", level, row, col)
            return None
        return loaded, TileKey(level, row, col)

    def finest_level(self) -> int:
        metadata = self.metadata
        return metadata.zoom_levels - 1 if metadata else 0

    def get_tile(self, level: int, row: int, col: int) -> Raster | None:
        """Cached tile, or None after scheduling its asynchronous load.

        ``tileLoaded`` is emitted once a scheduled load succeeds.
        """
        found = self._tile_key(level, row, col)
        if found is None:
            return None
        raster = self.cache.get(found[1])
        if raster is None:
            self.fetch_tile(level, row, col)
        return raster

    def fetch_tile(self, level: int, row: int, col: int) -> Future:
        """Load a tile on the worker pool.

        Returns:
            Future resolving to the raster, or None for an absent tile
        """
        found = self._tile_key(level, row, col)
        if found is None:
            done: Future = Future()
            done.set_result(None)
            return done
        loaded, key = found
        future = self.cache.load_async(
            key, partial(decode_tile, loaded.tile_store, key), self._executor
        )
        future.add_done_callback(partial(self._on_tile_done, key))
        return future

    def _on_tile_done(self, key: TileKey, future: Future) -> None:
        if future.result() is None:
            return
        if self.max_cached_tiles > 0:
            self.cache.trim(self.max_cached_tiles)
        self.tileLoaded.emit(key.level, key.row, key.col)

    def load_tile(self, level: int, row: int, col: int) -> Raster | None:
        """Blocking tile load through the cache."""
        found = self._tile_key(level, row, col)
        if found is None:
            return None
        loaded, key = found
        return self.cache.get_or_load(key, partial(decode_tile, loaded.tile_store, key))

    def visible_tiles(
        self, level: int, x: float, y: float, width: float, height: float
    ) -> list[TileKey]:
        """Tiles of ``level`` intersecting a rectangle in that level's pixel space."""
        metadata = self.metadata
        info = metadata.level(level) if metadata else None
        if info is None or width <= 0 or height <= 0:
            return []
        tile_size = metadata.tile_size

        col_start = max(0, int(x // tile_size))
        col_end = min(info.cols, int((x + width) // tile_size) + 1)
        row_start = max(0, int(y // tile_size))
        row_end = min(info.rows, int((y + height) // tile_size) + 1)

        return [
            TileKey(level, row, col)
            for row in range(row_start, row_end)
            for col in range(col_start, col_end)
        ]

    def load_region(
        self, level: int, x: float, y: float, width: float, height: float
    ) -> dict[TileKey, Future]:
        """Schedule every tile of a region; completion order is unspecified."""
        return {
            key: self.fetch_tile(key.level, key.row, key.col)
            for key in self.visible_tiles(level, x, y, width, height)
        }

    # --- Pointer mapping ---

    def map_screen_to_tile(
        self,
        surface: ViewportController,
        screen_x: float,
        screen_y: float,
        tile: tuple[int, int] | None = None,
    ) -> tuple[int, int] | None:
        """Finest-level tile under a screen point of a surface.

        Args:
            surface: Viewport of the surface the point belongs to
            screen_x: Screen X in the surface's widget
            screen_y: Screen Y in the surface's widget
            tile: For detail surfaces, the ``(row, col)`` whose local space
                the surface shows

        Returns:
            ``(row, col)`` or None if no tile is under the point
        """
        mapper = self.mapper
        if mapper is None:
            return None
        world_x, world_y = surface.screen_to_world(screen_x, screen_y)
        if surface.kind == SurfaceKind.OVERVIEW:
            return mapper.tile_at_overview(world_x, world_y)
        if tile is None:
            raise ValueError("Detail surfaces need the tile they show")
        return mapper.tile_at_original(*mapper.local_to_original(*tile, world_x, world_y))
