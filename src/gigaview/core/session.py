"""Detail view sessions: one per opened finest-level tile."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from functools import partial
from typing import TYPE_CHECKING, Callable

from PySide6.QtCore import QObject, Signal, Slot, Property

from .annotations import Annotation, AnnotationManager, Category, tile_key
from .types import Raster
from .viewport import BoxRegion, SurfaceKind, ViewportController

if TYPE_CHECKING:
    from .store import PyramidStore

logger = logging.getLogger(__name__)


class DetailViewSession:
    """State of one opened tile: its viewport, raster(s) and local labels.

    World space of the session's viewport is the tile-local pixel space; an
    adjacent tile is drawn to the right, starting at the main tile's width.

    Args:
        row: Tile row in the finest grid
        col: Tile column in the finest grid
        store: Pyramid store the tiles are read from
        annotations: Manager holding the tile's annotation set
        adjacent: Optional ``(row, col)`` of the tile to show on the right
    """

    def __init__(
        self,
        row: int,
        col: int,
        store: PyramidStore,
        annotations: AnnotationManager,
        adjacent: tuple[int, int] | None = None,
    ) -> None:
        self.row = row
        self.col = col
        self.viewport = ViewportController(SurfaceKind.DETAIL)
        self.tile: Raster | None = None
        self.adjacent_tile: Raster | None = None
        self.load_failed = False
        self._store = store
        self._annotations = annotations
        self.adjacent = self._validate_adjacent(adjacent)

    def _validate_adjacent(self, adjacent: tuple[int, int] | None) -> tuple[int, int] | None:
        if adjacent is None:
            return None
        mapper = self._store.mapper
        if tuple(adjacent) != (self.row, self.col + 1) or (
            mapper is not None and not mapper.is_valid_tile(*adjacent)
        ):
            logger.info(
                "Ignoring adjacent tile %s for [%d, %d]: only the right neighbour is shown",
                adjacent, self.row, self.col,
            )
            return None
        return adjacent[0], adjacent[1]

    def __repr__(self) -> str:
        return f"DetailViewSession(row={self.row}, col={self.col})"

    @property
    def session_id(self) -> str:
        return f"tab_{self.row}_{self.col}"

    @property
    def tile_key(self) -> str:
        """Annotation set key of the tile."""
        return tile_key(self.row, self.col)

    @property
    def title(self) -> str:
        return f"Region {self.row},{self.col}"

    @property
    def level(self) -> int:
        """Sessions always show the finest level."""
        return self._store.finest_level()

    @property
    def is_loaded(self) -> bool:
        return self.tile is not None

    def world_size(self) -> tuple[int, int]:
        """Pixel size of the loaded raster(s) laid out side by side."""
        if self.tile is None:
            return 0, 0
        height, width = self.tile.shape[:2]
        if self.adjacent_tile is not None:
            width += self.adjacent_tile.shape[1]
            height = max(height, self.adjacent_tile.shape[0])
        return width, height

    # --- Loading ---

    def load(self, on_update: Callable[[], None] | None = None) -> Future:
        """Fetch the tile (and adjacent tile) asynchronously.

        Args:
            on_update: Called each time the main or adjacent raster has been
                stored, in whichever order they finish and possibly from a
                worker thread

        Returns:
            Future of the main tile raster (None if absent)
        """
        if self.adjacent is not None:
            adjacent_future = self._store.fetch_tile(self.level, *self.adjacent)
            adjacent_future.add_done_callback(partial(self._set_adjacent, on_update))
        future = self._store.fetch_tile(self.level, self.row, self.col)
        future.add_done_callback(partial(self._set_tile, on_update))
        return future

    def load_blocking(self) -> bool:
        """Load the tile(s) on the calling thread. Returns whether the tile exists."""
        self.tile = self._store.load_tile(self.level, self.row, self.col)
        self.load_failed = self.tile is None
        if self.adjacent is not None:
            self.adjacent_tile = self._store.load_tile(self.level, *self.adjacent)
        return self.tile is not None

    def _set_tile(self, on_update: Callable[[], None] | None, future: Future) -> None:
        self.tile = future.result()
        self.load_failed = self.tile is None
        if self.load_failed:
            logger.warning("Failed to load tile image [%d, %d]", self.row, self.col)
        if on_update is not None:
            on_update()

    def _set_adjacent(self, on_update: Callable[[], None] | None, future: Future) -> None:
        self.adjacent_tile = future.result()
        if self.adjacent_tile is not None and on_update is not None:
            on_update()

    # --- Coordinates ---

    def local_to_original(self, x: float, y: float) -> tuple[float, float] | None:
        mapper = self._store.mapper
        if mapper is None:
            return None
        return mapper.local_to_original(self.row, self.col, x, y)

    def tile_at(self, screen_x: float, screen_y: float) -> tuple[int, int] | None:
        """Finest-level tile under a point of this session's surface."""
        return self._store.map_screen_to_tile(
            self.viewport, screen_x, screen_y, tile=(self.row, self.col)
        )

    # --- Annotations ---

    def labels(self) -> list[Annotation]:
        return self._annotations.annotations(self.tile_key)

    def labels_in_view(self, view_width: float, view_height: float) -> list[Annotation]:
        rect = self.viewport.visible_world_rect(view_width, view_height)
        return self._annotations.query(self.tile_key, rect.x, rect.y, rect.width, rect.height)

    def hit_test(self, world_x: float, world_y: float) -> list[Annotation]:
        return self._annotations.hit_test(self.tile_key, world_x, world_y)

    def delete_label_at(self, world_x: float, world_y: float) -> Annotation | None:
        """Remove the topmost label under a point. Returns the removed label."""
        hits = self.hit_test(world_x, world_y)
        if not hits:
            return None
        annotation = hits[0]
        self._annotations.remove(annotation.id)
        logger.info("Deleted label %s from tile [%d, %d]", annotation.id, self.row, self.col)
        return annotation

    def commit_box(
        self, box: BoxRegion, name: str = "", category: Category | str = Category.CUSTOM
    ) -> Annotation:
        """Store a finished rubber band as a label of this tile."""
        return self._annotations.add_to_tile(
            self.row, self.col, box.x, box.y, box.width, box.height,
            name=name, category=category,
        )

    def finish_box(
        self,
        world_x: float,
        world_y: float,
        name: str = "",
        category: Category | str = Category.CUSTOM,
    ) -> Annotation | None:
        """End the viewport's rubber band and commit it when large enough."""
        box = self.viewport.end_box(world_x, world_y)
        if box is None:
            return None
        return self.commit_box(box, name, category)


class SessionManager(QObject):
    """Open detail sessions, keyed by ``(row, col)``, plus the active one."""

    sessionOpened = Signal(str)
    sessionActivated = Signal(str)
    sessionClosed = Signal(str)
    sessionLoaded = Signal(str)
    countChanged = Signal()

    def __init__(
        self,
        store: PyramidStore,
        annotations: AnnotationManager,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._store = store
        self._annotations = annotations
        self._sessions: dict[tuple[int, int], DetailViewSession] = {}
        self._active: tuple[int, int] | None = None

    @Property(int, notify=countChanged)
    def count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[DetailViewSession]:
        """Open sessions in opening order."""
        return list(self._sessions.values())

    def get(self, row: int, col: int) -> DetailViewSession | None:
        return self._sessions.get((row, col))

    def is_open(self, row: int, col: int) -> bool:
        return (row, col) in self._sessions

    @property
    def active_session(self) -> DetailViewSession | None:
        return self._sessions.get(self._active) if self._active else None

    def open_tile(
        self,
        row: int,
        col: int,
        adjacent: tuple[int, int] | None = None,
        load: bool = True,
    ) -> DetailViewSession | None:
        """Open (or re-activate) the session of a tile.

        Returns:
            The session, or None if no pyramid is loaded or the tile is
            outside the grid
        """
        existing = self._sessions.get((row, col))
        if existing is not None:
            logger.info("Switched to existing tab [%d, %d]", row, col)
            self.activate(row, col)
            return existing

        mapper = self._store.mapper
        if mapper is None:
            logger.warning("No image loaded")
            return None
        if not mapper.is_valid_tile(row, col):
            logger.warning(
                "Invalid tile [%d, %d]: must be 0-%d for row, 0-%d for col",
                row, col, mapper.rows - 1, mapper.cols - 1,
            )
            return None

        session = DetailViewSession(row, col, self._store, self._annotations, adjacent)
        self._sessions[(row, col)] = session
        logger.info("Opened region [%d, %d] (%d tabs open)", row, col, len(self._sessions))
        self.sessionOpened.emit(session.session_id)
        self.countChanged.emit()
        self.activate(row, col)

        if load:
            session.load(partial(self.sessionLoaded.emit, session.session_id))
        return session

    def open_at(
        self, surface: ViewportController, screen_x: float, screen_y: float
    ) -> DetailViewSession | None:
        """Open the tile under a point of the overview surface."""
        tile = self._store.map_screen_to_tile(surface, screen_x, screen_y)
        if tile is None:
            logger.info("No tile at (%.0f, %.0f)", screen_x, screen_y)
            return None
        return self.open_tile(*tile)

    def activate(self, row: int, col: int) -> bool:
        session = self._sessions.get((row, col))
        if session is None:
            return False
        self._active = (row, col)
        self.sessionActivated.emit(session.session_id)
        return True

    def close(self, row: int, col: int) -> bool:
        """Close a session; the first remaining one becomes active if needed."""
        session = self._sessions.pop((row, col), None)
        if session is None:
            return False
        self.sessionClosed.emit(session.session_id)
        self.countChanged.emit()
        if self._active == (row, col):
            self._active = None
            if self._sessions:
                self.activate(*next(iter(self._sessions)))
        return True

    @Slot()
    def close_all(self) -> None:
        for row, col in list(self._sessions):
            self.close(row, col)
