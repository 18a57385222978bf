"""Tests for detail view sessions and the session manager."""

from __future__ import annotations

import threading

import numpy as np
import pytest

from gigaview.core.annotations import AnnotationManager, Category
from gigaview.core.session import DetailViewSession, SessionManager
from gigaview.core.store import PyramidStore
from gigaview.core.viewport import BoxRegion, SurfaceKind, ViewportController


@pytest.fixture
def store(qapp, large_rgb_array: np.ndarray):
    """Store holding the 2000x1500 pyramid (3 rows x 4 cols at 512 px)."""
    store = PyramidStore(max_workers=2)
    store.build_pyramid(large_rgb_array, 2000, 1500, tile_size=512)
    yield store
    store.close()


@pytest.fixture
def annotations(qapp) -> AnnotationManager:
    return AnnotationManager()


@pytest.fixture
def manager(store: PyramidStore, annotations: AnnotationManager) -> SessionManager:
    return SessionManager(store, annotations)


class TestDetailViewSession:
    """Tests for a single session."""

    def test_identity(self, store, annotations):
        session = DetailViewSession(1, 2, store, annotations)
        assert session.session_id == "tab_1_2"
        assert session.tile_key == "1_2"
        assert session.title == "Region 1,2"
        assert session.level == 2
        assert session.viewport.kind == SurfaceKind.DETAIL

    def test_load_blocking(self, store, annotations):
        """The finest tile is loaded at its clipped size."""
        session = DetailViewSession(2, 3, store, annotations)
        assert session.load_blocking()
        assert session.tile.shape == (476, 464, 3)
        assert session.world_size() == (464, 476)

    def test_load_async(self, store, annotations):
        session = DetailViewSession(0, 0, store, annotations)
        raster = session.load().result(timeout=10)
        assert raster.shape == (512, 512, 3)

    def test_async_load_reports_adjacent_tile(self, store, annotations):
        """The update callback also fires when the adjacent tile lands."""
        session = DetailViewSession(0, 2, store, annotations, adjacent=(0, 3))
        updates = []
        both_loaded = threading.Event()

        def on_update():
            updates.append(1)
            if len(updates) >= 2:
                both_loaded.set()

        session.load(on_update)

        assert both_loaded.wait(timeout=10)
        assert session.tile.shape == (512, 512, 3)
        assert session.adjacent_tile.shape == (512, 464, 3)
        assert not session.load_failed

    def test_cached_tile_and_loading_neighbour_both_report(self, store, annotations):
        """A cached main tile and an adjacent tile still loading give two updates."""
        store.load_tile(2, 0, 2)
        session = DetailViewSession(0, 2, store, annotations, adjacent=(0, 3))
        updates = []
        adjacent_loaded = threading.Event()

        def on_update():
            updates.append(session.adjacent_tile is not None)
            if session.adjacent_tile is not None:
                adjacent_loaded.set()

        session.load(on_update)

        assert adjacent_loaded.wait(timeout=10)
        assert len(updates) == 2
        assert updates[-1] is True

    def test_adjacent_right_neighbour(self, store, annotations):
        """The right neighbour is laid out after the main tile."""
        session = DetailViewSession(0, 2, store, annotations, adjacent=(0, 3))
        assert session.adjacent == (0, 3)
        session.load_blocking()
        assert session.world_size() == (512 + 464, 512)

    def test_adjacent_must_be_right_neighbour(self, store, annotations):
        """Other tiles, or a neighbour outside the grid, are ignored."""
        assert DetailViewSession(0, 0, store, annotations, adjacent=(1, 0)).adjacent is None
        assert DetailViewSession(0, 3, store, annotations, adjacent=(0, 4)).adjacent is None

    def test_local_to_original(self, store, annotations):
        session = DetailViewSession(1, 1, store, annotations)
        assert session.local_to_original(10, 10) == (522, 522)

    def test_tile_at(self, store, annotations):
        """Points past the tile's right edge hit the next tile."""
        session = DetailViewSession(1, 1, store, annotations)
        assert session.tile_at(100, 100) == (1, 1)
        assert session.tile_at(600, 100) == (1, 2)

    def test_draw_box_creates_tile_label(self, store, annotations):
        """A finished rubber band becomes a label in tile-local space."""
        session = DetailViewSession(1, 2, store, annotations)
        session.viewport.begin_box(10, 10)
        ann = session.finish_box(60, 40, name="Comet", category=Category.FEATURE)

        assert ann is not None
        assert (ann.x, ann.y, ann.width, ann.height) == (10, 10, 50, 30)
        assert (ann.tile_row, ann.tile_col) == (1, 2)
        assert session.labels() == [ann]
        assert session.hit_test(20, 20) == [ann]

    def test_delete_label_at(self, store, annotations):
        """The topmost label under a point is removed."""
        session = DetailViewSession(1, 2, store, annotations)
        lower = session.commit_box(BoxRegion(10, 10, 100, 100), name="Lower")
        upper = session.commit_box(BoxRegion(40, 40, 30, 30), name="Upper")

        assert session.delete_label_at(50, 50) is upper
        assert session.labels() == [lower]
        assert session.delete_label_at(300, 300) is None
        assert session.labels() == [lower]

    def test_small_box_is_not_committed(self, store, annotations):
        session = DetailViewSession(0, 0, store, annotations)
        session.viewport.begin_box(10, 10)
        assert session.finish_box(12, 40) is None
        assert session.labels() == []

    def test_labels_in_view(self, store, annotations):
        """Only labels inside the visible world rectangle are returned."""
        session = DetailViewSession(0, 0, store, annotations)
        near = session.commit_box(BoxRegion(10, 10, 20, 20))
        session.commit_box(BoxRegion(400, 400, 20, 20))
        assert session.labels_in_view(200, 200) == [near]


class TestSessionManager:
    """Tests for opening, activating and closing sessions."""

    def test_open_same_tile_twice(self, manager: SessionManager):
        """Opening a tile twice returns the same session."""
        first = manager.open_tile(0, 0, load=False)
        second = manager.open_tile(0, 0, load=False)
        assert first is second
        assert manager.count == 1

    def test_open_signals(self, manager: SessionManager):
        opened = []
        activated = []
        manager.sessionOpened.connect(opened.append)
        manager.sessionActivated.connect(activated.append)

        manager.open_tile(1, 1, load=False)
        manager.open_tile(1, 1, load=False)

        assert opened == ["tab_1_1"]
        assert activated == ["tab_1_1", "tab_1_1"]

    def test_invalid_tile(self, manager: SessionManager):
        """Tiles outside the finest grid are rejected."""
        assert manager.open_tile(3, 0, load=False) is None
        assert manager.open_tile(0, -1, load=False) is None
        assert manager.count == 0

    def test_no_pyramid(self, qapp, annotations):
        store = PyramidStore(max_workers=1)
        try:
            assert SessionManager(store, annotations).open_tile(0, 0) is None
        finally:
            store.close()

    def test_open_loads_tile(self, manager: SessionManager):
        """Opened sessions start loading their tile."""
        session = manager.open_tile(0, 1)
        # Later requests share the in-flight load
        assert session.load().result(timeout=10) is not None

    def test_active_session(self, manager: SessionManager):
        a = manager.open_tile(0, 0, load=False)
        b = manager.open_tile(0, 1, load=False)
        assert manager.active_session is b
        assert manager.activate(0, 0)
        assert manager.active_session is a
        assert manager.activate(2, 2) is False

    def test_close_activates_first_remaining(self, manager: SessionManager):
        """Closing the active session activates the first remaining one."""
        a = manager.open_tile(0, 0, load=False)
        manager.open_tile(0, 1, load=False)
        manager.open_tile(0, 2, load=False)

        assert manager.close(0, 2)
        assert manager.active_session is a
        assert manager.close(0, 2) is False
        assert [s.session_id for s in manager.sessions()] == ["tab_0_0", "tab_0_1"]

    def test_close_inactive_keeps_active(self, manager: SessionManager):
        manager.open_tile(0, 0, load=False)
        b = manager.open_tile(0, 1, load=False)
        manager.close(0, 0)
        assert manager.active_session is b

    def test_close_all(self, manager: SessionManager):
        closed = []
        manager.sessionClosed.connect(closed.append)
        manager.open_tile(0, 0, load=False)
        manager.open_tile(1, 1, load=False)

        manager.close_all()

        assert manager.count == 0
        assert manager.active_session is None
        assert sorted(closed) == ["tab_0_0", "tab_1_1"]

    def test_open_at_overview_point(self, manager: SessionManager):
        """Double-clicking overview pixel (100, 80) opens tile (0, 0)."""
        surface = ViewportController(SurfaceKind.OVERVIEW)
        session = manager.open_at(surface, 100, 80)
        assert (session.row, session.col) == (0, 0)
        assert manager.open_at(surface, 5000, 80) is None
