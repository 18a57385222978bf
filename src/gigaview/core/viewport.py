"""Zoom/pan state and pointer interaction for one rendering surface.

Each surface (the overview and every detail session) owns exactly one
``ViewportController``. Mutators return whether the state changed; redraws are
the caller's business.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from PySide6.QtGui import QTransform

from gigaview.config import DETAIL_ZOOM_RANGE, MIN_BOX_SIZE, OVERVIEW_ZOOM_RANGE

from . import coords

logger = logging.getLogger(__name__)


class SurfaceKind(Enum):
    """Kind of rendering surface a viewport drives."""

    OVERVIEW = "overview"
    DETAIL = "detail"


class InteractionMode(Enum):
    """Transient pointer interaction. Modes are mutually exclusive."""

    IDLE = "idle"
    DRAGGING = "dragging"
    DRAWING = "drawing"


@dataclass
class ViewportState:
    """Affine world-to-screen map: ``screen = world * zoom + offset``."""

    zoom: float = 1.0
    offset_x: float = 0.0
    offset_y: float = 0.0


@dataclass(frozen=True)
class BoxRegion:
    """Axis-aligned rectangle in world space with non-negative size."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_corners(cls, x0: float, y0: float, x1: float, y1: float) -> BoxRegion:
        return cls(min(x0, x1), min(y0, y1), abs(x1 - x0), abs(y1 - y0))


def zoom_range_for(kind: SurfaceKind) -> tuple[float, float]:
    """Allowed zoom range of a surface kind."""
    return OVERVIEW_ZOOM_RANGE if kind == SurfaceKind.OVERVIEW else DETAIL_ZOOM_RANGE


class ViewportController:
    """Owns zoom/pan state and the drag / rubber-band interaction of a surface.

    Drawing is only available on detail surfaces.

    Args:
        kind: Surface kind; selects the zoom bounds and whether drawing is allowed
        zoom_range: Override for the ``(min, max)`` zoom bounds
        min_box_size: Boxes must exceed this in both dimensions to be committed
    """

    def __init__(
        self,
        kind: SurfaceKind = SurfaceKind.OVERVIEW,
        zoom_range: tuple[float, float] | None = None,
        min_box_size: float = MIN_BOX_SIZE,
    ) -> None:
        self.kind = kind
        self.min_zoom, self.max_zoom = zoom_range or zoom_range_for(kind)
        self.min_box_size = min_box_size
        self._state = ViewportState()
        self._mode = InteractionMode.IDLE
        self._drag_anchor: tuple[float, float] | None = None
        self._box_start: tuple[float, float] | None = None
        self._box_end: tuple[float, float] | None = None

    # --- State ---

    @property
    def state(self) -> ViewportState:
        """Copy of the current state."""
        return ViewportState(self._state.zoom, self._state.offset_x, self._state.offset_y)

    @property
    def zoom(self) -> float:
        return self._state.zoom

    @property
    def offset(self) -> tuple[float, float]:
        return self._state.offset_x, self._state.offset_y

    @property
    def mode(self) -> InteractionMode:
        return self._mode

    @property
    def can_draw(self) -> bool:
        return self.kind == SurfaceKind.DETAIL

    def world_to_screen(self, x: float, y: float) -> tuple[float, float]:
        s = self._state
        return coords.world_to_screen(x, y, s.zoom, s.offset_x, s.offset_y)

    def screen_to_world(self, x: float, y: float) -> tuple[float, float]:
        s = self._state
        return coords.screen_to_world(x, y, s.zoom, s.offset_x, s.offset_y)

    def transform(self) -> QTransform:
        """World-to-screen transform for ``QPainter.setTransform``."""
        s = self._state
        return QTransform(s.zoom, 0.0, 0.0, s.zoom, s.offset_x, s.offset_y)

    def visible_world_rect(self, view_width: float, view_height: float) -> BoxRegion:
        """World-space rectangle currently shown by a view of the given size."""
        x, y = self.screen_to_world(0.0, 0.0)
        return BoxRegion(x, y, view_width / self._state.zoom, view_height / self._state.zoom)

    # --- Pan / zoom ---

    def pan(self, dx: float, dy: float) -> bool:
        """Shift the offset by a screen-space delta. Unclamped."""
        if dx == 0 and dy == 0:
            return False
        self._state.offset_x += dx
        self._state.offset_y += dy
        return True

    def zoom_at(self, screen_x: float, screen_y: float, factor: float) -> bool:
        """Zoom by ``factor`` keeping the screen point fixed.

        Returns:
            False (and leaves the state untouched) if the new zoom would fall
            outside the surface's bounds
        """
        if factor <= 0:
            raise ValueError(f"Zoom factor must be positive, got {factor}")
        new_zoom = self._state.zoom * factor
        if new_zoom < self.min_zoom or new_zoom > self.max_zoom:
            logger.debug(
                "Zoom %.3f outside [%s, %s], ignored", new_zoom, self.min_zoom, self.max_zoom
            )
            return False

        self._state.offset_x = screen_x - (screen_x - self._state.offset_x) * factor
        self._state.offset_y = screen_y - (screen_y - self._state.offset_y) * factor
        self._state.zoom = new_zoom
        return True

    def zoom_centered(self, view_width: float, view_height: float, factor: float) -> bool:
        """Zoom around the centre of a view of the given size."""
        return self.zoom_at(view_width / 2, view_height / 2, factor)

    def reset(self) -> bool:
        """Return to zoom 1 with no offset."""
        if self._state == ViewportState():
            return False
        self._state = ViewportState()
        return True

    # --- Drag ---

    def begin_drag(self, screen_x: float, screen_y: float) -> bool:
        if self._mode != InteractionMode.IDLE:
            return False
        self._mode = InteractionMode.DRAGGING
        self._drag_anchor = (screen_x, screen_y)
        return True

    def drag_to(self, screen_x: float, screen_y: float) -> bool:
        """Pan by the pointer movement since the last drag position."""
        if self._mode != InteractionMode.DRAGGING or self._drag_anchor is None:
            return False
        last_x, last_y = self._drag_anchor
        self._drag_anchor = (screen_x, screen_y)
        return self.pan(screen_x - last_x, screen_y - last_y)

    def end_drag(self) -> bool:
        if self._mode != InteractionMode.DRAGGING:
            return False
        self._mode = InteractionMode.IDLE
        self._drag_anchor = None
        return True

    # --- Rubber band ---

    @property
    def current_box(self) -> BoxRegion | None:
        """Rubber band being drawn, in world space."""
        if self._mode != InteractionMode.DRAWING or self._box_start is None:
            return None
        end = self._box_end or self._box_start
        return BoxRegion.from_corners(*self._box_start, *end)

    def begin_box(self, world_x: float, world_y: float) -> bool:
        """Start a rubber band. Refused on the overview or while dragging."""
        if not self.can_draw:
            logger.debug("Drawing is disabled on the overview")
            return False
        if self._mode != InteractionMode.IDLE:
            return False
        self._mode = InteractionMode.DRAWING
        self._box_start = (world_x, world_y)
        self._box_end = (world_x, world_y)
        return True

    def update_box(self, world_x: float, world_y: float) -> bool:
        if self._mode != InteractionMode.DRAWING:
            return False
        self._box_end = (world_x, world_y)
        return True

    def end_box(self, world_x: float, world_y: float) -> BoxRegion | None:
        """Finish the rubber band.

        Returns:
            The box if both dimensions exceed ``min_box_size``, else None
        """
        if self._mode != InteractionMode.DRAWING or self._box_start is None:
            return None
        box = BoxRegion.from_corners(*self._box_start, world_x, world_y)
        self.cancel_box()
        if box.width > self.min_box_size and box.height > self.min_box_size:
            return box
        logger.debug("Box %.1fx%.1f too small, discarded", box.width, box.height)
        return None

    def cancel_box(self) -> bool:
        if self._mode != InteractionMode.DRAWING:
            return False
        self._mode = InteractionMode.IDLE
        self._box_start = None
        self._box_end = None
        return True
