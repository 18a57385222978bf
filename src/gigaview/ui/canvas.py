"""Painted viewer surfaces: the overview canvas and per-tile detail canvases.

Both widgets paint through their ``ViewportController``'s transform and
translate pointer events into controller calls; they only call ``update()``
when a controller mutator reports a change.
"""

from __future__ import annotations

import logging
import math

import numpy as np
from PySide6.QtCore import QPointF, QRectF, Qt, Signal
from PySide6.QtGui import QColor, QFont, QImage, QPainter, QPen
from PySide6.QtWidgets import QWidget

from gigaview.config import BUTTON_ZOOM_FACTORS, GLOBAL_ANNOTATION_KEY, WHEEL_ZOOM_FACTORS
from gigaview.core.annotations import Annotation, AnnotationManager, Category
from gigaview.core.session import DetailViewSession, SessionManager
from gigaview.core.store import PyramidStore
from gigaview.core.types import Raster
from gigaview.core.viewport import InteractionMode, SurfaceKind, ViewportController

logger = logging.getLogger(__name__)

BACKGROUND = QColor("#0a0e27")
ACCENT = QColor("#4a9eff")
OPEN_COLOR = QColor("#10b981")
MINIMAP_WIDTH = 200
MINIMAP_MARGIN = 10


def raster_to_qimage(raster: Raster) -> QImage:
    """Convert an ``(H, W, 3)`` uint8 raster into an owned RGB888 QImage."""
    raster = np.ascontiguousarray(raster, dtype=np.uint8)
    height, width = raster.shape[:2]
    image = QImage(raster.tobytes(), width, height, width * 3, QImage.Format.Format_RGB888)
    # Copy: the bytes object goes out of scope after this function returns
    return image.copy()


def _cosmetic_pen(color: QColor, width: float = 2.0, style=Qt.PenStyle.SolidLine) -> QPen:
    pen = QPen(color, width, style)
    pen.setCosmetic(True)
    return pen


class _ViewportCanvas(QWidget):
    """Shared zoom/pan handling for both surfaces."""

    zoomChanged = Signal(float)
    cursorMoved = Signal(int, int)  # world position under the pointer

    def __init__(self, controller: ViewportController, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self.controller = controller
        self.setMouseTracking(True)
        self.setFocusPolicy(Qt.FocusPolicy.StrongFocus)
        self.setMinimumSize(200, 150)

    def world_position(self, x: float, y: float) -> tuple[int, int]:
        """World pixel under a screen point."""
        world_x, world_y = self.controller.screen_to_world(x, y)
        return math.floor(world_x), math.floor(world_y)

    def _report_cursor(self, x: float, y: float) -> None:
        self.cursorMoved.emit(*self.world_position(x, y))

    def _changed(self, changed: bool) -> bool:
        if changed:
            self.update()
        return changed

    def zoom_in(self) -> bool:
        changed = self.controller.zoom_centered(self.width(), self.height(), BUTTON_ZOOM_FACTORS[0])
        if changed:
            self.zoomChanged.emit(self.controller.zoom)
        return self._changed(changed)

    def zoom_out(self) -> bool:
        changed = self.controller.zoom_centered(self.width(), self.height(), BUTTON_ZOOM_FACTORS[1])
        if changed:
            self.zoomChanged.emit(self.controller.zoom)
        return self._changed(changed)

    def reset_view(self) -> bool:
        changed = self.controller.reset()
        if changed:
            self.zoomChanged.emit(self.controller.zoom)
        return self._changed(changed)

    def wheelEvent(self, event) -> None:
        delta = event.angleDelta().y()
        if delta == 0:
            return
        factor = WHEEL_ZOOM_FACTORS[0] if delta > 0 else WHEEL_ZOOM_FACTORS[1]
        pos = event.position()
        if self._changed(self.controller.zoom_at(pos.x(), pos.y(), factor)):
            self.zoomChanged.emit(self.controller.zoom)
        event.accept()

    def _screen_rect(self, x: float, y: float, width: float, height: float) -> QRectF:
        left, top = self.controller.world_to_screen(x, y)
        right, bottom = self.controller.world_to_screen(x + width, y + height)
        return QRectF(QPointF(left, top), QPointF(right, bottom))

    def _draw_annotations(self, painter: QPainter, annotations: list[Annotation]) -> None:
        painter.setFont(QFont("sans-serif", 9))
        for annotation in annotations:
            color = QColor(annotation.color or Category.CUSTOM.color)
            rect = self._screen_rect(annotation.x, annotation.y, annotation.width, annotation.height)
            painter.setPen(_cosmetic_pen(color))
            painter.drawRect(rect)
            painter.drawText(rect.topLeft() + QPointF(0, -5), annotation.name)


class OverviewCanvas(_ViewportCanvas):
    """Overview raster with the finest tile grid, open-tab markers and minimap.

    Double-clicking a tile emits ``tileActivated(row, col)``.
    """

    tileActivated = Signal(int, int)
    hoverTileChanged = Signal(int, int)  # (-1, -1) when leaving the grid

    def __init__(
        self,
        store: PyramidStore,
        sessions: SessionManager | None = None,
        annotations: AnnotationManager | None = None,
        parent: QWidget | None = None,
    ) -> None:
        super().__init__(ViewportController(SurfaceKind.OVERVIEW), parent)
        self.store = store
        self.sessions = sessions
        self.annotations = annotations
        self.show_grid = True
        self.show_minimap = True
        self.hover_tile: tuple[int, int] | None = None
        self._overview_image: QImage | None = None

        store.pyramidLoaded.connect(self._on_pyramid_loaded)
        store.pyramidCleared.connect(self._on_pyramid_cleared)
        if sessions is not None:
            sessions.sessionOpened.connect(lambda _sid: self.update())
            sessions.sessionClosed.connect(lambda _sid: self.update())
        if annotations is not None:
            annotations.annotationsChanged.connect(self.update)

    def _on_pyramid_loaded(self) -> None:
        overview = self.store.overview
        self._overview_image = raster_to_qimage(overview) if overview is not None else None
        self.hover_tile = None
        self.controller.reset()
        self.update()

    def _on_pyramid_cleared(self) -> None:
        self._overview_image = None
        self.hover_tile = None
        self.update()

    def set_show_grid(self, value: bool) -> None:
        self.show_grid = value
        self.update()

    def set_show_minimap(self, value: bool) -> None:
        self.show_minimap = value
        self.update()

    # --- Pointer ---

    def mousePressEvent(self, event) -> None:
        if event.button() == Qt.MouseButton.LeftButton:
            pos = event.position()
            self.controller.begin_drag(pos.x(), pos.y())
            self.setCursor(Qt.CursorShape.ClosedHandCursor)

    def mouseMoveEvent(self, event) -> None:
        pos = event.position()
        if self.controller.mode == InteractionMode.DRAGGING:
            self._changed(self.controller.drag_to(pos.x(), pos.y()))
            self._report_cursor(pos.x(), pos.y())
            return
        tile = self.store.map_screen_to_tile(self.controller, pos.x(), pos.y())
        if tile != self.hover_tile:
            self.hover_tile = tile
            self.hoverTileChanged.emit(*(tile or (-1, -1)))
            self.update()
        self._report_cursor(pos.x(), pos.y())

    def mouseReleaseEvent(self, event) -> None:
        if event.button() == Qt.MouseButton.LeftButton:
            self.controller.end_drag()
            self.setCursor(Qt.CursorShape.OpenHandCursor)

    def mouseDoubleClickEvent(self, event) -> None:
        pos = event.position()
        tile = self.store.map_screen_to_tile(self.controller, pos.x(), pos.y())
        if tile is None:
            logger.debug("Double-click outside the tile grid")
            return
        self.tileActivated.emit(*tile)

    def leaveEvent(self, event) -> None:
        if self.hover_tile is not None:
            self.hover_tile = None
            self.hoverTileChanged.emit(-1, -1)
            self.update()

    # --- Painting ---

    def paintEvent(self, event) -> None:
        painter = QPainter(self)
        painter.fillRect(self.rect(), BACKGROUND)
        mapper = self.store.mapper
        if self._overview_image is None or mapper is None:
            painter.setPen(QColor("#8892b0"))
            painter.drawText(self.rect(), Qt.AlignmentFlag.AlignCenter, "Open an image to begin")
            painter.end()
            return

        painter.setRenderHint(QPainter.RenderHint.SmoothPixmapTransform)
        painter.save()
        painter.setTransform(self.controller.transform())
        painter.drawImage(QPointF(0, 0), self._overview_image)
        painter.restore()

        if self.show_grid:
            self._draw_grid(painter, mapper)
        self._draw_open_tiles(painter, mapper)
        if self.hover_tile is not None:
            self._draw_hover(painter, mapper, *self.hover_tile)
        if self.annotations is not None:
            self._draw_annotations(painter, self.annotations.annotations(GLOBAL_ANNOTATION_KEY))
        if self.show_minimap:
            self._draw_minimap(painter)
        painter.end()

    def _draw_grid(self, painter: QPainter, mapper) -> None:
        color = QColor(ACCENT)
        color.setAlphaF(0.5)
        painter.setPen(_cosmetic_pen(color))
        cell_w = mapper.tile_size * mapper.scale_x
        cell_h = mapper.tile_size * mapper.scale_y
        for i in range(mapper.cols + 1):
            top = self.controller.world_to_screen(i * cell_w, 0)
            bottom = self.controller.world_to_screen(i * cell_w, mapper.rows * cell_h)
            painter.drawLine(QPointF(*top), QPointF(*bottom))
        for i in range(mapper.rows + 1):
            left = self.controller.world_to_screen(0, i * cell_h)
            right = self.controller.world_to_screen(mapper.cols * cell_w, i * cell_h)
            painter.drawLine(QPointF(*left), QPointF(*right))

        label_color = QColor(ACCENT)
        label_color.setAlphaF(0.6)
        painter.setPen(label_color)
        painter.setFont(QFont("monospace", 10))
        for row in range(mapper.rows):
            for col in range(mapper.cols):
                rect = self._screen_rect(*mapper.tile_rect_in_overview(row, col))
                painter.drawText(rect, Qt.AlignmentFlag.AlignCenter, f"[{row},{col}]")

    def _draw_open_tiles(self, painter: QPainter, mapper) -> None:
        if self.sessions is None:
            return
        painter.setFont(QFont("sans-serif", 9, QFont.Weight.Bold))
        for session in self.sessions.sessions():
            rect = self._screen_rect(*mapper.tile_rect_in_overview(session.row, session.col))
            painter.setPen(_cosmetic_pen(OPEN_COLOR, 3))
            painter.drawRect(rect)
            painter.drawText(
                rect.adjusted(0, 5, -5, 0),
                Qt.AlignmentFlag.AlignRight | Qt.AlignmentFlag.AlignTop,
                "OPEN",
            )

    def _draw_hover(self, painter: QPainter, mapper, row: int, col: int) -> None:
        rect = self._screen_rect(*mapper.tile_rect_in_overview(row, col))
        fill = QColor(ACCENT)
        fill.setAlphaF(0.2)
        painter.fillRect(rect, fill)
        border = QColor(ACCENT)
        border.setAlphaF(0.9)
        painter.setPen(_cosmetic_pen(border, 3))
        painter.drawRect(rect)
        painter.setFont(QFont("sans-serif", 11, QFont.Weight.Bold))
        painter.drawText(rect, Qt.AlignmentFlag.AlignCenter, "Double-click to open")

    def minimap_rect(self) -> QRectF | None:
        """Screen rectangle occupied by the minimap."""
        if self._overview_image is None:
            return None
        image_w = self._overview_image.width()
        image_h = self._overview_image.height()
        height = MINIMAP_WIDTH * image_h / image_w
        return QRectF(
            self.width() - MINIMAP_WIDTH - MINIMAP_MARGIN,
            self.height() - height - MINIMAP_MARGIN,
            MINIMAP_WIDTH,
            height,
        )

    def _draw_minimap(self, painter: QPainter) -> None:
        target = self.minimap_rect()
        if target is None:
            return
        painter.drawImage(target, self._overview_image)
        painter.setPen(_cosmetic_pen(QColor("#8892b0"), 1))
        painter.drawRect(target)

        scale_x = target.width() / self._overview_image.width()
        scale_y = target.height() / self._overview_image.height()
        visible = self.controller.visible_world_rect(self.width(), self.height())
        viewport = QRectF(
            target.x() + visible.x * scale_x,
            target.y() + visible.y * scale_y,
            visible.width * scale_x,
            visible.height * scale_y,
        ).intersected(target)
        painter.setPen(_cosmetic_pen(ACCENT, 2))
        painter.drawRect(viewport)


class DetailCanvas(_ViewportCanvas):
    """One opened tile (plus its right neighbour) with its local labels.

    In draw mode a left-button drag draws a rubber band; releasing commits it
    as a label of the tile when it is large enough.
    """

    labelCreated = Signal(str)  # annotation id
    labelDeleted = Signal(str)  # annotation id

    def __init__(self, session: DetailViewSession, parent: QWidget | None = None) -> None:
        super().__init__(session.viewport, parent)
        self.session = session
        self.draw_mode = False
        self.label_name = ""
        self.label_category: Category = Category.CUSTOM
        self._images: dict[int, tuple[Raster, QImage]] = {}

    def set_draw_mode(self, enabled: bool) -> None:
        self.draw_mode = enabled
        self.setCursor(Qt.CursorShape.CrossCursor if enabled else Qt.CursorShape.OpenHandCursor)

    def refresh(self) -> None:
        """Repaint after the session's tile(s) arrived."""
        self.update()

    def _qimage(self, raster: Raster) -> QImage:
        cached = self._images.get(id(raster))
        if cached is None or cached[0] is not raster:
            cached = (raster, raster_to_qimage(raster))
            self._images[id(raster)] = cached
        return cached[1]

    # --- Pointer ---

    def delete_label_at(self, x: float, y: float) -> bool:
        """Delete the topmost label under a screen point."""
        annotation = self.session.delete_label_at(*self.controller.screen_to_world(x, y))
        if annotation is None:
            return False
        self.labelDeleted.emit(annotation.id)
        self.update()
        return True

    def mousePressEvent(self, event) -> None:
        pos = event.position()
        if event.button() == Qt.MouseButton.RightButton:
            if self.controller.mode == InteractionMode.IDLE:
                self.delete_label_at(pos.x(), pos.y())
            return
        if event.button() != Qt.MouseButton.LeftButton:
            return
        if self.draw_mode:
            world = self.controller.screen_to_world(pos.x(), pos.y())
            self._changed(self.controller.begin_box(*world))
        else:
            self.controller.begin_drag(pos.x(), pos.y())
            self.setCursor(Qt.CursorShape.ClosedHandCursor)

    def mouseMoveEvent(self, event) -> None:
        pos = event.position()
        if self.controller.mode == InteractionMode.DRAWING:
            world = self.controller.screen_to_world(pos.x(), pos.y())
            self._changed(self.controller.update_box(*world))
        elif self.controller.mode == InteractionMode.DRAGGING:
            self._changed(self.controller.drag_to(pos.x(), pos.y()))
        self._report_cursor(pos.x(), pos.y())

    def mouseReleaseEvent(self, event) -> None:
        if event.button() != Qt.MouseButton.LeftButton:
            return
        pos = event.position()
        if self.controller.mode == InteractionMode.DRAWING:
            world = self.controller.screen_to_world(pos.x(), pos.y())
            annotation = self.session.finish_box(
                *world, name=self.label_name, category=self.label_category
            )
            if annotation is not None:
                self.labelCreated.emit(annotation.id)
            self.update()
        elif self.controller.end_drag():
            self.setCursor(Qt.CursorShape.OpenHandCursor)

    # --- Painting ---

    def paintEvent(self, event) -> None:
        painter = QPainter(self)
        painter.fillRect(self.rect(), BACKGROUND)
        tile = self.session.tile
        if tile is None:
            painter.setPen(QColor("#8892b0"))
            painter.drawText(
                self.rect(), Qt.AlignmentFlag.AlignCenter,
                f"Loading tile [{self.session.row}, {self.session.col}]...",
            )
            painter.end()
            return

        painter.save()
        painter.setTransform(self.controller.transform())
        painter.drawImage(QPointF(0, 0), self._qimage(tile))
        if self.session.adjacent_tile is not None:
            painter.drawImage(
                QPointF(tile.shape[1], 0), self._qimage(self.session.adjacent_tile)
            )
        painter.restore()

        self._draw_annotations(painter, self.session.labels_in_view(self.width(), self.height()))

        box = self.controller.current_box
        if box is not None:
            painter.setPen(_cosmetic_pen(ACCENT, 2, Qt.PenStyle.DashLine))
            painter.drawRect(self._screen_rect(box.x, box.y, box.width, box.height))
        painter.end()
