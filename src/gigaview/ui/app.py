"""Qt Widgets application for the GigaView viewer."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from PySide6.QtCore import QObject, QStandardPaths, QThread, Signal, Slot
from PySide6.QtGui import QAction, QActionGroup, QKeySequence
from PySide6.QtWidgets import (
    QApplication,
    QComboBox,
    QFileDialog,
    QInputDialog,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QProgressBar,
    QTabBar,
    QTabWidget,
    QToolBar,
)

from gigaview.config import IMAGE_EXTENSIONS
from gigaview.core.annotations import AnnotationManager, Category, JsonAnnotationStore
from gigaview.core.errors import GigaViewError, SourceLoadError
from gigaview.core.session import SessionManager
from gigaview.core.store import PyramidStore
from gigaview.ui.canvas import DetailCanvas, OverviewCanvas
from gigaview.ui.settings import Settings

logger = logging.getLogger(__name__)


class BuildWorker(QThread):
    """Background worker building a pyramid from an image file."""

    succeeded = Signal(str)  # source path
    errorOccurred = Signal(str)  # error message

    def __init__(
        self,
        store: PyramidStore,
        image_path: Path,
        tile_size: int,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self.store = store
        self.image_path = Path(image_path)
        self.tile_size = tile_size

    def run(self) -> None:
        """Run the build in the background thread.

        Progress reaches the UI through ``PyramidStore.buildProgress``.
        """
        try:
            self.store.build_from_image(self.image_path, self.tile_size)
        except GigaViewError as e:
            self.errorOccurred.emit(str(e))
            return
        self.succeeded.emit(str(self.image_path))


class MainWindow(QMainWindow):
    """Overview tab plus one closable tab per open detail session."""

    def __init__(
        self,
        store: PyramidStore,
        annotations: AnnotationManager,
        sessions: SessionManager,
        settings: Settings,
        annotation_store: JsonAnnotationStore | None = None,
    ) -> None:
        super().__init__()
        self.store = store
        self.annotations = annotations
        self.sessions = sessions
        self.settings = settings
        self.annotation_store = annotation_store
        self._worker: BuildWorker | None = None
        self._canvases: dict[str, DetailCanvas] = {}

        self.setWindowTitle("GigaView")
        self.resize(1500, 1000)

        self.overview = OverviewCanvas(store, sessions, annotations)
        self.overview.set_show_grid(settings.showGrid)
        self.overview.set_show_minimap(settings.showMinimap)

        self.tabs = QTabWidget()
        self.tabs.setTabsClosable(True)
        self.tabs.addTab(self.overview, "Overview")
        self.tabs.tabBar().setTabButton(0, QTabBar.ButtonPosition.RightSide, None)
        self.tabs.tabCloseRequested.connect(self._on_tab_close_requested)
        self.tabs.currentChanged.connect(self._on_current_tab_changed)
        self.setCentralWidget(self.tabs)

        self._build_toolbar()
        self._build_status_bar()

        store.pyramidLoaded.connect(self._on_pyramid_loaded)
        store.buildProgress.connect(self._on_build_progress)
        self.overview.tileActivated.connect(self.open_tile)
        self.overview.hoverTileChanged.connect(self._on_hover_tile)
        self.overview.cursorMoved.connect(self._on_overview_cursor)
        self.overview.zoomChanged.connect(self._show_zoom)
        sessions.sessionOpened.connect(self._on_session_opened)
        sessions.sessionActivated.connect(self._on_session_activated)
        sessions.sessionClosed.connect(self._on_session_closed)
        sessions.sessionLoaded.connect(self._on_session_loaded)
        annotations.annotationsChanged.connect(self._autosave_annotations)

    # --- Construction ---

    def _action(self, text: str, slot, shortcut: str | None = None) -> QAction:
        action = QAction(text, self)
        action.triggered.connect(slot)
        if shortcut:
            action.setShortcut(QKeySequence(shortcut))
        return action

    def _build_toolbar(self) -> None:
        toolbar = QToolBar("Main")
        toolbar.setMovable(False)
        self.addToolBar(toolbar)

        toolbar.addAction(self._action("Open Image...", self.open_image, "Ctrl+O"))
        toolbar.addAction(self._action("Open Pyramid...", self.open_pyramid, "Ctrl+Shift+O"))
        toolbar.addSeparator()

        tools = QActionGroup(self)
        tools.setExclusive(True)
        self.select_action = self._action("Select", lambda checked=False: self.set_draw_mode(False), "S")
        self.draw_action = self._action("Draw", lambda checked=False: self.set_draw_mode(True), "D")
        for action in (self.select_action, self.draw_action):
            action.setCheckable(True)
            tools.addAction(action)
            toolbar.addAction(action)
        self.select_action.setChecked(True)

        self.label_name = QLineEdit()
        self.label_name.setPlaceholderText("Label name")
        self.label_name.setMaximumWidth(160)
        self.label_name.textChanged.connect(self._sync_label_inputs)
        toolbar.addWidget(self.label_name)
        self.label_category = QComboBox()
        for category in Category:
            self.label_category.addItem(category.value.capitalize(), category)
        self.label_category.currentIndexChanged.connect(self._sync_label_inputs)
        toolbar.addWidget(self.label_category)
        toolbar.addSeparator()

        toolbar.addAction(self._action("Zoom In", self.zoom_in, "+"))
        toolbar.addAction(self._action("Zoom Out", self.zoom_out, "-"))
        toolbar.addAction(self._action("Reset View", self.reset_view, "0"))
        toolbar.addSeparator()

        grid_action = self._action("Grid", self.toggle_grid, "G")
        grid_action.setCheckable(True)
        grid_action.setChecked(self.settings.showGrid)
        toolbar.addAction(grid_action)
        minimap_action = self._action("Minimap", self.toggle_minimap, "M")
        minimap_action.setCheckable(True)
        minimap_action.setChecked(self.settings.showMinimap)
        toolbar.addAction(minimap_action)
        toolbar.addSeparator()

        toolbar.addAction(self._action("Open Tile...", self.open_tile_by_number, "Ctrl+T"))
        toolbar.addAction(self._action("Close All Tabs", self.close_all_tabs))
        toolbar.addAction(self._action("Clear Cache", self.clear_cache))
        toolbar.addSeparator()
        toolbar.addAction(self._action("Export Labels...", self.export_labels, "Ctrl+E"))
        toolbar.addAction(self._action("Import Labels...", self.import_labels, "Ctrl+I"))

    def _build_status_bar(self) -> None:
        self.zoom_label = QLabel("Zoom: 1.00x")
        self.position_label = QLabel("")
        self.progress = QProgressBar()
        self.progress.setRange(0, 100)
        self.progress.setMaximumWidth(220)
        self.progress.hide()
        status = self.statusBar()
        status.addPermanentWidget(self.position_label)
        status.addPermanentWidget(self.zoom_label)
        status.addPermanentWidget(self.progress)

    def notify(self, message: str, timeout_ms: int = 3000) -> None:
        self.statusBar().showMessage(message, timeout_ms)

    # --- Loading ---

    @Slot()
    def open_image(self, path: str | None = None) -> None:
        if not path:
            patterns = " ".join(f"*{ext}" for ext in sorted(IMAGE_EXTENSIONS))
            path, _ = QFileDialog.getOpenFileName(
                self, "Open Image", self.settings.lastImageDir, f"Images ({patterns})"
            )
            if not path:
                return
        if self._worker is not None and self._worker.isRunning():
            self.notify("A pyramid is already being built")
            return

        self.settings.lastImageDir = str(Path(path).parent)
        self.progress.setValue(0)
        self.progress.show()
        self._worker = BuildWorker(self.store, Path(path), self.settings.tileSize, self)
        self._worker.errorOccurred.connect(self._on_build_failed)
        self._worker.succeeded.connect(self._on_build_succeeded)
        self._worker.start()

    @Slot()
    def open_pyramid(self, path: str | None = None) -> bool:
        if not path:
            path = QFileDialog.getExistingDirectory(
                self, "Open Pyramid", self.settings.lastImageDir
            )
            if not path:
                return False
        try:
            self.store.load_manifest(path)
        except SourceLoadError as e:
            logger.error("Failed to open pyramid: %s", e)
            QMessageBox.warning(self, "Open Pyramid", str(e))
            return False
        self.settings.lastImageDir = str(Path(path).parent)
        return True

    def _on_build_progress(self, percentage: int, message: str) -> None:
        self.progress.setValue(percentage)
        self.statusBar().showMessage(message)

    def _on_build_succeeded(self, path: str) -> None:
        self.progress.hide()
        self.notify(f"Pyramid ready for {Path(path).name}")

    def _on_build_failed(self, message: str) -> None:
        self.progress.hide()
        self.statusBar().clearMessage()
        QMessageBox.warning(self, "Build Failed", message)

    def _on_pyramid_loaded(self) -> None:
        self.sessions.close_all()
        metadata = self.store.metadata
        self.tabs.setCurrentIndex(0)
        self.notify(
            f"{metadata.original_width}x{metadata.original_height} px, "
            f"{metadata.grid.rows}x{metadata.grid.cols} tiles, {metadata.zoom_levels} levels",
            5000,
        )

    # --- Sessions ---

    @Slot(int, int)
    def open_tile(self, row: int, col: int) -> None:
        if self.sessions.open_tile(row, col) is None:
            mapper = self.store.mapper
            if mapper is None:
                self.notify("No image loaded")
            else:
                self.notify(
                    f"Invalid tile: must be 0-{mapper.rows - 1} for row, "
                    f"0-{mapper.cols - 1} for col"
                )

    @Slot()
    def open_tile_by_number(self) -> None:
        text, ok = QInputDialog.getText(self, "Open Tile", "Tile (row, col):")
        if not ok:
            return
        try:
            row, col = (int(part) for part in text.replace(" ", "").split(","))
        except ValueError:
            self.notify("Please enter valid row and column numbers")
            return
        self.open_tile(row, col)

    def _on_session_opened(self, session_id: str) -> None:
        session = next(s for s in self.sessions.sessions() if s.session_id == session_id)
        canvas = DetailCanvas(session)
        canvas.set_draw_mode(self.draw_action.isChecked())
        canvas.zoomChanged.connect(self._show_zoom)
        canvas.labelCreated.connect(
            lambda _id, s=session: self.notify(f"Label created on tile [{s.row}, {s.col}]")
        )
        canvas.labelDeleted.connect(lambda _id: self.notify("Label deleted"))
        canvas.cursorMoved.connect(lambda x, y: self._show_position(x, y))
        self._canvases[session_id] = canvas
        self._sync_label_inputs()
        self.tabs.addTab(canvas, session.title)
        self.notify(f"Opened region [{session.row}, {session.col}] ({self.sessions.count} tabs open)")

    def _on_session_activated(self, session_id: str) -> None:
        canvas = self._canvases.get(session_id)
        if canvas is not None:
            self.tabs.setCurrentWidget(canvas)

    def _on_session_closed(self, session_id: str) -> None:
        canvas = self._canvases.pop(session_id, None)
        if canvas is not None:
            self.tabs.removeTab(self.tabs.indexOf(canvas))
            canvas.deleteLater()

    def _on_session_loaded(self, session_id: str) -> None:
        canvas = self._canvases.get(session_id)
        if canvas is None:
            return
        if canvas.session.load_failed:
            self.notify("Failed to load tile image", 5000)
        canvas.refresh()

    def _on_tab_close_requested(self, index: int) -> None:
        widget = self.tabs.widget(index)
        if isinstance(widget, DetailCanvas):
            self.sessions.close(widget.session.row, widget.session.col)

    def _on_current_tab_changed(self, index: int) -> None:
        widget = self.tabs.widget(index)
        if isinstance(widget, DetailCanvas):
            self.sessions.activate(widget.session.row, widget.session.col)
        if widget is not None:
            self._show_zoom(widget.controller.zoom)

    @Slot()
    def close_all_tabs(self) -> None:
        if self.sessions.count == 0:
            return
        answer = QMessageBox.question(self, "Close All", "Close all detail views?")
        if answer == QMessageBox.StandardButton.Yes:
            self.sessions.close_all()

    # --- Tools ---

    def _current_canvas(self):
        return self.tabs.currentWidget()

    def set_draw_mode(self, enabled: bool) -> None:
        for canvas in self._canvases.values():
            canvas.set_draw_mode(enabled)
        if enabled and not isinstance(self._current_canvas(), DetailCanvas):
            self.notify("Drawing is only available in tile tabs")

    def _sync_label_inputs(self) -> None:
        category = self.label_category.currentData() or Category.CUSTOM
        for canvas in self._canvases.values():
            canvas.label_name = self.label_name.text()
            canvas.label_category = category

    def zoom_in(self) -> None:
        self._current_canvas().zoom_in()

    def zoom_out(self) -> None:
        self._current_canvas().zoom_out()

    def reset_view(self) -> None:
        self._current_canvas().reset_view()

    def toggle_grid(self) -> None:
        self.settings.showGrid = not self.settings.showGrid
        self.overview.set_show_grid(self.settings.showGrid)

    def toggle_minimap(self) -> None:
        self.settings.showMinimap = not self.settings.showMinimap
        self.overview.set_show_minimap(self.settings.showMinimap)

    def _show_zoom(self, zoom: float) -> None:
        self.zoom_label.setText(f"Zoom: {zoom:.2f}x")

    def _show_position(self, x: int, y: int, tile: tuple[int, int] | None = None) -> None:
        text = f"Position: {x}, {y}"
        if tile is not None:
            text += f" | Tile [{tile[0]}, {tile[1]}]"
        self.position_label.setText(text)

    def _on_overview_cursor(self, x: int, y: int) -> None:
        self._show_position(x, y, self.overview.hover_tile)

    def _on_hover_tile(self, row: int, col: int) -> None:
        if row < 0:
            self.position_label.setText("")

    @Slot()
    def clear_cache(self) -> None:
        stats = self.store.cache.get_stats()
        self.store.cache.clear()
        self.notify(f"Cleared {stats['size']} cached tiles")

    # --- Labels ---

    def _autosave_annotations(self) -> None:
        if self.annotation_store is None or not self.annotations.isDirty:
            return
        try:
            self.annotations.save(self.annotation_store)
        except OSError as e:
            logger.error("Failed to save annotations: %s", e)

    @Slot()
    def export_labels(self) -> None:
        path, _ = QFileDialog.getSaveFileName(
            self, "Export Labels", "tile_labels.json", "JSON (*.json)"
        )
        if not path:
            return
        try:
            self.annotations.export_to_file(path, self.store.image_data())
        except OSError as e:
            QMessageBox.warning(self, "Export Labels", str(e))
            return
        self.notify(f"Exported {self.annotations.count} labels")

    @Slot()
    def import_labels(self) -> None:
        path, _ = QFileDialog.getOpenFileName(self, "Import Labels", "", "JSON (*.json)")
        if not path:
            return
        try:
            imported = self.annotations.import_from_file(path)
        except (OSError, ValueError) as e:
            logger.error("Import error: %s", e)
            QMessageBox.warning(self, "Import Labels", "Error importing labels")
            return
        self.notify(f"Imported {imported} labels from {self.annotations.labelled_tile_count} tiles")

    def closeEvent(self, event) -> None:
        if self._worker is not None and self._worker.isRunning():
            self._worker.wait()
        self.store.close()
        super().closeEvent(event)


def run_app(args: list[str] | None = None) -> int:
    """Run the GigaView viewer application.

    Args:
        args: Command line arguments (defaults to sys.argv); an optional
            first argument names an image file or pyramid directory

    Returns:
        Exit code
    """
    if args is None:
        args = sys.argv

    app = QApplication(args)
    app.setApplicationName("GigaView")
    app.setOrganizationName("GigaView")
    app.setStyle("Fusion")

    store = PyramidStore()
    annotation_manager = AnnotationManager()
    sessions = SessionManager(store, annotation_manager)
    settings = Settings()

    data_dir = Path(QStandardPaths.writableLocation(QStandardPaths.StandardLocation.AppDataLocation))
    annotation_store = JsonAnnotationStore(data_dir / "annotations.json")
    annotation_manager.load(annotation_store)

    window = MainWindow(store, annotation_manager, sessions, settings, annotation_store)
    window.show()

    if len(args) > 1:
        target = Path(args[1])
        if target.is_dir():
            window.open_pyramid(str(target))
        else:
            window.open_image(str(target))

    return app.exec()
