"""QSettings wrapper for persisting user preferences."""

from __future__ import annotations

from PySide6.QtCore import QObject, QSettings, Signal, Property

from gigaview.config import DEFAULT_TILE_SIZE


class Settings(QObject):
    """QSettings wrapper for persisting viewer preferences.

    Settings are persisted between application sessions.
    """

    showGridChanged = Signal()
    showMinimapChanged = Signal()
    tileSizeChanged = Signal()
    lastImageDirChanged = Signal()

    def __init__(self, parent: QObject | None = None, settings: QSettings | None = None) -> None:
        super().__init__(parent)
        self._settings = settings or QSettings("GigaView", "GigaView")

    @Property(bool, notify=showGridChanged)
    def showGrid(self) -> bool:
        return self._settings.value("viewer/showGrid", True, bool)

    @showGrid.setter
    def showGrid(self, value: bool) -> None:
        if self.showGrid != value:
            self._settings.setValue("viewer/showGrid", value)
            self.showGridChanged.emit()

    @Property(bool, notify=showMinimapChanged)
    def showMinimap(self) -> bool:
        return self._settings.value("viewer/showMinimap", True, bool)

    @showMinimap.setter
    def showMinimap(self, value: bool) -> None:
        if self.showMinimap != value:
            self._settings.setValue("viewer/showMinimap", value)
            self.showMinimapChanged.emit()

    # Tile size used when building a pyramid from an opened image
    @Property(int, notify=tileSizeChanged)
    def tileSize(self) -> int:
        return self._settings.value("preprocess/tileSize", DEFAULT_TILE_SIZE, int)

    @tileSize.setter
    def tileSize(self, value: int) -> None:
        if self.tileSize != value:
            self._settings.setValue("preprocess/tileSize", value)
            self.tileSizeChanged.emit()

    @Property(str, notify=lastImageDirChanged)
    def lastImageDir(self) -> str:
        return self._settings.value("viewer/lastImageDir", "", str)

    @lastImageDir.setter
    def lastImageDir(self, value: str) -> None:
        if self.lastImageDir != value:
            self._settings.setValue("viewer/lastImageDir", value)
            self.lastImageDirChanged.emit()
