"""Exceptions raised by the GigaView core.

Per-tile failures (``TileDecodeError``) and grid lookups outside the tile grid
(``GeometryError``) are recovered close to where they happen and surface as
"no tile". Source and build failures abort the whole operation.
"""

from __future__ import annotations

from pathlib import Path


class GigaViewError(Exception):
    """Base exception for all GigaView errors."""


class SourceLoadError(GigaViewError):
    """Raised when a source image cannot be used.

    This error is raised when:
    - The file does not exist or cannot be decoded
    - The file exceeds the configured size ceiling
    - The raster dimensions do not match the declared size
    """

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else None
        self.message = message
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.path:
            return f"{self.message} (path: {self.path})"
        return self.message


class TileDecodeError(GigaViewError):
    """Raised when a single tile cannot be rasterized."""

    def __init__(self, message: str, *, level: int, row: int, col: int) -> None:
        self.level = level
        self.row = row
        self.col = col
        super().__init__(f"{message} (level={level}, row={row}, col={col})")


class GeometryError(GigaViewError):
    """Raised when a computed tile address falls outside the tile grid."""

    def __init__(self, row: int, col: int, rows: int, cols: int) -> None:
        self.row = row
        self.col = col
        self.rows = rows
        self.cols = cols
        super().__init__(
            f"Tile [{row}, {col}] is outside the {rows}x{cols} grid"
        )


class PyramidBuildError(GigaViewError):
    """Terminal pyramid build failure.

    Attributes:
        stage: Build stage reached when the failure happened
            (``load``, ``overview``, ``levels``, ``level_<n>``, ``write``)
    """

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        self.message = message
        super().__init__(f"Pyramid build failed during '{stage}': {message}")
