"""Tile stores holding encoded pyramid tiles.

The pyramid builder writes each emitted tile into a store; the tile cache later
reads and decodes them on demand. Two layouts exist:

- ``MemoryTileStore`` keeps encoded JPEG bytes per tile for a pyramid built
  from an uploaded image during the session.
- ``DirectoryTileStore`` reads/writes the on-disk manifest layout
  ``tiles/zoom_{level}/tile_{row}_{col}.jpg``.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from gigaview.core.types import TileKey

logger = logging.getLogger(__name__)


class TileStore(Protocol):
    """Write/read interface for encoded tiles."""

    def put(self, key: TileKey, data: bytes) -> None: ...

    def read(self, key: TileKey) -> bytes | None: ...


def tile_relpath(key: TileKey) -> Path:
    """Relative path of a tile inside a pyramid directory."""
    return Path("tiles") / f"zoom_{key.level}" / f"tile_{key.row}_{key.col}.jpg"


class MemoryTileStore:
    """Encoded tiles kept in process memory."""

    def __init__(self) -> None:
        self._tiles: dict[TileKey, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: TileKey, data: bytes) -> None:
        with self._lock:
            self._tiles[key] = data

    def read(self, key: TileKey) -> bytes | None:
        with self._lock:
            return self._tiles.get(key)

    def __len__(self) -> int:
        return len(self._tiles)

    def __contains__(self, key: object) -> bool:
        return key in self._tiles

    @property
    def nbytes(self) -> int:
        """Total encoded size of all stored tiles."""
        with self._lock:
            return sum(len(data) for data in self._tiles.values())


class DirectoryTileStore:
    """Tiles stored as individual JPEG files under a pyramid directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, key: TileKey) -> Path:
        return self.root / tile_relpath(key)

    def put(self, key: TileKey, data: bytes) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def read(self, key: TileKey) -> bytes | None:
        """Read a tile file.

        Returns:
            Encoded bytes, or None if the file does not exist
        """
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            logger.debug("Tile file not found: %s", path)
            return None
