"""Decoded tile cache with load-once semantics."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Executor, Future
from typing import Callable

from .errors import TileDecodeError
from .types import Raster, TileKey

logger = logging.getLogger(__name__)

#: Produces the decoded raster for one key, or None if the tile is absent
TileLoader = Callable[[], "Raster | None"]


class TileCache:
    """Insertion-ordered map of ``TileKey`` to decoded rasters.

    Concurrent requests for a key share the first in-flight load, and a
    successful load is kept until evicted or cleared. Failed loads resolve to
    None and are not cached; the next request retries them.

    Cached rasters are marked read-only and handed out as-is, never copied.
    Nothing is evicted implicitly; ``evict`` and ``trim`` let callers apply a
    memory policy.
    """

    def __init__(self) -> None:
        self._tiles: OrderedDict[TileKey, Raster] = OrderedDict()
        self._pending: dict[TileKey, Future] = {}
        self._lock = threading.Lock()
        # Bumped by clear(); loads from an older generation never insert
        self._generation = 0
        self._hits = 0
        self._misses = 0
        self._loads = 0
        self._failures = 0

    def __len__(self) -> int:
        return len(self._tiles)

    def __contains__(self, key: object) -> bool:
        return key in self._tiles

    def size(self) -> int:
        """Number of cached tiles."""
        with self._lock:
            return len(self._tiles)

    def keys(self) -> list[TileKey]:
        """Cached keys, oldest first."""
        with self._lock:
            return list(self._tiles)

    def get(self, key: TileKey) -> Raster | None:
        """Cached raster for ``key``, or None. Never triggers a load."""
        with self._lock:
            raster = self._tiles.get(key)
            if raster is None:
                self._misses += 1
            else:
                self._hits += 1
            return raster

    def is_pending(self, key: TileKey) -> bool:
        with self._lock:
            return key in self._pending

    def get_or_load(self, key: TileKey, loader: TileLoader) -> Raster | None:
        """Return the cached raster, loading it on this thread if needed.

        If another thread is already loading ``key`` this call waits for that
        load instead of starting a second one.
        """
        future, owner, generation = self._claim(key)
        if owner:
            self._run(key, loader, future, generation)
        return future.result()

    def load_async(self, key: TileKey, loader: TileLoader, executor: Executor) -> Future:
        """Load ``key`` on ``executor``.

        Returns:
            Future resolving to the raster or None. Already cached keys give an
            already-completed future.
        """
        future, owner, generation = self._claim(key)
        if owner:
            try:
                executor.submit(self._run, key, loader, future, generation)
            except RuntimeError as e:
                # Executor shut down; resolve as a miss
                logger.warning("Cannot schedule tile %s: %s", key, e)
                with self._lock:
                    if self._pending.get(key) is future:
                        del self._pending[key]
                future.set_result(None)
        return future

    def _claim(self, key: TileKey) -> tuple[Future, bool, int]:
        """Find or register the load for ``key``.

        Returns:
            (future, whether the caller must run the loader, generation)
        """
        with self._lock:
            generation = self._generation
            raster = self._tiles.get(key)
            if raster is not None:
                self._hits += 1
                done: Future = Future()
                done.set_result(raster)
                return done, False, generation

            pending = self._pending.get(key)
            if pending is not None:
                return pending, False, generation

            self._misses += 1
            future: Future = Future()
            self._pending[key] = future
            return future, True, generation

    def _run(self, key: TileKey, loader: TileLoader, future: Future, generation: int) -> None:
        raster: Raster | None
        try:
            raster = loader()
        except TileDecodeError as e:
            logger.warning("Tile decode failed: %s", e)
            raster = None
        except OSError as e:
            logger.warning("Failed to read tile %s: %s", key, e)
            raster = None
        except Exception as e:
            logger.warning("Failed to load tile %s: %s", key, e)
            raster = None

        if raster is not None:
            raster.flags.writeable = False

        with self._lock:
            self._loads += 1
            if raster is None:
                self._failures += 1
            elif generation == self._generation:
                self._tiles[key] = raster
            else:
                logger.debug("Dropping tile %s loaded before cache clear", key)
            if self._pending.get(key) is future:
                del self._pending[key]

        future.set_result(raster)

    def evict(self, key: TileKey) -> bool:
        """Drop one cached tile so the next request reloads it."""
        with self._lock:
            return self._tiles.pop(key, None) is not None

    def trim(self, max_tiles: int) -> int:
        """Evict the oldest tiles until at most ``max_tiles`` remain.

        Returns:
            Number of tiles evicted
        """
        if max_tiles < 0:
            raise ValueError(f"max_tiles must be >= 0, got {max_tiles}")
        evicted = 0
        with self._lock:
            while len(self._tiles) > max_tiles:
                self._tiles.popitem(last=False)
                evicted += 1
        if evicted:
            logger.debug("Trimmed %d tiles from cache", evicted)
        return evicted

    def clear(self) -> None:
        """Drop every tile. In-flight loads finish but do not insert."""
        with self._lock:
            self._tiles.clear()
            self._pending.clear()
            self._generation += 1

    def get_stats(self) -> dict:
        """Return cache counters for diagnostics."""
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "loads": self._loads,
                "size": len(self._tiles),
                "failed": self._failures,
                "pending": len(self._pending),
            }
