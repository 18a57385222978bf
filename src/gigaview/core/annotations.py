"""Annotation management with spatial indexing.

Annotations live in sets keyed by where their coordinates are anchored:

- ``"global"``: overview world space
- ``"{row}_{col}"``: tile-local space of one finest-level tile

A label's coordinate space is fixed when it is created and never rescaled.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Protocol

from PySide6.QtCore import QObject, Signal, Slot, Property
from rtree import index

from gigaview.config import DEFAULT_LABEL_NAME, GLOBAL_ANNOTATION_KEY

from .paths import atomic_json_save, to_local_path

logger = logging.getLogger(__name__)


class Category(str, Enum):
    """Label categories. Unknown values map to ``CUSTOM``."""

    STAR = "star"
    GALAXY = "galaxy"
    CRATER = "crater"
    FEATURE = "feature"
    CUSTOM = "custom"

    @property
    def color(self) -> str:
        return CATEGORY_COLORS[self]

    @classmethod
    def parse(cls, value: str | Category | None) -> Category:
        try:
            return cls(value)
        except ValueError:
            logger.debug("Unknown category %r, using custom", value)
            return cls.CUSTOM


CATEGORY_COLORS: dict[Category, str] = {
    Category.STAR: "#fbbf24",
    Category.GALAXY: "#a78bfa",
    Category.CRATER: "#f87171",
    Category.FEATURE: "#4a9eff",
    Category.CUSTOM: "#10b981",
}


def tile_key(row: int, col: int) -> str:
    """Annotation set key of a tile."""
    return f"{row}_{col}"


def parse_tile_key(key: str) -> tuple[int, int] | None:
    """Inverse of ``tile_key``; None for ``"global"`` or malformed keys."""
    parts = key.split("_")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Annotation:
    """A labelled box in the coordinate space of its set."""

    id: str
    name: str
    category: Category
    x: float
    y: float
    width: float
    height: float
    color: str = ""
    tile_row: int | None = None
    tile_col: int | None = None
    auto_detected: bool = False
    timestamp: str = field(default_factory=_now_iso)

    def __post_init__(self) -> None:
        self.category = Category.parse(self.category)
        if not self.color:
            self.color = self.category.color

    def bounds(self) -> tuple[float, float, float, float]:
        """Get bounding box (minx, miny, maxx, maxy)."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x <= self.x + self.width and self.y <= y <= self.y + self.height

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "color": self.color,
            "timestamp": self.timestamp,
        }
        if self.tile_row is not None:
            data["tileRow"] = self.tile_row
            data["tileCol"] = self.tile_col
        if self.auto_detected:
            data["auto_detected"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Annotation:
        """Parse a stored label. Accepts camelCase or snake_case tile fields.

        Raises:
            KeyError, TypeError, ValueError: On missing or malformed fields
        """
        tile_row = data.get("tileRow", data.get("tile_row"))
        tile_col = data.get("tileCol", data.get("tile_col"))
        return cls(
            id=str(data["id"]),
            name=data.get("name") or DEFAULT_LABEL_NAME,
            category=Category.parse(data.get("category")),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
            color=data.get("color", ""),
            tile_row=int(tile_row) if tile_row is not None else None,
            tile_col=int(tile_col) if tile_col is not None else None,
            auto_detected=bool(data.get("auto_detected", data.get("autoDetected", False))),
            timestamp=data.get("timestamp") or _now_iso(),
        )


class AnnotationSet:
    """Annotations of one coordinate space, indexed with an R-tree."""

    def __init__(self, key: str) -> None:
        self.key = key
        self._annotations: dict[str, Annotation] = {}
        self._index = index.Index()
        # R-tree requires integer IDs for insert/delete
        self._next_rtree_id = 0
        self._id_to_rtree: dict[str, int] = {}
        self._index_lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._annotations)

    def __iter__(self) -> Iterator[Annotation]:
        return iter(list(self._annotations.values()))

    def __contains__(self, ann_id: object) -> bool:
        return ann_id in self._annotations

    def get(self, ann_id: str) -> Annotation | None:
        return self._annotations.get(ann_id)

    def add(self, annotation: Annotation) -> None:
        with self._index_lock:
            if annotation.id in self._annotations:
                self._remove_locked(annotation.id)
            rtree_id = self._next_rtree_id
            self._next_rtree_id += 1
            self._id_to_rtree[annotation.id] = rtree_id
            self._index.insert(rtree_id, annotation.bounds(), obj=annotation.id)
            self._annotations[annotation.id] = annotation

    def remove(self, ann_id: str) -> Annotation | None:
        with self._index_lock:
            return self._remove_locked(ann_id)

    def _remove_locked(self, ann_id: str) -> Annotation | None:
        annotation = self._annotations.pop(ann_id, None)
        if annotation is None:
            return None
        rtree_id = self._id_to_rtree.pop(ann_id, None)
        if rtree_id is not None:
            self._index.delete(rtree_id, annotation.bounds())
        else:
            logger.warning("Missing R-tree ID for annotation %s during removal", ann_id)
        return annotation

    def query(self, x: float, y: float, width: float, height: float) -> list[Annotation]:
        """Annotations intersecting a rectangle, in insertion order."""
        with self._index_lock:
            hits = {hit.object for hit in self._index.intersection(
                (x, y, x + width, y + height), objects=True
            )}
        return [a for a in self._annotations.values() if a.id in hits]

    def hit_test(self, x: float, y: float) -> list[Annotation]:
        """Annotations containing a point, most recently added first."""
        return [a for a in reversed(self.query(x, y, 0.0, 0.0)) if a.contains(x, y)]

    def to_list(self) -> list[dict]:
        return [a.to_dict() for a in self._annotations.values()]

    def clear(self) -> None:
        with self._index_lock:
            self._annotations.clear()
            self._index = index.Index()
            self._id_to_rtree.clear()
            self._next_rtree_id = 0


class AnnotationStore(Protocol):
    """Persistence for all annotation sets, keyed by tile key or ``"global"``."""

    def save_annotations(self, all_sets: dict[str, list[dict]]) -> None: ...

    def load_annotations(self) -> dict[str, list[dict]]: ...


class JsonAnnotationStore:
    """Stores every annotation set in one JSON file."""

    def __init__(self, path: Path | str) -> None:
        self.path = to_local_path(path)

    def save_annotations(self, all_sets: dict[str, list[dict]]) -> None:
        atomic_json_save(self.path, {"sets": all_sets})

    def load_annotations(self) -> dict[str, list[dict]]:
        """Read the stored sets.

        Returns:
            Sets keyed by set key; empty if the file does not exist

        Raises:
            ValueError: If the file is not a valid annotation document
        """
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {self.path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("sets"), dict):
            raise ValueError(f"Missing 'sets' in annotation file: {self.path}")
        return data["sets"]


class AnnotationManager(QObject):
    """Owns the global set and every per-tile set.

    Signals carry ``(set_key, annotation_id)``.
    """

    annotationsChanged = Signal()
    annotationAdded = Signal(str, str)
    annotationRemoved = Signal(str, str)
    annotationModified = Signal(str, str)

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._sets: dict[str, AnnotationSet] = {}
        self._id_counter = 0
        self._dirty = False

    @Property(int, notify=annotationsChanged)
    def count(self) -> int:
        """Number of annotations across all sets."""
        return sum(len(s) for s in self._sets.values())

    @Property(bool, notify=annotationsChanged)
    def isDirty(self) -> bool:
        """Whether annotations have unsaved changes."""
        return self._dirty

    @property
    def labelled_tile_count(self) -> int:
        """Number of tiles with at least one annotation."""
        return sum(
            1 for key, s in self._sets.items() if key != GLOBAL_ANNOTATION_KEY and len(s)
        )

    def keys(self) -> list[str]:
        return list(self._sets)

    def annotation_set(self, key: str) -> AnnotationSet:
        """Set for ``key``, created empty on first use."""
        ann_set = self._sets.get(key)
        if ann_set is None:
            ann_set = self._sets[key] = AnnotationSet(key)
        return ann_set

    def annotations(self, key: str) -> list[Annotation]:
        ann_set = self._sets.get(key)
        return list(ann_set) if ann_set is not None else []

    def _generate_id(self) -> str:
        self._id_counter += 1
        return f"ann_{self._id_counter:06d}"

    def add(
        self,
        key: str,
        x: float,
        y: float,
        width: float,
        height: float,
        name: str = "",
        category: Category | str = Category.CUSTOM,
        auto_detected: bool = False,
    ) -> Annotation:
        """Create a label in set ``key``.

        Tile sets record their tile address on the label.
        """
        tile = parse_tile_key(key)
        annotation = Annotation(
            id=self._generate_id(),
            name=name or DEFAULT_LABEL_NAME,
            category=Category.parse(category),
            x=x,
            y=y,
            width=width,
            height=height,
            tile_row=tile[0] if tile else None,
            tile_col=tile[1] if tile else None,
            auto_detected=auto_detected,
        )
        self.annotation_set(key).add(annotation)

        self._dirty = True
        self.annotationAdded.emit(key, annotation.id)
        self.annotationsChanged.emit()
        return annotation

    def add_global(self, x: float, y: float, width: float, height: float, **kwargs) -> Annotation:
        """Create a label in overview world space."""
        return self.add(GLOBAL_ANNOTATION_KEY, x, y, width, height, **kwargs)

    def add_to_tile(
        self, row: int, col: int, x: float, y: float, width: float, height: float, **kwargs
    ) -> Annotation:
        """Create a label in a tile's local space."""
        return self.add(tile_key(row, col), x, y, width, height, **kwargs)

    def find(self, ann_id: str) -> tuple[str, Annotation] | None:
        for key, ann_set in self._sets.items():
            annotation = ann_set.get(ann_id)
            if annotation is not None:
                return key, annotation
        return None

    @Slot(str, result=bool)
    def remove(self, ann_id: str) -> bool:
        """Remove an annotation from whichever set holds it."""
        found = self.find(ann_id)
        if found is None:
            return False
        key, _ = found
        self._sets[key].remove(ann_id)

        self._dirty = True
        self.annotationRemoved.emit(key, ann_id)
        self.annotationsChanged.emit()
        return True

    def update(
        self, ann_id: str, name: str | None = None, category: Category | str | None = None
    ) -> bool:
        """Rename and/or recategorise a label. Recategorising resets its colour."""
        found = self.find(ann_id)
        if found is None:
            return False
        key, annotation = found
        if name is not None:
            annotation.name = name or DEFAULT_LABEL_NAME
        if category is not None:
            annotation.category = Category.parse(category)
            annotation.color = annotation.category.color

        self._dirty = True
        self.annotationModified.emit(key, ann_id)
        self.annotationsChanged.emit()
        return True

    def query(self, key: str, x: float, y: float, width: float, height: float) -> list[Annotation]:
        """Annotations of set ``key`` intersecting a rectangle."""
        ann_set = self._sets.get(key)
        return ann_set.query(x, y, width, height) if ann_set is not None else []

    def hit_test(self, key: str, x: float, y: float) -> list[Annotation]:
        ann_set = self._sets.get(key)
        return ann_set.hit_test(x, y) if ann_set is not None else []

    def to_dict(self) -> dict[str, list[dict]]:
        """All non-empty sets as plain data."""
        return {key: s.to_list() for key, s in self._sets.items() if len(s)}

    def _replace_all(self, all_sets: dict[str, list[dict]]) -> int:
        # Parse everything first so a bad document leaves the current sets intact
        parsed: dict[str, list[Annotation]] = {}
        max_id_num = 0
        for key, items in all_sets.items():
            annotations = []
            for item in items:
                try:
                    annotation = Annotation.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed annotation in %s: %s", key, e)
                    continue
                annotations.append(annotation)
                if annotation.id.startswith("ann_"):
                    try:
                        max_id_num = max(max_id_num, int(annotation.id[4:]))
                    except ValueError:
                        logger.debug("Non-numeric annotation ID suffix: %s", annotation.id)
            parsed[str(key)] = annotations

        for ann_set in self._sets.values():
            ann_set.clear()
        self._sets.clear()
        total = 0
        for key, annotations in parsed.items():
            ann_set = self.annotation_set(key)
            for annotation in annotations:
                ann_set.add(annotation)
            total += len(annotations)
        self._id_counter = max(self._id_counter, max_id_num)
        return total

    def save(self, store: AnnotationStore) -> None:
        store.save_annotations(self.to_dict())
        self._dirty = False
        self.annotationsChanged.emit()

    def load(self, store: AnnotationStore) -> bool:
        """Replace all sets with the store's content.

        Returns:
            False (keeping the current sets) if the store cannot be read
        """
        try:
            all_sets = store.load_annotations()
        except (OSError, ValueError) as e:
            logger.error("Failed to load annotations: %s", e)
            return False

        count = self._replace_all(all_sets)
        logger.info("Loaded %d annotations in %d sets", count, len(self._sets))
        self._dirty = False
        self.annotationsChanged.emit()
        return True

    def export_document(self, image_data: dict | None = None) -> dict:
        """Export document: global labels, tile labels and summary metadata.

        Args:
            image_data: Optional ``{"source": ..., "dimensions": {"width", "height"}}``
        """
        tile_labels = {
            key: s.to_list()
            for key, s in self._sets.items()
            if key != GLOBAL_ANNOTATION_KEY and len(s)
        }
        return {
            "labels": [a.to_dict() for a in self.annotations(GLOBAL_ANNOTATION_KEY)],
            "tileLabels": tile_labels,
            "metadata": {
                "totalTiles": len(tile_labels),
                "totalLabels": sum(len(v) for v in tile_labels.values()),
                "exportDate": _now_iso(),
                "imageData": image_data,
            },
        }

    def import_document(self, data: dict) -> int:
        """Replace tile labels (and global labels when present) from an export.

        Returns:
            Number of tile labels imported

        Raises:
            ValueError: If the document has no ``tileLabels``
        """
        if not isinstance(data, dict) or not isinstance(data.get("tileLabels"), dict):
            raise ValueError("Invalid label file format")

        all_sets = dict(data["tileLabels"])
        if isinstance(data.get("labels"), list):
            all_sets[GLOBAL_ANNOTATION_KEY] = data["labels"]
        else:
            all_sets[GLOBAL_ANNOTATION_KEY] = self.to_dict().get(GLOBAL_ANNOTATION_KEY, [])

        self._replace_all(all_sets)
        imported = sum(
            len(s) for key, s in self._sets.items() if key != GLOBAL_ANNOTATION_KEY
        )
        self._dirty = True
        self.annotationsChanged.emit()
        return imported

    def export_to_file(self, path: Path | str, image_data: dict | None = None) -> None:
        atomic_json_save(to_local_path(path), self.export_document(image_data))

    def import_from_file(self, path: Path | str) -> int:
        """Import an export document from disk.

        Raises:
            OSError: If the file cannot be read
            ValueError: If it is not a valid export document
        """
        path = to_local_path(path)
        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e
        return self.import_document(data)

    @Slot()
    def clear(self) -> None:
        """Remove every annotation."""
        for ann_set in self._sets.values():
            ann_set.clear()
        self._sets.clear()
        self._dirty = True
        self.annotationsChanged.emit()
