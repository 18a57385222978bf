"""Tests for the annotation system."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from gigaview.core.annotations import (
    Annotation,
    AnnotationManager,
    AnnotationSet,
    Category,
    JsonAnnotationStore,
    parse_tile_key,
    tile_key,
)


def _ann(ann_id: str, x: float, y: float, w: float = 10, h: float = 10, **kwargs) -> Annotation:
    return Annotation(id=ann_id, name=ann_id, category=Category.STAR, x=x, y=y,
                      width=w, height=h, **kwargs)


class TestCategory:
    """Tests for label categories."""

    def test_colors(self):
        """Every category has a fixed colour."""
        assert Category.STAR.color == "#fbbf24"
        assert Category.CUSTOM.color == "#10b981"
        assert all(c.color.startswith("#") for c in Category)

    def test_unknown_category_is_custom(self):
        assert Category.parse("nebula") is Category.CUSTOM
        assert Category.parse(None) is Category.CUSTOM
        assert Category.parse("galaxy") is Category.GALAXY


class TestTileKeys:
    def test_round_trip(self):
        assert tile_key(3, 14) == "3_14"
        assert parse_tile_key("3_14") == (3, 14)

    def test_global_is_not_a_tile(self):
        assert parse_tile_key("global") is None
        assert parse_tile_key("a_b") is None


class TestAnnotation:
    """Tests for the Annotation dataclass."""

    def test_default_color_from_category(self):
        """Labels without a colour take their category's."""
        ann = Annotation(id="a", name="Vega", category="star", x=0, y=0, width=5, height=5)
        assert ann.category is Category.STAR
        assert ann.color == Category.STAR.color

    def test_bounds_and_contains(self):
        ann = _ann("a", 10, 20, 30, 40)
        assert ann.bounds() == (10, 20, 40, 60)
        assert ann.contains(40, 60)
        assert not ann.contains(41, 60)

    def test_to_dict_camel_case_tile_fields(self):
        """Tile labels serialize their address as tileRow/tileCol."""
        data = _ann("a", 1, 2, tile_row=3, tile_col=4).to_dict()
        assert data["tileRow"] == 3
        assert data["tileCol"] == 4
        assert "auto_detected" not in data

    def test_from_dict_accepts_both_cases(self):
        base = {"id": "a", "x": 1, "y": 2, "width": 3, "height": 4}
        assert Annotation.from_dict({**base, "tileRow": 1, "tileCol": 2}).tile_row == 1
        assert Annotation.from_dict({**base, "tile_row": 5, "tile_col": 6}).tile_col == 6

    def test_from_dict_defaults(self):
        """Missing name and category fall back to defaults."""
        ann = Annotation.from_dict({"id": "a", "x": 1, "y": 2, "width": 3, "height": 4})
        assert ann.name == "Unlabeled"
        assert ann.category is Category.CUSTOM
        assert ann.timestamp

    def test_from_dict_missing_field(self):
        with pytest.raises(KeyError):
            Annotation.from_dict({"id": "a", "x": 1})


class TestAnnotationSet:
    """Tests for the R-tree backed set."""

    def test_query_intersection(self):
        """Only annotations intersecting the rectangle are returned, in insertion order."""
        s = AnnotationSet("0_0")
        s.add(_ann("a", 0, 0))
        s.add(_ann("b", 100, 100))
        s.add(_ann("c", 5, 5))

        assert [a.id for a in s.query(0, 0, 20, 20)] == ["a", "c"]
        assert s.query(500, 500, 10, 10) == []

    def test_hit_test_most_recent_first(self):
        s = AnnotationSet("0_0")
        s.add(_ann("a", 0, 0, 50, 50))
        s.add(_ann("b", 10, 10, 50, 50))
        assert [a.id for a in s.hit_test(20, 20)] == ["b", "a"]
        assert [a.id for a in s.hit_test(55, 55)] == ["b"]

    def test_remove(self):
        """Removed annotations disappear from queries."""
        s = AnnotationSet("global")
        s.add(_ann("a", 0, 0))
        assert s.remove("a").id == "a"
        assert s.remove("a") is None
        assert s.query(0, 0, 20, 20) == []
        assert len(s) == 0

    def test_add_replaces_same_id(self):
        """Re-adding an ID replaces the old geometry in the index."""
        s = AnnotationSet("global")
        s.add(_ann("a", 0, 0))
        s.add(_ann("a", 200, 200))
        assert len(s) == 1
        assert s.query(0, 0, 20, 20) == []
        assert [a.id for a in s.query(195, 195, 10, 10)] == ["a"]


class TestAnnotationManager:
    """Tests for AnnotationManager."""

    def test_add_to_tile(self, qapp):
        """Tile labels record their tile and live in the tile's set."""
        manager = AnnotationManager()
        added = []
        manager.annotationAdded.connect(lambda key, ann_id: added.append((key, ann_id)))

        ann = manager.add_to_tile(1, 2, 10, 20, 30, 40, name="Crater A", category="crater")

        assert ann.id == "ann_000001"
        assert (ann.tile_row, ann.tile_col) == (1, 2)
        assert ann.color == Category.CRATER.color
        assert added == [("1_2", "ann_000001")]
        assert manager.annotations("1_2") == [ann]
        assert manager.count == 1
        assert manager.isDirty

    def test_add_global(self, qapp):
        manager = AnnotationManager()
        ann = manager.add_global(5, 5, 50, 50)
        assert ann.tile_row is None
        assert ann.name == "Unlabeled"
        assert manager.labelled_tile_count == 0

    def test_sets_are_independent(self, qapp):
        """Labels at the same coordinates in different tiles do not mix."""
        manager = AnnotationManager()
        manager.add_to_tile(0, 0, 10, 10, 20, 20)
        manager.add_to_tile(0, 1, 10, 10, 20, 20)
        assert len(manager.query("0_0", 0, 0, 100, 100)) == 1
        assert len(manager.hit_test("0_1", 15, 15)) == 1
        assert manager.labelled_tile_count == 2
        assert manager.query("5_5", 0, 0, 100, 100) == []

    def test_remove(self, qapp):
        manager = AnnotationManager()
        removed = []
        manager.annotationRemoved.connect(lambda key, ann_id: removed.append(ann_id))
        ann = manager.add_to_tile(0, 0, 0, 0, 10, 10)

        assert manager.remove(ann.id) is True
        assert manager.remove(ann.id) is False
        assert removed == [ann.id]
        assert manager.count == 0

    def test_update(self, qapp):
        """Changing the category resets the colour."""
        manager = AnnotationManager()
        ann = manager.add_to_tile(0, 0, 0, 0, 10, 10, category="star")
        assert manager.update(ann.id, name="M31", category="galaxy")
        assert ann.name == "M31"
        assert ann.color == Category.GALAXY.color
        assert manager.update("missing", name="x") is False

    def test_save_and_load(self, qapp, temp_dir: Path):
        """Sets survive a save/load cycle through the JSON store."""
        store = JsonAnnotationStore(temp_dir / "annotations.json")
        manager = AnnotationManager()
        manager.add_global(1, 2, 3, 4, name="Overview")
        manager.add_to_tile(2, 3, 10, 10, 20, 20, name="Tile")
        manager.save(store)
        assert not manager.isDirty

        restored = AnnotationManager()
        assert restored.load(store)
        assert restored.count == 2
        assert restored.annotations("2_3")[0].name == "Tile"
        # New IDs continue after the loaded ones
        assert restored.add_global(0, 0, 1, 1).id == "ann_000003"

    def test_load_missing_file(self, qapp, temp_dir: Path):
        """A missing file loads as empty."""
        manager = AnnotationManager()
        assert manager.load(JsonAnnotationStore(temp_dir / "none.json"))
        assert manager.count == 0

    def test_load_invalid_file_keeps_state(self, qapp, temp_dir: Path):
        """A malformed file is rejected and current labels stay."""
        path = temp_dir / "bad.json"
        path.write_text("[1, 2, 3]")
        manager = AnnotationManager()
        manager.add_global(0, 0, 10, 10)
        assert manager.load(JsonAnnotationStore(path)) is False
        assert manager.count == 1

    def test_clear(self, qapp):
        manager = AnnotationManager()
        manager.add_global(0, 0, 10, 10)
        manager.add_to_tile(0, 0, 0, 0, 10, 10)
        manager.clear()
        assert manager.count == 0
        assert manager.keys() == []


class TestExportImport:
    """Tests for the label export document."""

    def test_export_document(self, qapp):
        manager = AnnotationManager()
        manager.add_global(0, 0, 10, 10)
        manager.add_to_tile(0, 0, 1, 1, 10, 10)
        manager.add_to_tile(0, 0, 5, 5, 10, 10)
        manager.add_to_tile(1, 1, 1, 1, 10, 10)

        doc = manager.export_document({"source": "m31.tif"})

        assert len(doc["labels"]) == 1
        assert set(doc["tileLabels"]) == {"0_0", "1_1"}
        assert doc["metadata"]["totalTiles"] == 2
        assert doc["metadata"]["totalLabels"] == 3
        assert doc["metadata"]["imageData"] == {"source": "m31.tif"}
        assert doc["metadata"]["exportDate"]

    def test_export_import_file(self, qapp, temp_dir: Path):
        """Exported files import into a fresh manager."""
        source = AnnotationManager()
        source.add_to_tile(0, 1, 1, 1, 10, 10, name="A")
        source.add_to_tile(2, 2, 1, 1, 10, 10, name="B")
        path = temp_dir / "tile_labels.json"
        source.export_to_file(path)

        target = AnnotationManager()
        assert target.import_from_file(path) == 2
        assert target.labelled_tile_count == 2
        assert target.annotations("2_2")[0].name == "B"

    def test_import_without_labels_keeps_global(self, qapp):
        """Documents without global labels leave the current ones alone."""
        manager = AnnotationManager()
        manager.add_global(0, 0, 10, 10)
        manager.add_to_tile(5, 5, 0, 0, 10, 10)

        count = manager.import_document({"tileLabels": {"0_0": [
            {"id": "x1", "name": "Imported", "category": "feature",
             "x": 1, "y": 1, "width": 8, "height": 8, "tileRow": 0, "tileCol": 0}
        ]}})

        assert count == 1
        assert len(manager.annotations("global")) == 1
        assert manager.annotations("5_5") == []
        assert manager.annotations("0_0")[0].category is Category.FEATURE

    def test_import_invalid_format(self, qapp):
        with pytest.raises(ValueError, match="Invalid label file format"):
            AnnotationManager().import_document({"labels": []})

    def test_import_invalid_json(self, qapp, temp_dir: Path):
        path = temp_dir / "broken.json"
        path.write_text("{ nope")
        with pytest.raises(ValueError):
            AnnotationManager().import_from_file(path)

    def test_export_is_json(self, qapp, temp_dir: Path):
        manager = AnnotationManager()
        manager.add_to_tile(0, 0, 0, 0, 10, 10)
        path = temp_dir / "out.json"
        manager.export_to_file(path)
        with open(path) as f:
            assert json.load(f)["metadata"]["totalLabels"] == 1
