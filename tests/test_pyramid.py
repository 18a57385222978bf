"""Tests for pyramid geometry and the pyramid builder."""

from __future__ import annotations

import json
import math
from pathlib import Path

import numpy as np
import pytest

from gigaview.config import MANIFEST_NAME, OVERVIEW_NAME
from gigaview.core.errors import GeometryError, PyramidBuildError, SourceLoadError
from gigaview.core.types import TileKey
from gigaview.preprocess.metadata import PyramidStatus, check_pyramid_status, read_manifest
from gigaview.preprocess.pyramid import (
    PyramidBuilder,
    build_pyramid,
    build_pyramid_directory,
    calculate_levels,
    compute_zoom_levels,
    fit_overview_size,
    level_scale_factor,
    load_source_image,
    scaled_dimension,
)
from gigaview.preprocess.tiles import MemoryTileStore


class TestZoomLevels:
    """Tests for the level count formula."""

    def test_2000x1500_has_three_levels(self):
        """ceil(log2(2000 / 512)) + 1 = 3."""
        assert compute_zoom_levels(2000, 1500, 512) == 3

    def test_image_smaller_than_tile_has_one_level(self):
        """Images inside a single tile still get exactly one level."""
        assert compute_zoom_levels(300, 200, 512) == 1

    def test_image_equal_to_tile_has_one_level(self):
        """log2(1) = 0, so one level."""
        assert compute_zoom_levels(512, 512, 512) == 1

    def test_uses_longest_side(self):
        """Portrait images count levels from their height."""
        assert compute_zoom_levels(100, 4096, 512) == 4

    def test_rejects_non_positive_input(self):
        """Zero or negative sizes are invalid."""
        with pytest.raises(ValueError):
            compute_zoom_levels(0, 100, 512)
        with pytest.raises(ValueError):
            compute_zoom_levels(100, 100, 0)


class TestScaling:
    """Tests for scale factors and the rounding rule."""

    def test_finest_level_is_full_resolution(self):
        """The last level always has scale exactly 1.0."""
        for zoom_levels in range(1, 8):
            assert level_scale_factor(zoom_levels - 1, zoom_levels) == 1.0

    def test_each_level_halves(self):
        """Scale doubles from one level to the next."""
        assert level_scale_factor(0, 3) == 0.25
        assert level_scale_factor(1, 3) == 0.5

    def test_scaled_dimension_floors(self):
        """Scaled sizes are floored."""
        assert scaled_dimension(1001, 0.5) == 500

    def test_scaled_dimension_never_zero(self):
        """Tiny scales keep at least one pixel."""
        assert scaled_dimension(3, 0.01) == 1

    def test_scaled_dimension_tolerates_float_error(self):
        """A product like 0.6 * 1500 that lands just below an integer is not floored down."""
        assert scaled_dimension(1500, 900 / 1500) == 900


class TestOverviewSize:
    """Tests for the overview bounding box fit."""

    def test_2000x1500_gives_1200x900(self):
        """min(1440/2000, 900/1500) = 0.6."""
        assert fit_overview_size(2000, 1500, (1440, 900)) == (1200, 900)

    def test_wide_image_is_width_bound(self):
        """A panorama is limited by the box width."""
        width, height = fit_overview_size(10000, 1000, (1440, 900))
        assert width == 1440
        assert height == 144

    def test_small_image_is_not_upscaled(self):
        """Images already inside the box keep their size."""
        assert fit_overview_size(300, 200, (1440, 900)) == (300, 200)


class TestCalculateLevels:
    """Tests for the full level geometry."""

    def test_2000x1500_grid(self):
        """Finest level is 4 columns by 3 rows."""
        levels = calculate_levels(2000, 1500, 512)
        assert len(levels) == 3
        finest = levels[-1]
        assert finest.scale_factor == 1.0
        assert (finest.cols, finest.rows) == (4, 3)
        assert (finest.scaled_width, finest.scaled_height) == (2000, 1500)

    def test_coarser_levels(self):
        """Coarser levels are resampled from the original at 1/2 and 1/4."""
        levels = calculate_levels(2000, 1500, 512)
        assert (levels[0].scaled_width, levels[0].scaled_height) == (500, 375)
        assert (levels[0].cols, levels[0].rows) == (1, 1)
        assert (levels[1].scaled_width, levels[1].scaled_height) == (1000, 750)
        assert (levels[1].cols, levels[1].rows) == (2, 2)

    def test_edge_tiles_are_clipped(self):
        """Last column is 464 px wide and last row 476 px tall."""
        finest = calculate_levels(2000, 1500, 512)[-1]
        last = finest.tile(2, 3)
        assert (last.x, last.y) == (1536, 1024)
        assert (last.width, last.height) == (464, 476)
        assert finest.tile(0, 0).width == 512

    def test_tiles_are_row_major(self):
        """Tiles are listed row by row."""
        finest = calculate_levels(2000, 1500, 512)[-1]
        assert [(t.row, t.col) for t in finest.tiles[:5]] == [
            (0, 0), (0, 1), (0, 2), (0, 3), (1, 0)
        ]

    def test_tiles_cover_level_exactly(self):
        """Tile areas add up to the level area with no overlap."""
        for info in calculate_levels(3001, 1777, 256):
            area = sum(t.width * t.height for t in info.tiles)
            assert area == info.scaled_width * info.scaled_height
            assert len(info.tiles) == info.rows * info.cols
            assert info.cols == math.ceil(info.scaled_width / 256)

    @pytest.mark.parametrize("width,height,tile_size", [
        (2000, 1500, 512), (1, 1, 16), (4097, 33, 256), (777, 6001, 100),
    ])
    def test_tile_size_bounds(self, width, height, tile_size):
        """No tile exceeds tile_size; only the last row/column may be smaller."""
        levels = calculate_levels(width, height, tile_size)
        assert len(levels) >= 1
        assert levels[-1].scale_factor == 1.0
        for info in levels:
            for t in info.tiles:
                assert 0 < t.width <= tile_size
                assert 0 < t.height <= tile_size
                if t.col < info.cols - 1:
                    assert t.width == tile_size
                if t.row < info.rows - 1:
                    assert t.height == tile_size

    def test_tile_outside_grid(self):
        """LevelInfo.tile returns None outside the grid."""
        finest = calculate_levels(2000, 1500, 512)[-1]
        assert finest.tile(3, 0) is None
        assert finest.tile(0, -1) is None


class TestPyramidBuilder:
    """Tests for building tiles from a raster."""

    def test_build_writes_every_tile(self, large_rgb_array):
        """Every tile of every level lands in the store."""
        store = MemoryTileStore()
        metadata = PyramidBuilder(tile_size=512).build(large_rgb_array, 2000, 1500, store)

        assert metadata.zoom_levels == 3
        assert len(store) == metadata.tile_count == 1 + 4 + 12
        assert TileKey(2, 2, 3) in store
        assert TileKey(0, 0, 0) in store

    def test_build_metadata(self, large_rgb_array):
        """Metadata records the overview size and finest grid."""
        metadata = PyramidBuilder(tile_size=512).build(
            large_rgb_array, 2000, 1500, MemoryTileStore(), source_name="nebula.jpg"
        )
        assert (metadata.overview.width, metadata.overview.height) == (1200, 900)
        assert (metadata.grid.rows, metadata.grid.cols) == (3, 4)
        assert metadata.source_image == "nebula.jpg"

    def test_progress_sequence(self, large_rgb_array):
        """Progress goes 10, 20, 30, 40, one step per level, then 100."""
        calls = []
        PyramidBuilder(tile_size=512).build(
            large_rgb_array, 2000, 1500, MemoryTileStore(),
            progress_callback=lambda pct, msg: calls.append((pct, msg)),
        )
        percentages = [pct for pct, _ in calls]
        assert percentages[:4] == [10, 20, 30, 40]
        assert percentages[4:7] == [40, int(40 + 55 / 3), int(40 + 2 * 55 / 3)]
        assert calls[-1] == (100, "Complete!")
        assert calls[4][1] == "Generating zoom level 1/3..."

    def test_tile_at_finest_matches_source(self, large_rgb_array):
        """Finest-level tiles are exact crops of the source."""
        builder = PyramidBuilder(tile_size=512)
        builder.prepare(large_rgb_array, 2000, 1500)

        tile = builder.tile_at(2, 1, 2)
        assert tile.shape == (512, 512, 3)
        np.testing.assert_array_equal(tile, large_rgb_array[512:1024, 1024:1536])

    def test_tile_at_edge_is_clipped(self, large_rgb_array):
        """Edge tiles have the remaining size, never padding."""
        builder = PyramidBuilder(tile_size=512)
        builder.prepare(large_rgb_array, 2000, 1500)
        assert builder.tile_at(2, 2, 3).shape == (476, 464, 3)

    def test_tile_at_coarse_level(self, large_rgb_array):
        """The coarsest level is a single 500x375 tile."""
        builder = PyramidBuilder(tile_size=512)
        builder.prepare(large_rgb_array, 2000, 1500)
        assert builder.tile_at(0, 0, 0).shape == (375, 500, 3)

    def test_tile_at_outside_grid(self, large_rgb_array):
        """Addresses outside the level grid raise GeometryError."""
        builder = PyramidBuilder(tile_size=512)
        builder.prepare(large_rgb_array, 2000, 1500)
        with pytest.raises(GeometryError):
            builder.tile_at(2, 3, 0)
        with pytest.raises(ValueError):
            builder.tile_at(5, 0, 0)

    def test_overview_is_independent_of_levels(self, large_rgb_array):
        """The overview has its own size, not that of any level."""
        builder = PyramidBuilder(tile_size=512)
        builder.prepare(large_rgb_array, 2000, 1500)
        overview = builder.overview_image()
        assert (overview.width, overview.height) == (1200, 900)
        assert all(
            (info.scaled_width, info.scaled_height) != (1200, 900) for info in builder.levels
        )

    def test_size_mismatch_fails_at_load(self, small_rgb_array):
        """A raster that does not match the declared size is a load-stage failure."""
        with pytest.raises(PyramidBuildError) as exc_info:
            PyramidBuilder().build(small_rgb_array, 999, 999, MemoryTileStore())
        assert exc_info.value.stage == "load"

    def test_small_image_single_tile(self, small_rgb_array):
        """An image smaller than one tile gives one level with one clipped tile."""
        store = MemoryTileStore()
        metadata = build_pyramid(small_rgb_array, 300, 200, tile_size=512, tile_store=store)
        assert metadata.zoom_levels == 1
        assert metadata.finest.tile(0, 0).width == 300
        assert len(store) == 1

    def test_empty_memory_store_receives_every_tile(self, large_rgb_array):
        """A fresh (empty) store passed in is written to, not replaced."""
        store = MemoryTileStore()
        assert len(store) == 0
        metadata = build_pyramid(large_rgb_array, 2000, 1500, tile_size=512, tile_store=store)
        assert metadata.tile_count == 1 + 4 + 12
        assert len(store) == metadata.tile_count
        assert TileKey(2, 2, 3) in store

    def test_build_without_store_discards_tiles(self, small_rgb_array):
        """build_pyramid without a store still returns metadata."""
        metadata = build_pyramid(small_rgb_array, 300, 200, tile_size=128)
        assert metadata.zoom_levels == 3
        assert metadata.grid.cols == 3

    def test_rejects_bad_tile_size(self):
        """Tile size must be positive."""
        with pytest.raises(ValueError):
            PyramidBuilder(tile_size=0)


class TestLoadSourceImage:
    """Tests for source image loading."""

    def test_missing_file(self, temp_dir):
        """Missing files raise SourceLoadError."""
        with pytest.raises(SourceLoadError):
            load_source_image(temp_dir / "missing.jpg")

    def test_file_too_large(self, large_image_file):
        """Files over the ceiling are rejected with a readable message."""
        with pytest.raises(SourceLoadError) as exc_info:
            load_source_image(large_image_file, max_mb=0.001)
        assert "File too large" in exc_info.value.message
        assert exc_info.value.path == large_image_file

    def test_undecodable_file(self, temp_dir):
        """Non-image bytes raise SourceLoadError."""
        path = temp_dir / "broken.jpg"
        path.write_bytes(b"not an image at all")
        with pytest.raises(SourceLoadError):
            load_source_image(path)

    def test_loads_rgb(self, small_image_file):
        """Loaded images are normalized to 3 bands."""
        image = load_source_image(small_image_file)
        assert (image.width, image.height, image.bands) == (300, 200, 3)


class TestBuildPyramidDirectory:
    """Tests for the on-disk pyramid layout."""

    def test_layout(self, pyramid_dir: Path):
        """Manifest, overview and tile files are written."""
        assert pyramid_dir.name == "nebula.gigaview"
        assert (pyramid_dir / MANIFEST_NAME).exists()
        assert (pyramid_dir / OVERVIEW_NAME).exists()
        assert (pyramid_dir / "tiles" / "zoom_0" / "tile_0_0.jpg").exists()
        assert (pyramid_dir / "tiles" / "zoom_2" / "tile_2_3.jpg").exists()
        assert check_pyramid_status(pyramid_dir) == PyramidStatus.COMPLETE

    def test_manifest_contents(self, pyramid_dir: Path):
        """The manifest describes the generated pyramid."""
        with open(pyramid_dir / MANIFEST_NAME) as f:
            data = json.load(f)
        assert data["original_width"] == 2000
        assert data["original_height"] == 1500
        assert data["zoom_levels"] == 3
        assert data["overview"] == {"width": 1200, "height": 900, "path": OVERVIEW_NAME}
        assert data["grid"] == {"rows": 3, "cols": 4}
        assert data["source_image"] == "nebula.jpg"
        assert data["pyramid"][2]["tiles"][-1] == {
            "row": 2, "col": 3, "x": 1536, "y": 1024, "width": 464, "height": 476
        }

    def test_skips_complete(self, pyramid_dir: Path, large_image_file: Path):
        """A complete pyramid is skipped unless forced."""
        assert build_pyramid_directory(large_image_file, pyramid_dir.parent) is None

    def test_force_rebuilds(self, pyramid_dir: Path, large_image_file: Path):
        """force=True rebuilds an existing pyramid."""
        result = build_pyramid_directory(large_image_file, pyramid_dir.parent, force=True)
        assert result == pyramid_dir
        assert read_manifest(pyramid_dir).zoom_levels == 3

    def test_incomplete_is_rebuilt(self, pyramid_dir: Path, large_image_file: Path):
        """A pyramid with missing tiles is cleaned up and rebuilt."""
        (pyramid_dir / "tiles" / "zoom_2" / "tile_2_3.jpg").unlink()
        assert check_pyramid_status(pyramid_dir) == PyramidStatus.INCOMPLETE

        result = build_pyramid_directory(large_image_file, pyramid_dir.parent)
        assert result == pyramid_dir
        assert check_pyramid_status(pyramid_dir) == PyramidStatus.COMPLETE

    def test_tile_size_changes_grid(self, small_image_file: Path, temp_dir: Path):
        """Smaller tiles give more levels."""
        result = build_pyramid_directory(small_image_file, temp_dir / "out", tile_size=64)
        metadata = read_manifest(result)
        assert metadata.zoom_levels == 4
        assert (metadata.grid.rows, metadata.grid.cols) == (4, 5)
        assert metadata.overview.width == 300
