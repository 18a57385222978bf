"""Test fixtures for GigaView tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Generator

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import numpy as np
import pytest
from PySide6.QtWidgets import QApplication

from gigaview.preprocess.backends import VIPSBackend


@pytest.fixture(scope="session")
def qapp():
    """Create a Qt application for testing (shared across all test files)."""
    app = QApplication.instance()
    if app is None:
        app = QApplication([])
    yield app


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_gradient(width: int, height: int) -> np.ndarray:
    """RGB test raster: red follows X, green follows Y, blue is constant."""
    xs = np.linspace(0, 255, width, dtype=np.float64)
    ys = np.linspace(0, 255, height, dtype=np.float64)
    img = np.empty((height, width, 3), dtype=np.uint8)
    img[..., 0] = xs[np.newaxis, :].astype(np.uint8)
    img[..., 1] = ys[:, np.newaxis].astype(np.uint8)
    img[..., 2] = 128
    return img


@pytest.fixture
def large_rgb_array() -> np.ndarray:
    """2000x1500 gradient: three levels with 512 px tiles, finest grid 3 rows x 4 cols."""
    return make_gradient(2000, 1500)


@pytest.fixture
def small_rgb_array() -> np.ndarray:
    """300x200 image with coloured quadrants (fits in one 512 px tile)."""
    img = np.full((200, 300, 3), 255, dtype=np.uint8)
    img[0:100, 0:150] = [200, 50, 50]
    img[0:100, 150:300] = [50, 200, 50]
    img[100:200, 0:150] = [50, 50, 200]
    img[100:200, 150:300] = [150, 50, 150]
    return img


@pytest.fixture
def large_image_file(temp_dir: Path, large_rgb_array: np.ndarray) -> Path:
    """The 2000x1500 gradient saved as a JPEG file."""
    path = temp_dir / "nebula.jpg"
    VIPSBackend.save_jpeg(VIPSBackend.from_numpy(large_rgb_array), path, quality=90)
    return path


@pytest.fixture
def small_image_file(temp_dir: Path, small_rgb_array: np.ndarray) -> Path:
    """The 300x200 quadrant image saved as a PNG file."""
    path = temp_dir / "quadrants.png"
    VIPSBackend.from_numpy(small_rgb_array).write_to_file(str(path))
    return path


@pytest.fixture
def pyramid_dir(temp_dir: Path, large_image_file: Path) -> Path:
    """On-disk pyramid generated from ``large_image_file``."""
    from gigaview.preprocess.pyramid import build_pyramid_directory

    result = build_pyramid_directory(large_image_file, temp_dir / "output", tile_size=512)
    assert result is not None
    return result
