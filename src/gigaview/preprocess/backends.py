"""Image processing backend using PyVIPS.

All raster work in GigaView (source decoding, per-level resampling, tile
cropping, JPEG encode/decode) goes through libvips. Rasters handed to the rest
of the application are numpy arrays of shape ``(height, width, 3)``.

Usage:
    from gigaview.preprocess.backends import VIPSBackend

    img = VIPSBackend.load_image(Path("input.jpg"))
    resized = VIPSBackend.resize(img, (256, 256))
    data = VIPSBackend.encode_jpeg(resized, quality=85)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np

_HAS_VIPS = False
_vips_import_error: str | None = None
pyvips: Any = None

try:
    import pyvips
    _HAS_VIPS = True
except (ImportError, OSError) as e:
    _vips_import_error = str(e)


#: Interpretations converted to 8-bit sRGB before use
_COLOUR_SPACES = frozenset({
    "cmyk", "rgb16", "scrgb", "lab", "labs", "lch", "xyz", "yxy", "hsv"
})


def is_vips_available() -> bool:
    """Check if PyVIPS is available.

    Returns:
        True if pyvips is installed and working
    """
    return _HAS_VIPS


def get_vips_import_error() -> str | None:
    """Get the error message if PyVIPS failed to import."""
    return _vips_import_error


def _require_vips() -> None:
    if not _HAS_VIPS:
        raise RuntimeError(f"PyVIPS is not available: {_vips_import_error}")


class VIPSBackend:
    """PyVIPS-based image processing backend.

    Requires pyvips to be installed: pip install "pyvips[binary]"
    """

    @staticmethod
    def from_numpy(arr: np.ndarray) -> "pyvips.Image":
        """Convert a numpy array to pyvips format.

        Args:
            arr: numpy array (H, W, 3) RGB uint8

        Returns:
            pyvips.Image in RGB format
        """
        _require_vips()

        height, width = arr.shape[:2]
        bands = arr.shape[2] if arr.ndim == 3 else 1

        arr = np.ascontiguousarray(arr, dtype=np.uint8)

        return pyvips.Image.new_from_memory(
            arr.tobytes(),
            width,
            height,
            bands,
            "uchar"
        )

    @staticmethod
    def to_numpy(img: "pyvips.Image") -> np.ndarray:
        """Convert a pyvips image to numpy array.

        Args:
            img: pyvips.Image

        Returns:
            Read-only numpy array (H, W, 3) RGB uint8
        """
        img = VIPSBackend.to_rgb(img)
        data = img.write_to_memory()
        arr = np.ndarray(
            buffer=data,
            dtype=np.uint8,
            shape=(img.height, img.width, img.bands)
        )
        arr.flags.writeable = False
        return arr

    @staticmethod
    def to_rgb(img: "pyvips.Image") -> "pyvips.Image":
        """Normalize an image to 3-band 8-bit sRGB."""
        if img.interpretation in _COLOUR_SPACES:
            img = img.colourspace("srgb")
        elif img.interpretation == "grey16":
            img = img.colourspace("b-w")
        if img.format != "uchar":
            img = img.cast("uchar")
        if img.bands == 4:
            img = img.flatten(background=[255, 255, 255])
            if img.format != "uchar":
                img = img.cast("uchar")
        elif img.bands == 2:
            img = img.extract_band(0)
        if img.bands == 1:
            # bandjoin joins self + list, so [img, img] gives 3 bands
            img = img.bandjoin([img, img])
        elif img.bands > 3:
            img = img.extract_band(0, n=3)
        return img

    @staticmethod
    def load_image(path: Path) -> "pyvips.Image":
        """Open an image file (any format libvips supports).

        Uses random access since pyramid generation resamples the source
        once per level.
        """
        _require_vips()
        return pyvips.Image.new_from_file(str(path), access="random")

    @staticmethod
    def decode(data: bytes) -> "pyvips.Image":
        """Decode an encoded image (JPEG, PNG, ...) from memory."""
        _require_vips()
        return pyvips.Image.new_from_buffer(data, "")

    @staticmethod
    def encode_jpeg(img: "pyvips.Image", quality: int = 85) -> bytes:
        """Encode an image as baseline JPEG bytes."""
        return VIPSBackend.to_rgb(img).jpegsave_buffer(Q=quality, strip=True)

    @staticmethod
    def save_jpeg(img: "pyvips.Image", path: Path, quality: int = 85) -> None:
        """Save an image as JPEG."""
        VIPSBackend.to_rgb(img).write_to_file(str(path), Q=quality)

    @staticmethod
    def resize(img: "pyvips.Image", size: tuple[int, int]) -> "pyvips.Image":
        """Resize an image to exactly ``size`` using Lanczos3 resampling.

        Args:
            img: pyvips.Image to resize
            size: Target size as (width, height)

        Returns:
            Resized pyvips.Image of exactly the requested size
        """
        target_width, target_height = size
        if (img.width, img.height) == (target_width, target_height):
            return img

        h_scale = target_width / img.width
        v_scale = target_height / img.height
        resized = img.resize(h_scale, vscale=v_scale, kernel="lanczos3")

        # libvips rounds the output size; pin it to the requested one
        if (resized.width, resized.height) != (target_width, target_height):
            resized = resized.embed(0, 0, target_width, target_height, extend="copy")
        return resized

    @staticmethod
    def crop(img: "pyvips.Image", x: int, y: int, width: int, height: int) -> "pyvips.Image":
        """Extract a rectangular area (must lie inside the image)."""
        return img.crop(x, y, width, height)

    @staticmethod
    def materialize(img: "pyvips.Image") -> "pyvips.Image":
        """Render a lazy pipeline into memory once."""
        return img.copy_memory()


def get_backend() -> type[VIPSBackend]:
    """Get the image processing backend.

    Raises:
        RuntimeError: If PyVIPS is not available
    """
    if not _HAS_VIPS:
        raise RuntimeError(
            f"PyVIPS is required but not available: {_vips_import_error}\n"
            'Install pyvips and libvips: pip install "pyvips[binary]"'
        )
    return VIPSBackend
