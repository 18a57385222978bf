"""CLI entry point for GigaView preprocessing."""

from __future__ import annotations

import logging
import shutil
import sys
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path

import click
from tqdm import tqdm

from gigaview.config import (
    DEFAULT_PARALLEL_IMAGES,
    DEFAULT_TILE_SIZE,
    IMAGE_EXTENSIONS,
    JPEG_QUALITY,
    MAX_SOURCE_MB,
)

logger = logging.getLogger(__name__)

from .backends import get_vips_import_error, is_vips_available
from .metadata import pyramid_dir_for_image
from .worker import process_single_image


def is_image_file(path: Path) -> bool:
    """Check if a file is a supported source image format."""
    return path.suffix.lower() in IMAGE_EXTENSIONS


def find_image_files(path: Path) -> list[Path]:
    """Find all source images in a path (file or directory)."""
    path = Path(path)
    if path.is_file():
        if is_image_file(path):
            return [path]
        return []
    elif path.is_dir():
        # Use set to avoid duplicates on case-insensitive filesystems (Windows)
        files = set()
        for ext in IMAGE_EXTENSIONS:
            files.update(path.glob(f"*{ext}"))
            files.update(path.glob(f"*{ext.upper()}"))
        return sorted(files)
    return []


def _check_prerequisites() -> None:
    """Exit with an error message if pyvips is unusable."""
    if not is_vips_available():
        click.echo(click.style(
            f"Error: GigaView requires pyvips and libvips ({get_vips_import_error()}). "
            'Install them with: pip install "pyvips[binary]"',
            fg="red"
        ), err=True)
        sys.exit(1)


def _print_header(
    image_files: list[Path], output_dir: Path, tile_size: int, force: bool
) -> None:
    """Print the CLI banner with processing parameters."""
    click.echo(click.style("GigaView Preprocessing", fg="cyan", bold=True))
    click.echo(click.style("=" * 40, fg="cyan"))
    click.echo(f"Found {len(image_files)} image file(s)")
    click.echo(f"Output directory: {output_dir}")
    click.echo(
        f"Tile size: {tile_size}px | JPEG Q{JPEG_QUALITY} | Max source {MAX_SOURCE_MB:g} MB"
    )
    if force:
        click.echo(click.style("Force mode: will rebuild existing pyramids", fg="yellow"))
    click.echo()


def _tally(
    counts: dict[str, int],
    errors: list[tuple[Path, str]],
    image_path: Path,
    error: str | None,
    was_skipped: bool,
) -> None:
    if error:
        counts["error"] += 1
        errors.append((image_path, error))
        click.echo(f"\nError processing {image_path.name}: {error}", err=True)
    elif was_skipped:
        counts["skipped"] += 1
    else:
        counts["success"] += 1


def _process_images(
    image_files: list[Path],
    output_dir: Path,
    tile_size: int,
    parallel_images: int,
    force: bool,
) -> tuple[int, int, int, list[tuple[Path, str]]]:
    """Process images, in worker processes when ``parallel_images > 1``.

    Args:
        image_files: List of image paths to process
        output_dir: Output directory for .gigaview folders
        tile_size: Tile size in pixels
        parallel_images: Number of parallel workers
        force: Force rebuild existing pyramids

    Returns:
        Tuple of (success_count, skipped_count, error_count, errors)
    """
    counts = {"success": 0, "skipped": 0, "error": 0}
    errors: list[tuple[Path, str]] = []

    with tqdm(total=len(image_files), desc="Processing images") as pbar:
        if parallel_images <= 1 or len(image_files) == 1:
            for image_path in image_files:
                _, error, was_skipped = process_single_image(
                    image_path, output_dir, tile_size, force
                )
                _tally(counts, errors, image_path, error, was_skipped)
                pbar.update(1)
        else:
            with ProcessPoolExecutor(max_workers=parallel_images) as executor:
                futures = {
                    executor.submit(process_single_image, f, output_dir, tile_size, force): f
                    for f in image_files
                }
                for future in as_completed(futures):
                    image_path = futures[future]
                    try:
                        _, error, was_skipped = future.result()
                    except Exception as e:
                        # Worker crashed - log error and clean up partial output
                        logger.error("Worker crashed processing %s: %s", image_path, e)
                        counts["error"] += 1
                        errors.append((image_path, str(e)))
                        click.echo(f"\nWorker crashed processing {image_path.name}: {e}", err=True)
                        partial_output = pyramid_dir_for_image(image_path, output_dir)
                        if partial_output.exists():
                            try:
                                shutil.rmtree(partial_output)
                                click.echo(f"  Cleaned up partial output: {partial_output}", err=True)
                            except OSError as cleanup_err:
                                click.echo(f"  Failed to clean up partial output: {cleanup_err}", err=True)
                        pbar.update(1)
                        continue

                    _tally(counts, errors, image_path, error, was_skipped)
                    pbar.update(1)

    return counts["success"], counts["skipped"], counts["error"], errors


def _print_summary(
    success_count: int,
    skipped_count: int,
    error_count: int,
    errors: list[tuple[Path, str]],
    force: bool,
) -> None:
    """Print the colored processing summary and exit with error if any failures."""
    click.echo()
    click.echo(click.style("=" * 40, fg="cyan"))

    parts = []
    if success_count > 0:
        parts.append(click.style(f"{success_count} processed", fg="green"))
    if skipped_count > 0:
        parts.append(click.style(f"{skipped_count} skipped", fg="cyan"))
    if error_count > 0:
        parts.append(click.style(f"{error_count} failed", fg="red"))

    summary = ", ".join(parts) if parts else "Nothing to process"
    click.echo(click.style("Completed: ", bold=True) + summary)

    if skipped_count > 0 and not force:
        click.echo(click.style("  (use --force to rebuild skipped images)", fg="cyan"))

    if errors:
        click.echo()
        click.echo(click.style("Failed images:", fg="red"))
        for path, error in errors:
            click.echo(f"  {path.name}: {error}")
        sys.exit(1)


@click.command()
@click.argument("input_path", type=click.Path(exists=True))
@click.option(
    "-o",
    "--output",
    type=click.Path(),
    default="./output",
    help="Output directory for .gigaview folders",
)
@click.option(
    "--tile-size",
    "-t",
    type=click.IntRange(64, 4096),
    default=DEFAULT_TILE_SIZE,
    help=f"Tile size in pixels (default: {DEFAULT_TILE_SIZE}, range: 64-4096)",
)
@click.option(
    "--parallel-images",
    "-p",
    type=click.IntRange(min=1),
    default=DEFAULT_PARALLEL_IMAGES,
    help=f"Process multiple images in parallel (default: {DEFAULT_PARALLEL_IMAGES})",
)
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Force rebuild even if the image is already preprocessed",
)
@click.option("--verbose", "-v", is_flag=True, help="Log build stages")
def main(
    input_path: str,
    output: str,
    tile_size: int,
    parallel_images: int,
    force: bool,
    verbose: bool,
) -> None:
    """Preprocess large images into tile pyramids.

    INPUT_PATH can be a single image or a directory containing images.
    Supported formats: JPEG, PNG, TIFF, WebP.

    Each image produces a <name>.gigaview folder holding image_data.json,
    overview.jpg and tiles/zoom_<level>/tile_<row>_<col>.jpg.

    Examples:

        # Process a single image
        python -m gigaview.preprocess nebula.tif -o ./output/

        # Process all images in a directory
        python -m gigaview.preprocess ./images/ -o ./output/

        # Process with larger tiles
        python -m gigaview.preprocess nebula.tif -o ./output/ -t 1024
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    input_path = Path(input_path)
    output_dir = Path(output)

    image_files = find_image_files(input_path)
    if not image_files:
        click.echo(f"No image files found in {input_path}", err=True)
        sys.exit(1)

    _check_prerequisites()
    _print_header(image_files, output_dir, tile_size, force)

    output_dir.mkdir(parents=True, exist_ok=True)

    success, skipped, error_count, errors = _process_images(
        image_files, output_dir, tile_size, parallel_images, force
    )
    _print_summary(success, skipped, error_count, errors, force)


if __name__ == "__main__":
    main()
