"""GigaView - tile pyramid explorer for very large images."""

__version__ = "0.1.0"


# Suppress libvips module-loading warnings (jxl, magick, poppler) during import.
# Must run before any pyvips import anywhere in the package.
def _setup_vips_quiet():
    """Silence libvips warnings and import pyvips once with stderr suppressed."""
    import logging
    import os
    import sys

    _logger = logging.getLogger(__name__)

    os.environ.setdefault("VIPS_WARNING", "0")

    # libvips writes directly to the C-level file descriptor, bypassing
    # Python's sys.stderr, so redirect_stderr is not enough here.
    try:
        stderr_fd = sys.stderr.fileno()
    except (AttributeError, OSError):
        try:
            import pyvips  # noqa: F401
        except ImportError:
            _logger.debug("pyvips not available")
        return

    try:
        old_stderr_fd = os.dup(stderr_fd)
        devnull = os.open(os.devnull, os.O_WRONLY)
        try:
            os.dup2(devnull, stderr_fd)
            import pyvips  # noqa: F401
        finally:
            os.dup2(old_stderr_fd, stderr_fd)
            os.close(old_stderr_fd)
            os.close(devnull)
    except (ImportError, OSError) as e:
        _logger.debug("pyvips import issue: %s", e)


_setup_vips_quiet()
del _setup_vips_quiet
