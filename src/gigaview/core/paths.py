"""Path utilities: URL-to-path conversion and atomic JSON writes."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from PySide6.QtCore import QUrl


def to_local_path(value: str | Path) -> Path:
    """Convert a path-or-URL into a local filesystem ``Path``.

    Drag-and-drop and some file dialogs hand over ``file:///...`` URLs. They
    are converted with ``QUrl.toLocalFile()``; plain paths pass through.
    """
    if isinstance(value, Path):
        return value

    text = str(value).strip()
    if not text:
        return Path()

    url = QUrl(text)
    if url.isValid() and url.isLocalFile():
        local = url.toLocalFile()
        if local:
            return Path(local)

    return Path(text)


def atomic_json_save(path: Path, data: Any) -> None:
    """Atomically write JSON data to a file.

    Writes to a temp file in the same directory, then replaces the target.
    ``os.replace()`` is atomic on both POSIX and Windows (same filesystem).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, suffix=".tmp", prefix=path.stem
    )
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
