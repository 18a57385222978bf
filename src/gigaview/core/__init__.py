"""Core model of the GigaView viewer.

``PyramidStore`` is imported from ``gigaview.core.store`` directly, since it
depends on the preprocessing package.
"""

from .annotations import (
    Annotation,
    AnnotationManager,
    AnnotationSet,
    Category,
    JsonAnnotationStore,
)
from .cache import TileCache
from .coords import CoordinateMapper
from .errors import (
    GeometryError,
    GigaViewError,
    PyramidBuildError,
    SourceLoadError,
    TileDecodeError,
)
from .session import DetailViewSession, SessionManager
from .types import TileKey
from .viewport import InteractionMode, SurfaceKind, ViewportController, ViewportState

__all__ = [
    "Annotation",
    "AnnotationManager",
    "AnnotationSet",
    "Category",
    "JsonAnnotationStore",
    "TileCache",
    "CoordinateMapper",
    "GeometryError",
    "GigaViewError",
    "PyramidBuildError",
    "SourceLoadError",
    "TileDecodeError",
    "DetailViewSession",
    "SessionManager",
    "TileKey",
    "InteractionMode",
    "SurfaceKind",
    "ViewportController",
    "ViewportState",
]
