"""
gifcomposer -- Animated-media composition engine.

Composites independently-timed GIF and video sources, static rasters and
a vector annotation into one looping GIF where every source keeps its
own playback speed.
"""

__version__ = "0.1.0"

from gifcomposer.exceptions import (
    ExportCancelled,
    GifComposerError,
    SourceNotFoundError,
    StageError,
    ToolchainUnavailableError,
)
from gifcomposer.types import (
    Bounds,
    DitherMode,
    ExportJob,
    ExportResult,
    ScaleMode,
    SourceDescriptor,
    StaticLayer,
)

__all__ = [
    "Bounds",
    "DitherMode",
    "ExportCancelled",
    "ExportJob",
    "ExportResult",
    "GifComposerError",
    "ScaleMode",
    "SourceDescriptor",
    "SourceNotFoundError",
    "StageError",
    "StaticLayer",
    "ToolchainUnavailableError",
]
