"""
Core data structures used throughout the composition engine.
"""

from __future__ import annotations

import enum
import json
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable

from PIL import Image

from gifcomposer.exceptions import JobValidationError

# Delays are in centiseconds (1/100 s), the unit GIF stores natively.
MIN_DELAY_CS = 2
DEFAULT_DELAY_CS = 10

ANIMATED_EXTENSIONS = (".gif", ".mp4", ".mov")
CLIP_EXTENSIONS = (".mp4", ".mov")

ProgressSink = Callable[[int, str], None]
CancelPredicate = Callable[[], bool]


class ScaleMode(enum.Enum):
    """How source pixels map into the layer bounds."""
    FILL = "FILL"       # Cover the bounds, crop overflow.
    FIT = "FIT"         # Contain inside the bounds, pad with transparency.
    CROP = "CROP"       # Explicit transform chosen by the user.
    TILE = "TILE"       # Repeat at scaling_factor.


class DitherMode(enum.Enum):
    """Palette dithering applied when writing GIF frames."""
    SMOOTH_GRADIENT = "smooth_gradient"   # Ordered (Bayer) dithering.
    LESS_NOISE = "less_noise"             # No dithering.


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle in output pixel space."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def rounded(self) -> tuple[int, int, int, int]:
        """Return (x, y, width, height) rounded to whole pixels."""
        return (
            int(round(self.x)),
            int(round(self.y)),
            max(1, int(round(self.width))),
            max(1, int(round(self.height))),
        )

    def intersect(self, other: Bounds) -> Bounds | None:
        """Return the overlapping rectangle, or None when disjoint."""
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.right, other.right)
        bottom = min(self.bottom, other.bottom)
        if right - left <= 0 or bottom - top <= 0:
            return None
        return Bounds(left, top, right - left, bottom - top)


@dataclass(frozen=True)
class Color:
    """RGBA colour; channels 0..255, alpha 0..1 or 0..255."""
    r: float
    g: float
    b: float
    a: float = 1.0

    def as_rgba(self) -> tuple[int, int, int, int]:
        alpha = self.a * 255 if self.a <= 1 else self.a
        return (
            int(round(self.r)),
            int(round(self.g)),
            int(round(self.b)),
            int(round(alpha)),
        )

    @property
    def visible(self) -> bool:
        return self.as_rgba()[3] > 0


@dataclass(frozen=True)
class ImageFill:
    """Scale mode plus the affine transform from the design tool.

    ``transform`` is ``[[a, b, tx], [c, d, ty]]``.  ``a`` and ``d`` give
    the container's size relative to the image, ``tx``/``ty`` the
    container's offset inside the image as a fraction of the image size.
    """
    scale_mode: ScaleMode = ScaleMode.FILL
    transform: tuple[tuple[float, ...], ...] | None = None
    scaling_factor: float = 1.0

    @staticmethod
    def parse_transform(raw: Any) -> tuple[tuple[float, ...], ...] | None:
        """Accept a nested list or its JSON encoding; None when unusable."""
        if raw is None:
            return None
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return None
        try:
            rows = tuple(tuple(float(v) for v in row) for row in raw)
        except (TypeError, ValueError):
            return None
        if len(rows) < 2 or any(len(row) < 3 for row in rows[:2]):
            return None
        return rows[:2]

    @property
    def is_identity(self) -> bool:
        if self.transform is None:
            return True
        (a, b, tx), (c, d, ty) = self.transform[0][:3], self.transform[1][:3]
        return (a, b, tx, c, d, ty) == (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)

    def scale_and_offset(self) -> tuple[float, float, float, float]:
        """Return (a, d, tx, ty); zero scales fall back to 1."""
        if self.transform is None:
            return 1.0, 1.0, 0.0, 0.0
        a = self.transform[0][0] or 1.0
        d = self.transform[1][1] or 1.0
        return a, d, self.transform[0][2], self.transform[1][2]


@dataclass(frozen=True)
class VisibilityRange:
    """Window (percent of the untrimmed timeline) where a layer is drawn."""
    start: float = 0.0
    end: float = 100.0

    @property
    def edited(self) -> bool:
        return self.start > 0 or self.end < 100

    def contains(self, percent: float) -> bool:
        return self.start <= percent <= self.end


@dataclass(frozen=True)
class SourceDescriptor:
    """One animated layer to composite."""
    filename: str
    bounds: Bounds
    cache_id: str | None = None
    corner_radius: float = 0.0
    clip_bounds: Bounds | None = None
    clip_corner_radius: float = 0.0
    z_index: int = 0
    image_fill: ImageFill = field(default_factory=ImageFill)
    layer_id: str | None = None
    path: Path | None = None

    @property
    def is_clip(self) -> bool:
        """True when the resolved source is a video clip, not a GIF."""
        if self.path is None:
            return False
        return self.path.suffix.lower() in CLIP_EXTENSIONS

    def resolved(self, path: Path) -> SourceDescriptor:
        return replace(self, path=Path(path))



@dataclass(frozen=True)
class StaticLayer:
    """A flat raster sitting at a fixed z-index in the document."""
    data: bytes
    index: int
    name: str = ""
    layer_id: str | None = None


@dataclass(frozen=True)
class FrameSet:
    """Decoded form of one animated source.  Read-only."""
    path: Path
    frames: tuple[Image.Image, ...]
    delays_cs: tuple[int, ...]
    delay_cs: int

    @property
    def frame_count(self) -> int:
        return len(self.frames)

    @property
    def size(self) -> tuple[int, int]:
        return self.frames[0].size

    @property
    def total_duration_cs(self) -> int:
        return sum(self.delays_cs)

    @property
    def total_duration_s(self) -> float:
        return self.total_duration_cs / 100.0


@dataclass(frozen=True)
class Timeline:
    """Shared output schedule for several independently-timed sources."""
    output_delay_cs: int
    max_duration_cs: int
    total_frames: int
    start_frame: int = 0
    end_frame: int = -1

    def __post_init__(self) -> None:
        if self.end_frame < 0:
            object.__setattr__(self, "end_frame", self.total_frames - 1)

    @property
    def max_duration_s(self) -> float:
        return self.max_duration_cs / 100.0

    @property
    def output_frames(self) -> int:
        return self.end_frame - self.start_frame + 1

    def progress_percent(self, source_index: int) -> float:
        """Position of an untrimmed frame index on the 0..100 scale."""
        if self.total_frames <= 1:
            return 0.0
        return source_index / (self.total_frames - 1) * 100


@dataclass
class ExportJob:
    """Everything needed to produce one output animation."""
    frame_name: str
    sources: list[SourceDescriptor]
    frame_size: tuple[int, int]
    annotation_bytes: bytes = b""
    background: Color | None = None
    bottom_layer_bytes: bytes = b""
    static_layers: list[StaticLayer] = field(default_factory=list)
    annotation_layers: list[StaticLayer] = field(default_factory=list)
    visibility: dict[str, VisibilityRange] = field(default_factory=dict)
    dither: DitherMode = DitherMode.SMOOTH_GRADIENT
    session_id: str = "local"
    should_cancel: CancelPredicate | None = None
    on_progress: ProgressSink | None = None

    @property
    def has_visibility_edits(self) -> bool:
        return any(r.edited for r in self.visibility.values())

    def validate(self) -> None:
        """Reject malformed jobs before any stage runs."""
        if not self.sources:
            raise JobValidationError("sourceDescriptors", "at least one source is required")
        width, height = self.frame_size
        if width <= 0 or height <= 0:
            raise JobValidationError("frameBounds", f"invalid size {width}x{height}")
        for i, src in enumerate(self.sources):
            if not src.filename and not src.cache_id:
                raise JobValidationError(
                    f"sourceDescriptors[{i}]", "needs a filename or a cacheId")
            if src.bounds.width <= 0 or src.bounds.height <= 0:
                raise JobValidationError(
                    f"sourceDescriptors[{i}].bounds", "width and height must be positive")
            if not all(math.isfinite(v) for v in (src.bounds.x, src.bounds.y)):
                raise JobValidationError(
                    f"sourceDescriptors[{i}].bounds", "x and y must be finite")
        if not self.annotation_bytes and not self.annotation_layers:
            raise JobValidationError("annotationBytes", "annotation raster is required")


@dataclass(frozen=True)
class ExportResult:
    """What a finished (or skipped) job produced."""
    output_path: Path
    filename: str
    size_bytes: int
    skipped: bool = False
