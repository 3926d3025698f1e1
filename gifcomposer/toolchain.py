"""
Media toolchain adapter.

Every call into an external media tool goes through this module.  The
pipeline only talks to the narrow ``MediaToolchain`` interface:

    probe_metadata   clip frame rate, duration and size   (ffprobe)
    resample         clip -> looping GIF at a given rate   (ffmpeg)
    decode           animation -> RGBA frames + delays     (Pillow)
    layer_composite  stack positioned RGBA layers          (Pillow)
    encode           RGBA frames -> looping GIF            (Pillow)
    optimize         lossless-leaning size reduction       (gifsicle)

so stages stay toolchain-agnostic and tests can swap in a fake.
External binaries run as blocking ``subprocess.run`` calls, one process
per call, with a timeout.
"""

from __future__ import annotations

import abc
import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Sequence

from PIL import Image, ImageSequence, UnidentifiedImageError

from gifcomposer.config import INSTALL_HINTS, ComposerConfig, resolve_tool
from gifcomposer.exceptions import (
    ConversionFailedError,
    ExtractionFailedError,
    OptimizationError,
    StageError,
    ToolchainUnavailableError,
)
from gifcomposer.processing import clip_to_canvas, quantize_frames
from gifcomposer.types import DitherMode

logger = logging.getLogger(__name__)

_FFMPEG_DITHER = {
    DitherMode.SMOOTH_GRADIENT: "bayer:bayer_scale=3",
    DitherMode.LESS_NOISE: "none",
}


@dataclass(frozen=True)
class MediaInfo:
    """What ffprobe reports about a clip."""
    fps: float | None
    duration_s: float | None
    width: int | None
    height: int | None


@dataclass(frozen=True)
class DecodedFrame:
    """One coalesced frame and the delay stored for it (milliseconds)."""
    image: Image.Image
    duration_ms: int


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def _run(
    cmd: list[str],
    *,
    timeout: float,
    error_cls: type[StageError] = StageError,
) -> subprocess.CompletedProcess:
    """Run a subprocess, translating failures into gifcomposer errors."""
    tool = Path(cmd[0]).name
    logger.debug("Running: %s", " ".join(cmd))
    try:
        return subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ToolchainUnavailableError(tool, INSTALL_HINTS.get(tool, "")) from exc
    except subprocess.CalledProcessError as exc:
        raise error_cls(
            f"{tool} exited with status {exc.returncode}",
            tool_output=(exc.stderr or "").strip(),
        ) from exc
    except subprocess.TimeoutExpired as exc:
        output = exc.stderr or ""
        if isinstance(output, bytes):
            output = output.decode(errors="replace")
        raise error_cls(f"{tool} timed out after {timeout:.0f}s", tool_output=output) from exc


def parse_frame_rate(text: str | None) -> float | None:
    """Parse ffprobe's ``num/den`` frame rate; None when unusable."""
    if not text:
        return None
    try:
        value = float(Fraction(text.strip()))
    except (ValueError, ZeroDivisionError):
        return None
    return value if value > 0 else None


def _parse_float(value) -> float | None:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class MediaToolchain(abc.ABC):
    """Narrow interface every pipeline stage goes through."""

    name: str = "abstract"

    @abc.abstractmethod
    def available(self, capability: str) -> bool:
        """Return True if *capability* ("probe", "resample", "optimize") works."""

    def require(self, capability: str) -> None:
        """Raise ToolchainUnavailableError unless *capability* works."""
        if not self.available(capability):
            tool = self.tool_for(capability)
            raise ToolchainUnavailableError(tool, INSTALL_HINTS.get(tool, ""))

    def tool_for(self, capability: str) -> str:
        return capability

    @abc.abstractmethod
    def probe_metadata(self, path: Path) -> MediaInfo:
        """Report frame rate, duration and size of a clip."""

    @abc.abstractmethod
    def resample(
        self,
        source: Path,
        dest: Path,
        *,
        frame_rate: Fraction,
        size: tuple[int, int],
        dither: DitherMode,
    ) -> Path:
        """Re-encode *source* as a looping GIF at *frame_rate*."""

    @abc.abstractmethod
    def optimize(self, source: Path, dest: Path, *, lossy: int) -> Path:
        """Write a size-optimised copy of *source* to *dest*."""

    # Decode, composite and encode are in-process Pillow work and are
    # shared by every toolchain.

    def decode(self, path: Path) -> list[DecodedFrame]:
        """Decode every frame of an animation, coalesced to RGBA."""
        try:
            with Image.open(path) as im:
                frames = []
                for frame in ImageSequence.Iterator(im):
                    duration = int(frame.info.get("duration", 0) or 0)
                    frames.append(DecodedFrame(frame.convert("RGBA"), duration))
        except FileNotFoundError as exc:
            raise ExtractionFailedError(f"animation not found: {path}") from exc
        except (UnidentifiedImageError, OSError, EOFError) as exc:
            raise ExtractionFailedError(f"cannot decode {path.name}", tool_output=str(exc)) from exc
        if not frames:
            raise ExtractionFailedError(f"{path.name} contains no frames")
        return frames

    def layer_composite(
        self,
        size: tuple[int, int],
        layers: Sequence[tuple[Image.Image, tuple[int, int]]],
        background: tuple[int, int, int, int] | None = None,
    ) -> Image.Image:
        """Alpha-composite positioned RGBA layers bottom-to-top."""
        canvas = Image.new("RGBA", size, background or (0, 0, 0, 0))
        for image, (x, y) in layers:
            placed = clip_to_canvas(image, x, y, size)
            if placed is None:
                continue
            part, dest = placed
            canvas.alpha_composite(part, dest=dest)
        return canvas

    def encode(
        self,
        frames: Sequence[Image.Image],
        dest: Path,
        *,
        delays_cs: Sequence[int],
        dither: DitherMode,
        loop: int = 0,
    ) -> Path:
        """Write *frames* as a looping GIF with a shared 256-colour palette."""
        p_frames, transparency = quantize_frames(list(frames), dither=dither)
        first, rest = p_frames[0], p_frames[1:]
        save_kwargs = {
            "format": "GIF",
            "save_all": True,
            "append_images": rest,
            "duration": [max(1, d) * 10 for d in delays_cs],
            "loop": loop,
            "disposal": 2,
        }
        if transparency is not None:
            save_kwargs["transparency"] = transparency
        first.save(str(dest), **save_kwargs)
        return dest


# ---------------------------------------------------------------------------
# FFmpeg + gifsicle implementation
# ---------------------------------------------------------------------------

class FfmpegToolchain(MediaToolchain):
    """ffprobe/ffmpeg for clips, gifsicle for optimisation, Pillow for the rest."""

    name = "ffmpeg"

    _CAPABILITY_TOOLS = {
        "probe": "ffprobe",
        "resample": "ffmpeg",
        "optimize": "gifsicle",
    }

    def __init__(self, config: ComposerConfig | None = None) -> None:
        self.config = config or ComposerConfig()
        self.timeout = self.config.subprocess_timeout_s

    def tool_for(self, capability: str) -> str:
        attr = self._CAPABILITY_TOOLS.get(capability, capability)
        return getattr(self.config, attr, attr)

    def available(self, capability: str) -> bool:
        return shutil.which(self.tool_for(capability)) is not None

    def require(self, capability: str) -> None:
        resolve_tool(self.tool_for(capability))

    def probe_metadata(self, path: Path) -> MediaInfo:
        cmd = [
            self.config.ffprobe,
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=r_frame_rate,avg_frame_rate,width,height,duration"
                             ":format=duration",
            "-of", "json",
            str(path),
        ]
        result = _run(cmd, timeout=30, error_cls=ConversionFailedError)
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ConversionFailedError(
                f"unreadable ffprobe output for {path.name}", tool_output=result.stdout,
            ) from exc

        streams = data.get("streams") or [{}]
        stream = streams[0]
        fps = parse_frame_rate(stream.get("avg_frame_rate")) or parse_frame_rate(
            stream.get("r_frame_rate"))
        duration = _parse_float((data.get("format") or {}).get("duration")) or _parse_float(
            stream.get("duration"))
        return MediaInfo(
            fps=fps,
            duration_s=duration,
            width=stream.get("width"),
            height=stream.get("height"),
        )

    def resample(
        self,
        source: Path,
        dest: Path,
        *,
        frame_rate: Fraction,
        size: tuple[int, int],
        dither: DitherMode,
    ) -> Path:
        """Resample and scale with a per-clip palette.

        Filter graph::

            fps=100/d,
            scale=W:H:force_original_aspect_ratio=increase,
            split -> palettegen (stats_mode=diff)
                  -> paletteuse (dither, diff_mode=rectangle)

        Scaling covers the target box without distorting the aspect
        ratio; the layer's scale mode decides the final crop later.
        """
        width, height = size
        rate = f"{frame_rate.numerator}/{frame_rate.denominator}"
        vf = (
            f"fps={rate},"
            f"scale={width}:{height}:force_original_aspect_ratio=increase:flags=lanczos,"
            f"split[s0][s1];"
            f"[s0]palettegen=max_colors=256:stats_mode=diff[p];"
            f"[s1][p]paletteuse=dither={_FFMPEG_DITHER[dither]}:diff_mode=rectangle"
        )
        cmd = [
            self.config.ffmpeg, "-y",
            "-i", str(source),
            "-vf", vf,
            "-loop", "0",
            str(dest),
        ]
        _run(cmd, timeout=self.timeout, error_cls=ConversionFailedError)
        return dest

    def optimize(self, source: Path, dest: Path, *, lossy: int) -> Path:
        """Run gifsicle on an existing GIF.

        * ``-O3``             full cross-frame optimization
        * ``--lossy=N``       lossy LZW (omitted when N is 0)
        * ``--no-conserve-memory``  trade memory for speed
        """
        cmd = [self.config.gifsicle, "-O3", "--no-warnings", "--no-conserve-memory"]
        if lossy > 0:
            cmd.append(f"--lossy={lossy}")
        cmd += [str(source), "-o", str(dest)]
        size_mb = source.stat().st_size / (1024 * 1024)
        _run(cmd, timeout=max(60.0, size_mb * 2), error_cls=OptimizationError)
        return dest
