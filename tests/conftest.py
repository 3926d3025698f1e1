"""
Shared fixtures for the gifcomposer test suite.

``FakeToolchain`` replaces the ffprobe/ffmpeg/gifsicle operations so the
suite runs without any external binaries; decode, composite and encode
stay the real Pillow implementations.
"""

from __future__ import annotations

import io
import shutil
from collections import Counter
from fractions import Fraction
from pathlib import Path

import pytest
from PIL import Image

from gifcomposer.config import ComposerConfig
from gifcomposer.exceptions import OptimizationError
from gifcomposer.toolchain import MediaInfo, MediaToolchain
from gifcomposer.types import DitherMode, FrameSet


def make_gif(
    path: Path,
    n_frames: int = 5,
    duration_ms=40,
    size: tuple[int, int] = (20, 20),
    base_color: tuple[int, int, int] = (200, 30, 30),
) -> Path:
    """Write an animated GIF whose frames all differ (Pillow merges equal ones)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    frames = []
    for i in range(n_frames):
        r, g, b = base_color
        color = (r, (g + i * 4) % 256, (b + i * 4) % 256)
        frames.append(Image.new("RGB", size, color))
    frames[0].save(
        str(path),
        format="GIF",
        save_all=True,
        append_images=frames[1:],
        duration=duration_ms,
        loop=0,
    )
    return path


def png_bytes(size=(20, 20), color=(0, 0, 0, 0), box=None, box_color=(0, 255, 0, 255)) -> bytes:
    """PNG raster, optionally with an opaque box ``(x0, y0, x1, y1)``."""
    img = Image.new("RGBA", size, color)
    if box is not None:
        img.paste(Image.new("RGBA", (box[2] - box[0], box[3] - box[1]), box_color),
                  (box[0], box[1]))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_frame_set(n_frames: int, delay_cs: int, size=(4, 4), color=(255, 0, 0, 255),
                   delays=None) -> FrameSet:
    frames = tuple(Image.new("RGBA", size, color) for _ in range(n_frames))
    delays = tuple(delays) if delays is not None else (delay_cs,) * n_frames
    return FrameSet(path=Path("memory.gif"), frames=frames, delays_cs=delays, delay_cs=delay_cs)


class FakeToolchain(MediaToolchain):
    """In-process stand-in for the external media tools."""

    name = "fake"

    def __init__(self, fps=30.0, duration_s=2.0, available=True, resample_frames=None,
                 optimize_error=False, shrink=True):
        self.info = MediaInfo(fps=fps, duration_s=duration_s, width=64, height=48)
        self._available = available
        self.resample_frames = resample_frames
        self.optimize_error = optimize_error
        self.shrink = shrink
        self.calls = Counter()
        self.resample_args = []

    def available(self, capability: str) -> bool:
        return self._available

    def probe_metadata(self, path: Path) -> MediaInfo:
        self.calls["probe_metadata"] += 1
        return self.info

    def resample(self, source, dest, *, frame_rate: Fraction, size, dither: DitherMode):
        self.calls["resample"] += 1
        self.resample_args.append({"frame_rate": frame_rate, "size": size, "dither": dither})
        delay_cs = int(round(100 / frame_rate))
        duration = self.info.duration_s or 1.0
        n = self.resample_frames
        if n is None:
            n = max(1, round(duration * float(frame_rate)))
        return make_gif(Path(dest), n_frames=n, duration_ms=delay_cs * 10, size=size)

    def optimize(self, source: Path, dest: Path, *, lossy: int) -> Path:
        self.calls["optimize"] += 1
        if self.optimize_error:
            raise OptimizationError("gifsicle exited with status 1", tool_output="boom")
        if self.shrink:
            # A single-frame GIF: valid and smaller than any multi-frame input.
            with Image.open(source) as im:
                first = im.convert("RGB")
            first.save(dest, format="GIF")
        else:
            shutil.copy2(source, dest)
        return dest

    def decode(self, path):
        self.calls["decode"] += 1
        return super().decode(path)

    def layer_composite(self, size, layers, background=None):
        self.calls["layer_composite"] += 1
        return super().layer_composite(size, layers, background)

    def encode(self, frames, dest, *, delays_cs, dither, loop=0):
        self.calls["encode"] += 1
        return super().encode(frames, dest, delays_cs=delays_cs, dither=dither, loop=loop)


@pytest.fixture
def fake_toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def search_dir(tmp_path) -> Path:
    d = tmp_path / "captures"
    d.mkdir()
    return d


@pytest.fixture
def config(tmp_path, search_dir) -> ComposerConfig:
    return ComposerConfig(
        output_dir=tmp_path / "exports",
        search_folders=[search_dir],
        cache_dir=tmp_path / "cache",
        conversion_cache_dir=None,
        max_concurrent_jobs=2,
    )
