"""
Clip rate conversion.

GIF delays are whole centiseconds, so a clip can only play at exactly
``100 / d`` fps for an integer ``d``.  Resampling at the clip's native
rate (e.g. 30 fps -> 3.33 cs) would round every delay and drift the
playback speed; instead the clip is resampled at ``100 / d`` with
``d = max(1, round(100 / F))`` and the small residual speed error is
logged.
"""

from __future__ import annotations

import logging
import shutil
from fractions import Fraction
from pathlib import Path

from gifcomposer.cache import ConversionCache
from gifcomposer.config import ComposerConfig
from gifcomposer.exceptions import ConversionFailedError
from gifcomposer.frames import FrameExtractor
from gifcomposer.toolchain import MediaToolchain
from gifcomposer.types import Bounds, DitherMode, FrameSet

logger = logging.getLogger(__name__)

SPEED_WARN_THRESHOLD = 0.02


def choose_delay(fps: float) -> int:
    """Whole-centisecond delay closest to one frame at *fps*."""
    return max(1, int(round(100 / fps)))


def speed_error(fps: float, delay_cs: int) -> float:
    """Relative playback speed error of ``100 / delay_cs`` against *fps*."""
    return abs(1 - (100 / delay_cs) / fps)


class RateConverter:
    """Turn a video clip into a GIF frame set at a GIF-exact frame rate."""

    def __init__(
        self,
        toolchain: MediaToolchain,
        config: ComposerConfig | None = None,
        cache: ConversionCache | None = None,
    ) -> None:
        self.toolchain = toolchain
        self.config = config or ComposerConfig()
        self.cache = cache
        self.extractor = FrameExtractor(toolchain)

    def convert(
        self,
        clip_path: Path,
        target_bounds: Bounds,
        work_dir: Path,
        dither: DitherMode | None = None,
    ) -> FrameSet:
        clip_path = Path(clip_path)
        dither = dither or self.config.dither
        _, _, width, height = target_bounds.rounded()
        dest = Path(work_dir) / f"{clip_path.stem}_converted.gif"

        key = None
        if self.cache is not None:
            key = ConversionCache.key(clip_path, (width, height), dither)
            hit = self.cache.get(key)
            if hit is not None:
                logger.info("Conversion cache hit for %s", clip_path.name)
                shutil.copy2(hit, dest)
                return self._extract(dest, clip_path)

        self.toolchain.require("probe")
        self.toolchain.require("resample")

        info = self.toolchain.probe_metadata(clip_path)
        fps = info.fps
        if not fps:
            logger.warning(
                "No usable frame rate for %s; assuming %.0f fps",
                clip_path.name, self.config.fallback_fps,
            )
            fps = self.config.fallback_fps

        delay = choose_delay(fps)
        error = speed_error(fps, delay)
        log = logger.warning if error > SPEED_WARN_THRESHOLD else logger.info
        log(
            "Resampling %s: %.3f fps -> %d cs (%.2f fps), speed error %.2f%%",
            clip_path.name, fps, delay, 100 / delay, error * 100,
        )

        self.toolchain.resample(
            clip_path,
            dest,
            frame_rate=Fraction(100, delay),
            size=(width, height),
            dither=dither,
        )
        frame_set = self._extract(dest, clip_path)

        if info.duration_s:
            logger.debug(
                "%s: source %.2fs, converted %.2fs",
                clip_path.name, info.duration_s, frame_set.total_duration_s,
            )
        if self.cache is not None and key is not None:
            try:
                self.cache.put(key, dest)
            except OSError as exc:
                logger.warning("Could not cache conversion of %s: %s", clip_path.name, exc)
        return frame_set

    def _extract(self, converted: Path, clip_path: Path) -> FrameSet:
        if not converted.is_file() or converted.stat().st_size == 0:
            raise ConversionFailedError(f"no output produced for {clip_path.name}")
        frame_set = self.extractor.extract(converted)
        if frame_set.frame_count < self.config.min_converted_frames:
            raise ConversionFailedError(
                f"{clip_path.name} produced {frame_set.frame_count} frame(s); "
                f"need at least {self.config.min_converted_frames}"
            )
        return frame_set
