"""
GIF assembly and optimisation.

Encodes composited PNG frames into one looping GIF with a shared
palette, checks the result decodes, then optionally shrinks it with
gifsicle.  Optimisation is best-effort: any failure keeps the raw
encode.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Sequence, Union

from PIL import Image, UnidentifiedImageError

from gifcomposer.config import ComposerConfig
from gifcomposer.exceptions import (
    EncodingFailedError,
    GifComposerError,
    OptimizationError,
    ToolchainUnavailableError,
)
from gifcomposer.toolchain import MediaToolchain
from gifcomposer.types import DitherMode

logger = logging.getLogger(__name__)

MIN_OUTPUT_BYTES = 100


def _load_frames(paths: Sequence[Path]) -> list[Image.Image]:
    images = []
    for p in paths:
        with Image.open(p) as im:
            images.append(im.convert("RGBA"))
    return images


class GifAssembler:
    """Assemble composited frames into an animated GIF."""

    def __init__(self, toolchain: MediaToolchain, config: ComposerConfig | None = None) -> None:
        self.toolchain = toolchain
        self.config = config or ComposerConfig()

    # ---- Encoding --------------------------------------------------------

    def encode(
        self,
        frames: Sequence[Path],
        delay_cs: Union[int, Sequence[int]],
        dest: Path,
        dither: DitherMode | None = None,
    ) -> Path:
        """Write *frames* as an infinitely looping GIF at *dest*.

        *delay_cs* is either one delay for every frame or a per-frame
        list.
        """
        if not frames:
            raise EncodingFailedError("no frames to encode")
        if isinstance(delay_cs, int):
            delays = [delay_cs] * len(frames)
        else:
            delays = list(delay_cs)
        if len(delays) != len(frames):
            raise EncodingFailedError(f"{len(frames)} frames but {len(delays)} delays")

        dither = dither or self.config.dither
        try:
            images = _load_frames(frames)
            self.toolchain.encode(images, dest, delays_cs=delays, dither=dither)
        except GifComposerError:
            raise
        except (OSError, ValueError) as exc:
            raise EncodingFailedError(f"cannot write {dest.name}", tool_output=str(exc)) from exc

        logger.info(
            "Encoded %d frames (%s) -> %s (%.1f KB)",
            len(frames), dither.value, dest.name, dest.stat().st_size / 1024,
        )
        return dest

    def verify(self, path: Path) -> None:
        """Raise EncodingFailedError unless *path* is a decodable GIF."""
        if not path.is_file():
            raise EncodingFailedError(f"{path.name} was not written")
        size = path.stat().st_size
        if size < MIN_OUTPUT_BYTES:
            raise EncodingFailedError(f"{path.name} is only {size} bytes")
        try:
            with Image.open(path) as im:
                if im.format != "GIF":
                    raise EncodingFailedError(f"{path.name} is {im.format}, not GIF")
                im.seek(0)
                im.load()
        except (UnidentifiedImageError, OSError, EOFError) as exc:
            raise EncodingFailedError(f"{path.name} does not decode", tool_output=str(exc)) from exc

    # ---- gifsicle post-optimization -------------------------------------

    def optimize(self, raw: Path) -> Path:
        """Shrink *raw* in place with gifsicle when that helps.

        The optimised copy replaces the raw file only when it is smaller.
        Failures, including a missing gifsicle, are logged and ignored.
        """
        if not self.config.optimize:
            return raw
        optimized = raw.with_suffix(".opt.gif")
        try:
            if not self.toolchain.available("optimize"):
                raise ToolchainUnavailableError(self.toolchain.tool_for("optimize"))
            self.toolchain.optimize(raw, optimized, lossy=self.config.optimize_lossy)
            before = raw.stat().st_size
            after = optimized.stat().st_size if optimized.is_file() else 0
            if 0 < after < before:
                shutil.move(str(optimized), str(raw))
                logger.info("Optimized %s: %d -> %d bytes", raw.name, before, after)
            else:
                logger.info("Optimization did not shrink %s; keeping raw encode", raw.name)
        except (OptimizationError, ToolchainUnavailableError, OSError) as exc:
            logger.warning("Skipping optimization of %s: %s", raw.name, exc)
        finally:
            optimized.unlink(missing_ok=True)
        return raw
