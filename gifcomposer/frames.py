"""
Frame extraction.

    animation file  -->  [Toolchain.decode]  -->  FrameSet

Each frame keeps its own delay.  Delays under 2 cs are played back by
browsers as 10 cs, so they are normalised the same way before any
duration math happens: ``FrameSet.total_duration_cs`` sums the normalised
delays.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Sequence

from gifcomposer.exceptions import ExtractionFailedError, GifComposerError
from gifcomposer.toolchain import MediaToolchain
from gifcomposer.types import DEFAULT_DELAY_CS, MIN_DELAY_CS, FrameSet

logger = logging.getLogger(__name__)


def normalize_delay(delay_cs: int) -> int:
    return DEFAULT_DELAY_CS if delay_cs < MIN_DELAY_CS else delay_cs


def ms_to_cs(duration_ms: int) -> int:
    return int(round(duration_ms / 10))


def representative_delay(delays_cs: Sequence[int]) -> int:
    """Most common delay of at least 2 cs; ties go to the smallest."""
    counts = Counter(d for d in delays_cs if d >= MIN_DELAY_CS)
    if not counts:
        return DEFAULT_DELAY_CS
    best = max(counts.values())
    return min(d for d, n in counts.items() if n == best)


class FrameExtractor:
    """Decode an animation into a read-only FrameSet."""

    def __init__(self, toolchain: MediaToolchain) -> None:
        self.toolchain = toolchain

    def extract(self, animation_path: Path) -> FrameSet:
        path = Path(animation_path)
        try:
            decoded = self.toolchain.decode(path)
        except GifComposerError:
            raise
        except (OSError, ValueError) as exc:
            raise ExtractionFailedError(f"cannot decode {path.name}", tool_output=str(exc)) from exc

        delays = tuple(normalize_delay(ms_to_cs(f.duration_ms)) for f in decoded)
        frame_set = FrameSet(
            path=path,
            frames=tuple(f.image for f in decoded),
            delays_cs=delays,
            delay_cs=representative_delay(delays),
        )
        logger.info(
            "Extracted %s: %d frames, %d cs delay, %.2fs",
            path.name, frame_set.frame_count, frame_set.delay_cs, frame_set.total_duration_s,
        )
        return frame_set
