"""
Shared timeline for independently-timed sources.

All arithmetic is in integer centiseconds.  The output plays at the
smallest representative delay among the sources and lasts as long as
the longest source; shorter sources loop.
"""

from __future__ import annotations

import logging
import math
from typing import Mapping, Optional, Sequence

from gifcomposer.types import FrameSet, Timeline, VisibilityRange

logger = logging.getLogger(__name__)


def compute_timeline(
    frame_sets: Sequence[FrameSet],
    visibility: Optional[Mapping[str, VisibilityRange]] = None,
    max_output_frames: Optional[int] = None,
) -> Timeline:
    """Build the timeline once from the full list of frame sets.

    When *max_output_frames* is set and would be exceeded, the output
    delay is raised just enough to fit.  Edited visibility windows trim
    the output to ``[floor(min start * (T-1)), ceil(max end * (T-1))]``.
    """
    if not frame_sets:
        raise ValueError("at least one frame set is required")

    output_delay = min(fs.delay_cs for fs in frame_sets)
    max_duration = max(fs.total_duration_cs for fs in frame_sets)
    total = max(1, math.ceil(max_duration / output_delay))

    if max_output_frames and total > max_output_frames:
        output_delay = math.ceil(max_duration / max_output_frames)
        total = max(1, math.ceil(max_duration / output_delay))
        logger.info("Frame cap %d: output delay raised to %d cs", max_output_frames, output_delay)

    start, end = 0, total - 1
    edited = [r for r in (visibility or {}).values() if r.edited]
    if edited and total > 1:
        span = total - 1
        start = math.floor(min(r.start for r in edited) / 100 * span)
        end = math.ceil(max(r.end for r in edited) / 100 * span)
        start = max(0, min(start, span))
        end = max(start, min(end, span))

    timeline = Timeline(
        output_delay_cs=output_delay,
        max_duration_cs=max_duration,
        total_frames=total,
        start_frame=start,
        end_frame=end,
    )
    logger.info(
        "Timeline: %d cs delay, %.2fs, %d frames (output %d..%d)",
        output_delay, timeline.max_duration_s, total, start, end,
    )
    return timeline


def sample_index(frame_set: FrameSet, output_index: int, output_delay_cs: int) -> int:
    """Source frame to show at untrimmed output frame *output_index*.

    Uses the representative delay, so the index is clamped to the last
    frame for sources whose per-frame delays vary.
    """
    duration = frame_set.total_duration_cs
    if duration <= 0 or frame_set.frame_count == 1:
        return 0
    local = (output_index * output_delay_cs) % duration
    return min(local // frame_set.delay_cs, frame_set.frame_count - 1)


def is_visible(
    layer_id: Optional[str],
    visibility: Mapping[str, VisibilityRange],
    timeline: Timeline,
    source_index: int,
) -> bool:
    """True when *layer_id* has no window or the frame falls inside it."""
    if not layer_id or layer_id not in visibility:
        return True
    window = visibility[layer_id]
    if not window.edited:
        return True
    return window.contains(timeline.progress_percent(source_index))
