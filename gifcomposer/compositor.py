"""
Timeline compositing.

Stacks every animated source and the static layers that sit between
them onto the frame canvas:

    background -> bottom layer -> static layers below the lowest source
    -> sources and interleaved static layers by z-index

Static layers above the highest source and the annotation are drawn
afterwards by :mod:`gifcomposer.overlay`.

Two paths:

* direct path, one source and no edited visibility window: one output
  frame per source frame, per-frame delays preserved;
* timeline path, otherwise: a shared timeline at the smallest
  representative delay, each source sampled at its own speed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from PIL import Image

from gifcomposer.exceptions import CompositionFailedError, ExportCancelled
from gifcomposer.processing import (
    Placement,
    load_raster,
    plan_placement,
    prepare_layer,
    rounded_mask,
)
from gifcomposer.timeline import compute_timeline, is_visible, sample_index
from gifcomposer.toolchain import MediaToolchain
from gifcomposer.types import ExportJob, FrameSet, SourceDescriptor, StaticLayer, Timeline

logger = logging.getLogger(__name__)

FrameCallback = Callable[[int, int], None]


@dataclass
class CompositeSequence:
    """Composited frames on disk and the delay of each."""
    paths: list[Path]
    delays_cs: list[int]
    source_indices: list[int] = field(default_factory=list)
    timeline: Optional[Timeline] = None

    @property
    def uniform_delay(self) -> Optional[int]:
        unique = set(self.delays_cs)
        return unique.pop() if len(unique) == 1 else None


def split_static_layers(
    static_layers: Sequence[StaticLayer],
    sources: Sequence[SourceDescriptor],
) -> tuple[list[StaticLayer], list[StaticLayer], list[StaticLayer]]:
    """Partition static layers into (below, between, above) the sources."""
    ordered = sorted(static_layers, key=lambda s: s.index)
    if not sources:
        return ordered, [], []
    lowest = min(s.z_index for s in sources)
    highest = max(s.z_index for s in sources)
    below = [s for s in ordered if s.index < lowest]
    between = [s for s in ordered if lowest <= s.index <= highest]
    above = [s for s in ordered if s.index > highest]
    return below, between, above


class _PreparedSource:
    """Per-job geometry of one source plus a cache of fitted frames."""

    def __init__(self, index: int, source: SourceDescriptor, frame_set: FrameSet) -> None:
        self.index = index
        self.source = source
        self.frame_set = frame_set
        self.placement: Optional[Placement] = plan_placement(source)
        self.corner_mask = None
        if source.corner_radius > 0:
            _, _, w, h = source.bounds.rounded()
            self.corner_mask = rounded_mask((w, h), source.corner_radius)
        self._cache: dict[int, Image.Image] = {}

    def layer(self, frame_index: int):
        if self.placement is None:
            return None
        if frame_index not in self._cache:
            self._cache[frame_index] = prepare_layer(
                self.frame_set.frames[frame_index],
                self.source,
                self.placement,
                self.corner_mask,
            )
        return self._cache[frame_index], (self.placement.x, self.placement.y)


class TimelineCompositor:
    """Composite sources and static layers frame by frame."""

    def __init__(self, toolchain: MediaToolchain, max_output_frames: Optional[int] = None) -> None:
        self.toolchain = toolchain
        self.max_output_frames = max_output_frames

    def compose(
        self,
        frame_sets: Sequence[FrameSet],
        sources: Sequence[SourceDescriptor],
        job: ExportJob,
        work_dir: Path,
        on_frame: Optional[FrameCallback] = None,
    ) -> CompositeSequence:
        if len(frame_sets) != len(sources):
            raise CompositionFailedError(
                f"{len(sources)} sources but {len(frame_sets)} frame sets")

        out_dir = Path(work_dir) / "composite"
        out_dir.mkdir(parents=True, exist_ok=True)
        size = job.frame_size
        background = job.background.as_rgba() if job.background and job.background.visible else None

        below, between, _ = split_static_layers(job.static_layers, sources)
        base_layers = []
        if job.bottom_layer_bytes:
            base_layers.append(load_raster(job.bottom_layer_bytes, size))
        statics = {id(s): load_raster(s.data, size) for s in below + between}

        prepared = [_PreparedSource(i, s, fs) for i, (s, fs) in enumerate(zip(sources, frame_sets))]
        for p in prepared:
            if p.placement is None:
                logger.info("Source %s is fully clipped; skipping", p.source.filename)

        # Document order: statics sort before a source that shares their index.
        stack = [(s.index, 0, "static", s) for s in between]
        stack += [(p.source.z_index, 1, "source", p) for p in prepared]
        stack.sort(key=lambda item: (item[0], item[1]))

        single = len(sources) == 1 and not job.has_visibility_edits
        timeline = None
        if single:
            frame_set = frame_sets[0]
            schedule = [(i, {0: i}) for i in range(frame_set.frame_count)]
            delays = list(frame_set.delays_cs)
            logger.info("Direct path: %d frames", frame_set.frame_count)
        else:
            timeline = compute_timeline(frame_sets, job.visibility, self.max_output_frames)
            schedule = []
            for i in range(timeline.start_frame, timeline.end_frame + 1):
                picks = {
                    p.index: sample_index(p.frame_set, i, timeline.output_delay_cs)
                    for p in prepared
                }
                schedule.append((i, picks))
            delays = [timeline.output_delay_cs] * len(schedule)

        paths: list[Path] = []
        source_indices: list[int] = []
        total = len(schedule)
        for o, (source_index, picks) in enumerate(schedule):
            if job.should_cancel is not None and job.should_cancel():
                raise ExportCancelled("cancelled while compositing")

            layers = [(img, (0, 0)) for img in base_layers]
            layers += [(statics[id(s)], (0, 0)) for s in below
                       if timeline is None or is_visible(s.layer_id, job.visibility, timeline,
                                                         source_index)]
            for _, _, kind, item in stack:
                layer_id = item.layer_id if kind == "static" else item.source.layer_id
                if timeline is not None and not is_visible(
                        layer_id, job.visibility, timeline, source_index):
                    continue
                if kind == "static":
                    layers.append((statics[id(item)], (0, 0)))
                    continue
                placed = item.layer(picks[item.index])
                if placed is not None:
                    layers.append(placed)

            frame = self.toolchain.layer_composite(size, layers, background)
            path = out_dir / f"frame_{o:05d}.png"
            frame.save(path, format="PNG")
            paths.append(path)
            source_indices.append(source_index)
            logger.debug("Composited frame %d/%d", o + 1, total)
            if on_frame is not None:
                on_frame(o + 1, total)

        return CompositeSequence(
            paths=paths,
            delays_cs=delays,
            source_indices=source_indices,
            timeline=timeline,
        )
