"""
Annotation overlay.

Draws, on every composited frame and in document order, the static
layers above the highest source and then the annotation: the separate
annotation layers when supplied, else the single flattened raster.
Runs of layers without a visibility window are merged once up front.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional, Sequence

from PIL import Image

from gifcomposer.compositor import CompositeSequence
from gifcomposer.exceptions import ExportCancelled
from gifcomposer.processing import load_raster
from gifcomposer.timeline import is_visible
from gifcomposer.types import ExportJob, StaticLayer

logger = logging.getLogger(__name__)


def _has_window(layer: StaticLayer, job: ExportJob) -> bool:
    window = job.visibility.get(layer.layer_id) if layer.layer_id else None
    return window is not None and window.edited


class AnnotationOverlay:
    """Composite top-most layers onto finished frames."""

    def _groups(self, layers: Sequence[StaticLayer], job: ExportJob, windowed: bool):
        """Yield ``(image, layer_or_None)``; None marks a pre-merged run."""
        size = job.frame_size
        run: Optional[Image.Image] = None
        groups = []
        for layer in layers:
            image = load_raster(layer.data, size)
            if windowed and _has_window(layer, job):
                if run is not None:
                    groups.append((run, None))
                    run = None
                groups.append((image, layer))
                continue
            run = image if run is None else Image.alpha_composite(run, image)
        if run is not None:
            groups.append((run, None))
        return groups

    def apply(
        self,
        composited: CompositeSequence,
        layers: Sequence[StaticLayer],
        job: ExportJob,
        work_dir: Path,
        on_frame: Optional[Callable[[int, int], None]] = None,
    ) -> CompositeSequence:
        ordered = sorted(layers, key=lambda s: s.index)
        if job.annotation_layers:
            ordered += sorted(job.annotation_layers, key=lambda s: s.index)
        elif job.annotation_bytes:
            ordered.append(StaticLayer(data=job.annotation_bytes, index=0, name="annotation"))
        if not ordered:
            return composited

        timeline = composited.timeline
        groups = self._groups(ordered, job, windowed=timeline is not None)
        logger.info("Overlaying %d layer group(s) on %d frames", len(groups), len(composited.paths))

        out_dir = Path(work_dir) / "overlaid"
        out_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        total = len(composited.paths)
        for o, frame_path in enumerate(composited.paths):
            if job.should_cancel is not None and job.should_cancel():
                raise ExportCancelled("cancelled while overlaying")
            with Image.open(frame_path) as im:
                frame = im.convert("RGBA")
            source_index = composited.source_indices[o] if composited.source_indices else o
            for image, layer in groups:
                if layer is not None and not is_visible(
                        layer.layer_id, job.visibility, timeline, source_index):
                    continue
                if image.size != frame.size:
                    image = image.resize(frame.size, Image.Resampling.LANCZOS)
                frame = Image.alpha_composite(frame, image)
            path = out_dir / frame_path.name
            frame.save(path, format="PNG")
            paths.append(path)
            if on_frame is not None:
                on_frame(o + 1, total)

        return CompositeSequence(
            paths=paths,
            delays_cs=list(composited.delays_cs),
            source_indices=list(composited.source_indices),
            timeline=timeline,
        )
