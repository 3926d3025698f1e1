"""
Job orchestration.

    ExportJob
      -> resolve sources          (resolver)
      -> convert clips            (rate)
      -> extract frames           (frames)
      -> composite                (compositor)
      -> overlay annotation       (overlay)
      -> encode, verify, optimize (assembly)
      -> publish                  (atomic replace into output_dir)

Each job runs sequentially inside its own temporary directory under the
output folder, which is removed however the job ends.  The output
filename is derived from the job content, so a repeated request is a
cheap no-op.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from gifcomposer.assembly import GifAssembler
from gifcomposer.cache import ContentCache, ConversionCache, DirectoryContentCache
from gifcomposer.compositor import TimelineCompositor, split_static_layers
from gifcomposer.config import ComposerConfig
from gifcomposer.exceptions import (
    CompositionFailedError,
    ConversionFailedError,
    EncodingFailedError,
    ExportCancelled,
    ExtractionFailedError,
    GifComposerError,
    JobValidationError,
    SourceNotFoundError,
    StageError,
    ToolchainUnavailableError,
)
from gifcomposer.frames import FrameExtractor
from gifcomposer.overlay import AnnotationOverlay
from gifcomposer.progress import ProgressTracker
from gifcomposer.rate import RateConverter
from gifcomposer.resolver import SourceResolver
from gifcomposer.toolchain import FfmpegToolchain, MediaToolchain
from gifcomposer.types import ExportJob, ExportResult, FrameSet

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".gifcompose-"


# ---------------------------------------------------------------------------
# Output naming
# ---------------------------------------------------------------------------

def slugify(name: str) -> str:
    slug = re.sub(r"[^\w\-]+", "_", name.strip()).strip("_")
    return slug or "frame"


def _bytes_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def job_digest(job: ExportJob) -> str:
    """SHA-256 over everything that affects the rendered output."""
    def bounds(b):
        return None if b is None else [b.x, b.y, b.width, b.height]

    payload = {
        "frame": job.frame_name,
        "size": list(job.frame_size),
        "background": None if job.background is None else list(job.background.as_rgba()),
        "dither": job.dither.value,
        "sources": [
            {
                "filename": s.filename,
                "cacheId": s.cache_id,
                "bounds": bounds(s.bounds),
                "cornerRadius": s.corner_radius,
                "clipBounds": bounds(s.clip_bounds),
                "clipCornerRadius": s.clip_corner_radius,
                "zIndex": s.z_index,
                "scaleMode": s.image_fill.scale_mode.value,
                "transform": s.image_fill.transform,
                "scalingFactor": s.image_fill.scaling_factor,
                "layerId": s.layer_id,
            }
            for s in job.sources
        ],
        "annotation": _bytes_digest(job.annotation_bytes),
        "bottom": _bytes_digest(job.bottom_layer_bytes),
        "static": [[s.index, s.layer_id, _bytes_digest(s.data)] for s in job.static_layers],
        "annotationLayers": [
            [s.index, s.layer_id, _bytes_digest(s.data)] for s in job.annotation_layers
        ],
        "visibility": {k: [v.start, v.end] for k, v in sorted(job.visibility.items())},
    }
    blob = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(blob).hexdigest()


def output_filename(job: ExportJob) -> str:
    return f"{slugify(job.frame_name)}_exported_{job_digest(job)[:8]}.gif"


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

_NEVER_RETRY = (ToolchainUnavailableError, SourceNotFoundError, JobValidationError)


@dataclass(frozen=True)
class RetryPolicy:
    """Whole-pipeline retry; each attempt gets a fresh temp dir."""
    max_attempts: int = 1
    backoff_s: float = 0.0
    retry_on: tuple = (StageError,)

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(exc, _NEVER_RETRY):
            return False
        return isinstance(exc, self.retry_on)


# ---------------------------------------------------------------------------
# Composer
# ---------------------------------------------------------------------------

def _cancelled(job: ExportJob) -> bool:
    return job.should_cancel is not None and bool(job.should_cancel())


class Composer:
    """Runs export jobs end to end."""

    def __init__(
        self,
        config: ComposerConfig | None = None,
        toolchain: MediaToolchain | None = None,
        cache: ContentCache | None = None,
        conversion_cache: ConversionCache | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.config = config or ComposerConfig()
        self.toolchain = toolchain or FfmpegToolchain(self.config)
        if cache is None and self.config.cache_dir is not None:
            cache = DirectoryContentCache(self.config.cache_dir)
        if conversion_cache is None and self.config.conversion_cache_dir is not None:
            conversion_cache = ConversionCache(self.config.conversion_cache_dir)
        self.retry = retry or RetryPolicy()

        self.resolver = SourceResolver(cache, self.config.search_folders)
        self.converter = RateConverter(self.toolchain, self.config, conversion_cache)
        self.extractor = FrameExtractor(self.toolchain)
        self.compositor = TimelineCompositor(self.toolchain, self.config.max_output_frames)
        self.overlay = AnnotationOverlay()
        self.assembler = GifAssembler(self.toolchain, self.config)

    # -- Public entry point ------------------------------------------------

    def run(self, job: ExportJob) -> ExportResult:
        job.validate()
        filename = output_filename(job)
        output_dir = Path(self.config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        dest = output_dir / filename
        tracker = ProgressTracker(job.on_progress)

        if dest.exists():
            logger.info("%s already exported; skipping", filename)
            tracker.report(100, "skipped: already exported")
            return ExportResult(dest, filename, dest.stat().st_size, skipped=True)

        attempt = 1
        while True:
            try:
                return self._run_once(job, dest, tracker)
            except GifComposerError as exc:
                if not self.retry.should_retry(exc, attempt):
                    raise
                logger.warning(
                    "Attempt %d/%d failed (%s); retrying",
                    attempt, self.retry.max_attempts, exc,
                )
                attempt += 1
                if self.retry.backoff_s > 0:
                    time.sleep(self.retry.backoff_s * attempt)

    # -- Stages --------------------------------------------------------------

    @contextmanager
    def _stage(
        self,
        job: ExportJob,
        tracker: ProgressTracker,
        name: str,
        message: str,
        error_factory: Callable[[str], GifComposerError],
    ):
        if _cancelled(job):
            raise ExportCancelled(f"cancelled before {name}")
        tracker.stage(name, message)
        logger.info("Stage %s: %s", name, message)
        try:
            yield
        except ExportCancelled:
            raise
        except GifComposerError as exc:
            if _cancelled(job):
                raise ExportCancelled(f"cancelled during {name}") from exc
            raise
        except Exception as exc:
            if _cancelled(job):
                raise ExportCancelled(f"cancelled during {name}") from exc
            raise error_factory(f"unexpected {type(exc).__name__}: {exc}") from exc

    def _run_once(self, job: ExportJob, dest: Path, tracker: ProgressTracker) -> ExportResult:
        stamp = int(time.time() * 1000)
        work_dir = Path(tempfile.mkdtemp(
            prefix=f"{TEMP_PREFIX}{slugify(job.session_id)}_{stamp}_",
            dir=dest.parent,
        ))
        logger.debug("Work dir %s", work_dir)
        try:
            sources = job.sources
            with self._stage(job, tracker, "resolve", "Resolving sources",
                             lambda m: StageError(m, stage="resolve")):
                resolved = []
                for i, src in enumerate(sources):
                    path = self.resolver.resolve(src, sibling_count=len(sources))
                    resolved.append(src.resolved(path))
                    tracker.fraction("resolve", i + 1, len(sources), f"Resolved {path.name}")

            frame_sets: list[Optional[FrameSet]] = [None] * len(resolved)
            clips = [i for i, s in enumerate(resolved) if s.is_clip]
            with self._stage(job, tracker, "convert", "Converting clips", ConversionFailedError):
                for n, i in enumerate(clips, 1):
                    if _cancelled(job):
                        raise ExportCancelled("cancelled while converting")
                    src = resolved[i]
                    frame_sets[i] = self.converter.convert(
                        src.path, src.bounds, work_dir, dither=job.dither)
                    tracker.fraction("convert", n, len(clips), f"Converted {src.path.name}")

            with self._stage(job, tracker, "extract", "Extracting frames", ExtractionFailedError):
                pending = [i for i, fs in enumerate(frame_sets) if fs is None]
                for n, i in enumerate(pending, 1):
                    if _cancelled(job):
                        raise ExportCancelled("cancelled while extracting")
                    frame_sets[i] = self.extractor.extract(resolved[i].path)
                    tracker.fraction("extract", n, len(pending),
                                     f"Extracted {resolved[i].path.name}")

            with self._stage(job, tracker, "compose", "Compositing", CompositionFailedError):
                sequence = self.compositor.compose(
                    frame_sets, resolved, job, work_dir,
                    on_frame=tracker.frame_callback("compose", "Compositing frame"),
                )

            with self._stage(job, tracker, "overlay", "Overlaying annotation",
                             CompositionFailedError):
                _, _, above = split_static_layers(job.static_layers, resolved)
                sequence = self.overlay.apply(
                    sequence, above, job, work_dir,
                    on_frame=tracker.frame_callback("overlay", "Overlaying frame"),
                )

            raw = work_dir / dest.name
            with self._stage(job, tracker, "encode", "Encoding GIF", EncodingFailedError):
                delay = sequence.uniform_delay
                self.assembler.encode(
                    sequence.paths,
                    sequence.delays_cs if delay is None else delay,
                    raw,
                    job.dither,
                )
                self.assembler.verify(raw)

            with self._stage(job, tracker, "optimize", "Optimizing", EncodingFailedError):
                self.assembler.optimize(raw)
                self.assembler.verify(raw)

            if _cancelled(job):
                raise ExportCancelled("cancelled before publishing")
            os.replace(raw, dest)
            size = dest.stat().st_size
            tracker.report(100, "done")
            logger.info("Exported %s (%.1f KB)", dest, size / 1024)
            return ExportResult(dest, dest.name, size)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)


# ---------------------------------------------------------------------------
# Concurrent runner
# ---------------------------------------------------------------------------

class JobRunner:
    """Run independent jobs on a bounded thread pool."""

    def __init__(self, composer: Composer, max_workers: int | None = None) -> None:
        self.composer = composer
        self.max_workers = max_workers or composer.config.worker_count
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="gifcompose")

    def submit(self, job: ExportJob) -> Future:
        return self._pool.submit(self.composer.run, job)

    def run_all(self, jobs: Iterable[ExportJob]) -> list[Future]:
        return [self.submit(job) for job in jobs]

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> JobRunner:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
