"""
Job request parsing.

Turns the plugin host's request mapping (camelCase keys, rasters as
byte arrays, lists of ints or base64 strings) into a validated
:class:`~gifcomposer.types.ExportJob`.  Job files on disk are YAML or
JSON with the same keys; raster fields may instead name a file relative
to the job file (``annotationPath``, ``bottomLayerPath``, ``path``).
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from gifcomposer.exceptions import JobValidationError
from gifcomposer.types import (
    Bounds,
    Color,
    DitherMode,
    ExportJob,
    ImageFill,
    ScaleMode,
    SourceDescriptor,
    StaticLayer,
    VisibilityRange,
)

logger = logging.getLogger(__name__)


def _number(value: Any, field: str, default: Optional[float] = None) -> float:
    if value is None:
        if default is None:
            raise JobValidationError(field, "is required")
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise JobValidationError(field, f"expected a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise JobValidationError(field, "must be finite")
    return number


def _mapping(value: Any, field: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise JobValidationError(field, f"expected an object, got {type(value).__name__}")
    return value


def parse_bounds(raw: Any, field: str) -> Bounds:
    data = _mapping(raw, field)
    return Bounds(
        x=_number(data.get("x"), f"{field}.x", 0.0),
        y=_number(data.get("y"), f"{field}.y", 0.0),
        width=_number(data.get("width"), f"{field}.width"),
        height=_number(data.get("height"), f"{field}.height"),
    )


def decode_bytes(raw: Any, field: str) -> bytes:
    """Accept bytes, a list of ints or a base64 string."""
    if raw is None:
        return b""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, str):
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise JobValidationError(field, "invalid base64 data") from exc
    if isinstance(raw, (list, tuple)):
        try:
            return bytes(raw)
        except (TypeError, ValueError) as exc:
            raise JobValidationError(field, "byte values must be ints in 0..255") from exc
    raise JobValidationError(field, f"unsupported raster encoding {type(raw).__name__}")


def _raster(data: Mapping[str, Any], bytes_key: str, path_key: str,
            field: str, base_dir: Optional[Path]) -> bytes:
    if data.get(bytes_key) is not None:
        return decode_bytes(data[bytes_key], f"{field}.{bytes_key}" if field else bytes_key)
    path_value = data.get(path_key)
    if not path_value:
        return b""
    path = Path(path_value).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    try:
        return path.read_bytes()
    except OSError as exc:
        raise JobValidationError(path_key, f"cannot read {path}: {exc}") from exc


def parse_image_fill(raw: Any, field: str) -> ImageFill:
    if raw is None:
        return ImageFill()
    data = _mapping(raw, field)
    mode_name = str(data.get("scaleMode") or "FILL").upper()
    try:
        mode = ScaleMode(mode_name)
    except ValueError as exc:
        raise JobValidationError(f"{field}.scaleMode", f"unknown mode {mode_name!r}") from exc
    transform = data.get("imageTransform", data.get("transform"))
    return ImageFill(
        scale_mode=mode,
        transform=ImageFill.parse_transform(transform),
        scaling_factor=_number(data.get("scalingFactor"), f"{field}.scalingFactor", 1.0),
    )


def parse_source(raw: Any, index: int) -> SourceDescriptor:
    field = f"sourceDescriptors[{index}]"
    data = _mapping(raw, field)
    if data.get("bounds") is None:
        raise JobValidationError(f"{field}.bounds", "is required")
    clip = data.get("clipBounds")
    return SourceDescriptor(
        filename=str(data.get("filename") or ""),
        cache_id=data.get("cacheId") or None,
        bounds=parse_bounds(data["bounds"], f"{field}.bounds"),
        corner_radius=_number(data.get("cornerRadius"), f"{field}.cornerRadius", 0.0),
        clip_bounds=parse_bounds(clip, f"{field}.clipBounds") if clip else None,
        clip_corner_radius=_number(
            data.get("clipCornerRadius"), f"{field}.clipCornerRadius", 0.0),
        z_index=int(_number(data.get("zIndex"), f"{field}.zIndex", float(index))),
        image_fill=parse_image_fill(data.get("imageFillInfo"), f"{field}.imageFillInfo"),
        layer_id=data.get("layerId") or None,
    )


def parse_static_layers(raw: Any, field: str, base_dir: Optional[Path]) -> list[StaticLayer]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise JobValidationError(field, "expected a list")
    layers = []
    for i, item in enumerate(raw):
        data = _mapping(item, f"{field}[{i}]")
        layers.append(StaticLayer(
            data=_raster(data, "bytes", "path", f"{field}[{i}]", base_dir),
            index=int(_number(data.get("index"), f"{field}[{i}].index", float(i))),
            name=str(data.get("name") or ""),
            layer_id=data.get("layerId") or None,
        ))
    return layers


def parse_visibility(raw: Any) -> dict[str, VisibilityRange]:
    if not raw:
        return {}
    data = _mapping(raw, "timelineData")
    windows = {}
    for layer_id, window in data.items():
        field = f"timelineData[{layer_id}]"
        w = _mapping(window, field)
        start = _number(w.get("start"), f"{field}.start", 0.0)
        end = _number(w.get("end"), f"{field}.end", 100.0)
        if not 0 <= start <= end <= 100:
            raise JobValidationError(field, f"invalid window {start}..{end}")
        windows[str(layer_id)] = VisibilityRange(start, end)
    return windows


def parse_job_request(request: Mapping[str, Any], base_dir: Optional[Path] = None) -> ExportJob:
    """Build and validate an ExportJob from a request mapping."""
    data = _mapping(request, "request")

    raw_sources = data.get("sourceDescriptors")
    if raw_sources is None:
        raw_sources = data.get("gifInfos")
    if not isinstance(raw_sources, list):
        raise JobValidationError("sourceDescriptors", "expected a list")
    sources = [parse_source(item, i) for i, item in enumerate(raw_sources)]

    frame = _mapping(data.get("frameBounds"), "frameBounds")
    frame_size = (
        int(round(_number(frame.get("width"), "frameBounds.width"))),
        int(round(_number(frame.get("height"), "frameBounds.height"))),
    )

    background = None
    if data.get("frameBackground"):
        bg = _mapping(data["frameBackground"], "frameBackground")
        background = Color(
            r=_number(bg.get("r"), "frameBackground.r", 0.0),
            g=_number(bg.get("g"), "frameBackground.g", 0.0),
            b=_number(bg.get("b"), "frameBackground.b", 0.0),
            a=_number(bg.get("a"), "frameBackground.a", 1.0),
        )
        # Colours sent as 0..1 floats.
        if max(background.r, background.g, background.b) <= 1 and background.a <= 1:
            background = Color(background.r * 255, background.g * 255,
                               background.b * 255, background.a)

    algorithm = data.get("gifAlgorithm") or DitherMode.SMOOTH_GRADIENT.value
    try:
        dither = DitherMode(algorithm)
    except ValueError as exc:
        raise JobValidationError("gifAlgorithm", f"unknown algorithm {algorithm!r}") from exc

    job = ExportJob(
        frame_name=str(data.get("frameName") or "frame"),
        sources=sources,
        frame_size=frame_size,
        annotation_bytes=_raster(data, "annotationBytes", "annotationPath", "", base_dir),
        background=background,
        bottom_layer_bytes=_raster(data, "bottomLayerBytes", "bottomLayerPath", "", base_dir),
        static_layers=parse_static_layers(data.get("staticLayers"), "staticLayers", base_dir),
        annotation_layers=parse_static_layers(
            data.get("annotationLayers"), "annotationLayers", base_dir),
        visibility=parse_visibility(data.get("timelineData")),
        dither=dither,
        session_id=str(data.get("connectionId") or "local"),
    )
    job.validate()
    return job


def load_job_file(path: Path) -> ExportJob:
    """Read a YAML or JSON job file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise JobValidationError(str(path), f"unparseable job file: {exc}") from exc
    if not isinstance(data, Mapping):
        raise JobValidationError(str(path), "expected a mapping at the top level")
    logger.debug("Loaded job file %s", path)
    return parse_job_request(data, base_dir=path.parent)
