"""
Layer geometry and palette processing.

Transforms decoded source frames into canvas-ready layers:
    1. Fit into the layer bounds (FILL / FIT / CROP / TILE)
    2. Round corners with an alpha mask
    3. Clip to the clip ancestor (intersection plus its corner radius)
    4. Quantize to one global GIF palette with an ordered dither
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

from gifcomposer.types import Bounds, DitherMode, ImageFill, ScaleMode, SourceDescriptor

logger = logging.getLogger(__name__)

ALPHA_THRESHOLD = 128
TRANSPARENT_INDEX = 255

# 8x8 Bayer threshold matrix.
_BAYER_8 = np.array([
    [0, 32, 8, 40, 2, 34, 10, 42],
    [48, 16, 56, 24, 50, 18, 58, 26],
    [12, 44, 4, 36, 14, 46, 6, 38],
    [60, 28, 52, 20, 62, 30, 54, 22],
    [3, 35, 11, 43, 1, 33, 9, 41],
    [51, 19, 59, 27, 49, 17, 57, 25],
    [15, 47, 7, 39, 13, 45, 5, 37],
    [63, 31, 55, 23, 61, 29, 53, 21],
], dtype=np.float32)


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------

def _resize(img, width, height):
    width, height = max(1, int(width)), max(1, int(height))
    if img.size == (width, height):
        return img
    return img.resize((width, height), Image.Resampling.LANCZOS)


def _crop_to(img, width, height, left, top):
    """Crop a (width x height) window; areas outside *img* stay transparent."""
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    canvas.paste(img, (-left, -top))
    return canvas


def fit_to_bounds(img: Image.Image, width: int, height: int, fill: ImageFill) -> Image.Image:
    """Return *img* mapped into an exactly (width x height) RGBA image."""
    img = img.convert("RGBA")
    src_w, src_h = img.size
    mode = fill.scale_mode

    if mode is ScaleMode.FIT:
        scale = min(width / src_w, height / src_h)
        scaled = _resize(img, round(src_w * scale), round(src_h * scale))
        canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        canvas.paste(scaled, ((width - scaled.width) // 2, (height - scaled.height) // 2))
        return canvas

    if mode is ScaleMode.CROP:
        if fill.transform is None:
            # Keep native size, centre-crop or pad.
            return _crop_to(img, width, height, (src_w - width) // 2, (src_h - height) // 2)
        a, d, tx, ty = fill.scale_and_offset()
        scaled_w, scaled_h = round(width / a), round(height / d)
        scaled = _resize(img, scaled_w, scaled_h)
        return _crop_to(scaled, width, height, round(tx * scaled_w), round(ty * scaled_h))

    if mode is ScaleMode.TILE:
        factor = fill.scaling_factor if fill.scaling_factor > 0 else 1.0
        tile = _resize(img, round(src_w * factor), round(src_h * factor))
        canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        for top in range(0, height, tile.height):
            for left in range(0, width, tile.width):
                canvas.paste(tile, (left, top))
        return canvas

    # FILL: cover the bounds, then honour any extra user zoom/pan.
    scale = max(width / src_w, height / src_h)
    if fill.is_identity:
        scaled_w, scaled_h = round(src_w * scale), round(src_h * scale)
        left = round((scaled_w - width) / 2)
        top = round((scaled_h - height) / 2)
    else:
        a, d, tx, ty = fill.scale_and_offset()
        scaled_w = round(src_w * scale / a)
        scaled_h = round(src_h * scale / d)
        left = round(tx * scaled_w)
        top = round(ty * scaled_h)
    left = max(0, min(left, scaled_w - width))
    top = max(0, min(top, scaled_h - height))
    scaled = _resize(img, scaled_w, scaled_h)
    return _crop_to(scaled, width, height, left, top)


# ---------------------------------------------------------------------------
# Masks and clipping
# ---------------------------------------------------------------------------

def rounded_mask(size: Tuple[int, int], radius: float) -> Image.Image:
    """Return an L-mode mask with rounded corners (255 inside)."""
    width, height = size
    mask = Image.new("L", size, 0)
    draw = ImageDraw.Draw(mask)
    radius = max(0, min(int(round(radius)), width // 2, height // 2))
    draw.rounded_rectangle((0, 0, width - 1, height - 1), radius=radius, fill=255)
    return mask


def apply_mask(img: Image.Image, mask: Image.Image) -> Image.Image:
    """Multiply *img*'s alpha by *mask*."""
    alpha = np.asarray(img.getchannel("A"), dtype=np.uint16)
    factor = np.asarray(mask, dtype=np.uint16)
    out = img.copy()
    out.putalpha(Image.fromarray((alpha * factor // 255).astype(np.uint8)))
    return out


@dataclass(frozen=True)
class Placement:
    """Where a prepared layer lands on the canvas."""
    x: int
    y: int
    width: int
    height: int
    crop: Optional[Tuple[int, int, int, int]] = None   # box inside the fitted layer
    clip_mask: Optional[Image.Image] = None


def plan_placement(source: SourceDescriptor) -> Optional[Placement]:
    """Work out the on-canvas box of a source once per job.

    Returns None when the clip ancestor hides the layer completely.
    """
    x, y, width, height = source.bounds.rounded()
    if source.clip_bounds is None:
        return Placement(x, y, width, height)

    layer_box = Bounds(x, y, width, height)
    cx, cy, cw, ch = source.clip_bounds.rounded()
    visible = layer_box.intersect(Bounds(cx, cy, cw, ch))
    if visible is None:
        return None
    vx, vy, vw, vh = visible.rounded()
    crop = (vx - x, vy - y, vx - x + vw, vy - y + vh)

    clip_mask = None
    if source.clip_corner_radius > 0:
        full = rounded_mask((cw, ch), source.clip_corner_radius)
        clip_mask = full.crop((vx - cx, vy - cy, vx - cx + vw, vy - cy + vh))
    return Placement(vx, vy, vw, vh, crop=crop, clip_mask=clip_mask)


def prepare_layer(
    frame: Image.Image,
    source: SourceDescriptor,
    placement: Placement,
    corner_mask: Optional[Image.Image] = None,
) -> Image.Image:
    """Fit, round and clip one source frame for *placement*."""
    _, _, width, height = source.bounds.rounded()
    layer = fit_to_bounds(frame, width, height, source.image_fill)
    if corner_mask is not None:
        layer = apply_mask(layer, corner_mask)
    if placement.crop is not None:
        layer = layer.crop(placement.crop)
    if placement.clip_mask is not None:
        layer = apply_mask(layer, placement.clip_mask)
    return layer


def clip_to_canvas(img, x, y, canvas_size):
    """Crop *img* so that placing it at (x, y) stays inside the canvas.

    Returns ``(part, (dest_x, dest_y))`` or None when nothing overlaps.
    """
    cw, ch = canvas_size
    left = max(0, -x)
    top = max(0, -y)
    right = min(img.width, cw - x)
    bottom = min(img.height, ch - y)
    if right <= left or bottom <= top:
        return None
    if (left, top, right, bottom) != (0, 0, img.width, img.height):
        img = img.crop((left, top, right, bottom))
    return img, (x + left, y + top)


def load_raster(data: bytes, size: Optional[Tuple[int, int]] = None) -> Image.Image:
    """Decode PNG bytes to RGBA, resizing to *size* when it differs."""
    with Image.open(io.BytesIO(data)) as im:
        img = im.convert("RGBA")
    if size is not None and img.size != tuple(size):
        logger.debug("Resizing raster %s -> %s", img.size, size)
        img = img.resize(tuple(size), Image.Resampling.LANCZOS)
    return img


# ---------------------------------------------------------------------------
# Palette quantization
# ---------------------------------------------------------------------------

def ordered_dither(img: Image.Image, levels: int = 6) -> Image.Image:
    """Offset RGB values by a tiled Bayer matrix before palette mapping.

    *levels* approximates how many palette steps each channel gets; the
    offset spans one step so flat gradients break into a regular pattern
    instead of bands.
    """
    arr = np.asarray(img.convert("RGB"), dtype=np.float32)
    h, w = arr.shape[:2]
    reps = (math.ceil(h / 8), math.ceil(w / 8))
    threshold = np.tile(_BAYER_8, reps)[:h, :w]
    spread = 255.0 / levels
    offset = (threshold / 64.0 - 0.5) * spread
    out = np.clip(arr + offset[:, :, None], 0, 255).astype(np.uint8)
    return Image.fromarray(out)


def generate_global_palette(images, max_colors=256):
    """Build one palette from a mosaic of up to 64 evenly sampled frames.

    Returns a P-mode reference image whose palette holds at most
    *max_colors* entries, padded to 256 with copies of entry 0.
    """
    frame_w, frame_h = images[0].size
    sample_indices = list(range(len(images)))
    if len(images) > 64:
        step = len(images) / 64
        sample_indices = [int(i * step) for i in range(64)]

    cols = min(len(sample_indices), 8)
    rows = math.ceil(len(sample_indices) / cols)
    mosaic = Image.new("RGB", (frame_w * cols, frame_h * rows))
    for idx, frame_idx in enumerate(sample_indices):
        r, c = divmod(idx, cols)
        mosaic.paste(images[frame_idx].convert("RGB"), (c * frame_w, r * frame_h))

    quantized = mosaic.quantize(
        colors=max_colors,
        method=Image.Quantize.MEDIANCUT,
        dither=Image.Dither.NONE,
    )
    palette = list(quantized.getpalette() or [0, 0, 0])[: max_colors * 3]
    used = len(palette) // 3
    palette = palette[: used * 3] + palette[:3] * (256 - used)

    reference = Image.new("P", (1, 1))
    reference.putpalette(palette)
    return reference, used


def quantize_frames(frames, dither=DitherMode.SMOOTH_GRADIENT):
    """Map RGBA frames onto a shared palette.

    When any frame has transparent pixels, index 255 is reserved for
    transparency and the palette gets 255 real colours.  Returns
    ``(p_frames, transparency_index_or_None)``.
    """
    alphas = [np.asarray(f.getchannel("A")) for f in frames]
    has_alpha = any(bool((a < ALPHA_THRESHOLD).any()) for a in alphas)
    max_colors = 255 if has_alpha else 256

    reference, used = generate_global_palette(frames, max_colors=max_colors)
    palette = reference.getpalette()

    p_frames = []
    for frame, alpha in zip(frames, alphas):
        rgb = frame.convert("RGB")
        if dither is DitherMode.SMOOTH_GRADIENT:
            rgb = ordered_dither(rgb)
        q = rgb.quantize(palette=reference, dither=Image.Dither.NONE)
        indices = np.array(q, dtype=np.uint8)
        # Padding entries duplicate entry 0.
        indices[indices >= used] = 0
        if has_alpha:
            indices[alpha < ALPHA_THRESHOLD] = TRANSPARENT_INDEX
        out = Image.frombytes("P", frame.size, indices.tobytes())
        out.putpalette(palette)
        p_frames.append(out)

    return p_frames, (TRANSPARENT_INDEX if has_alpha else None)
