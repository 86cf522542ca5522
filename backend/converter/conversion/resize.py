"""Target dimension, bitrate and frame-rate planning. Pure functions, no I/O."""
import logging
from typing import Tuple

from converter.config import (
    COMMON_FRAME_RATES,
    DEFAULT_FPS,
    MAX_DETECTED_FPS,
    MAX_VIDEO_BITRATE,
    MIN_DETECTED_FPS,
    MIN_VIDEO_BITRATE,
    NOMINAL_BITRATE_FPS,
)
from converter.conversion.models import ResizeSettings, VideoSettings

logger = logging.getLogger("converter.resize")

# (upper CRF bound, bits per pixel); lower CRF asks for more bits
_CRF_BITS_PER_PIXEL = (
    (18, 0.08),
    (23, 0.05),
    (28, 0.03),
    (35, 0.02),
)
_LOWEST_BITS_PER_PIXEL = 0.01


def resize_dimensions(
    width: int,
    height: int,
    settings: ResizeSettings,
) -> Tuple[int, int]:
    """
    Scale (width, height) down to fit inside (max_width, max_height), keeping aspect ratio.
    Disabled settings or a source already inside the box return the input unchanged.
    """
    if not settings.enabled:
        return width, height
    if width <= settings.max_width and height <= settings.max_height:
        return width, height
    scale = min(settings.max_width / width, settings.max_height / height)
    return round(width * scale), round(height * scale)


def parse_resolution(value: str) -> Tuple[int, int]:
    """Parse a "WxH" preset into (width, height). Raises ValueError when malformed."""
    parts = (value or "").strip().lower().split("x", 1)
    if len(parts) != 2 or not parts[0].isdigit() or not parts[1].isdigit():
        raise ValueError(f"Invalid resolution: {value!r}")
    w, h = int(parts[0]), int(parts[1])
    if w <= 0 or h <= 0:
        raise ValueError(f"Invalid resolution: {value!r}")
    return w, h


def target_video_resolution(
    width: int,
    height: int,
    settings: VideoSettings,
) -> Tuple[int, int]:
    """
    - original: keep source size.
    - custom: explicit custom_width x custom_height when both are set, else source size.
    - "WxH" preset: fit the preset box, the binding side taking the preset value.
    """
    resolution = (settings.resolution or "original").strip().lower()
    if resolution in ("original", "default"):
        return width, height
    if resolution == "custom":
        if settings.custom_width and settings.custom_height:
            return settings.custom_width, settings.custom_height
        return width, height

    box_w, box_h = parse_resolution(resolution)
    source_aspect = width / height
    if source_aspect > box_w / box_h:
        return box_w, round(box_w / source_aspect)
    return round(box_h * source_aspect), box_h


def crf_to_bitrate(crf: float, width: int, height: int) -> int:
    """Approximate video bits per second for a CRF at a given resolution, clamped to web-friendly bounds."""
    bits_per_pixel = _LOWEST_BITS_PER_PIXEL
    for upper, bpp in _CRF_BITS_PER_PIXEL:
        if crf <= upper:
            bits_per_pixel = bpp
            break
    bitrate = round(width * height * bits_per_pixel * NOMINAL_BITRATE_FPS)
    return max(MIN_VIDEO_BITRATE, min(bitrate, MAX_VIDEO_BITRATE))


def snap_frame_rate(fps: float) -> float:
    """
    Snap a measured rate to the nearest common frame rate within 1 fps, else round it.
    Results outside the plausible range fall back to the default.
    """
    nearest = min(COMMON_FRAME_RATES, key=lambda rate: abs(fps - rate))
    snapped = nearest if abs(fps - nearest) < 1 else round(fps)
    if snapped < MIN_DETECTED_FPS or snapped > MAX_DETECTED_FPS:
        logger.warning("Measured frame rate %.2f looks unreliable, using %s", fps, DEFAULT_FPS)
        return DEFAULT_FPS
    return snapped
