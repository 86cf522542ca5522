"""Image adapter: decode, downscale and re-encode one image as WebP."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from converter.config import IMAGE_OUTPUT_FORMAT, MAX_RASTER_DIMENSION
from converter.conversion.codec import ImageCodec, Raster
from converter.conversion.models import Dimensions, ResizeSettings, SourceInfo
from converter.conversion.progress import ProgressReporter, discard_reporter
from converter.conversion.resize import resize_dimensions
from converter.errors import EncodeError, RasterTooLargeError

logger = logging.getLogger("converter.image")

# Above this requested quality, sources with alpha are encoded at full quality to avoid banding
ALPHA_QUALITY_THRESHOLD = 90


@dataclass
class EncodedImage:
    data: bytes
    original: Dimensions
    final: Dimensions


def effective_quality(quality_percent: int, has_alpha: bool) -> float:
    if has_alpha and quality_percent > ALPHA_QUALITY_THRESHOLD:
        return 1.0
    return quality_percent / 100


async def encode_image(
    source: bytes,
    info: SourceInfo,
    quality_percent: int,
    resize: ResizeSettings,
    codec: ImageCodec,
    reporter: Optional[ProgressReporter] = None,
) -> EncodedImage:
    """Convert one image. ``resize`` is the already-merged (item or global) setting."""
    reporter = reporter or discard_reporter()
    reporter.progress(10)

    decoded: Optional[Raster] = None
    surface: Optional[Raster] = None
    try:
        decoded = await asyncio.to_thread(codec.decode_image, source)
        reporter.progress(40)

        if decoded.width > MAX_RASTER_DIMENSION or decoded.height > MAX_RASTER_DIMENSION:
            raise RasterTooLargeError(
                f"Image dimensions too large. Maximum {MAX_RASTER_DIMENSION}x{MAX_RASTER_DIMENSION} pixels."
            )

        original = Dimensions(decoded.width, decoded.height)
        final = Dimensions(*resize_dimensions(decoded.width, decoded.height, resize))
        reporter.update(original_dimensions=original, final_dimensions=final)

        surface = await asyncio.to_thread(codec.resample, decoded, final.width, final.height)
        reporter.progress(60)

        quality = effective_quality(quality_percent, info.has_alpha)
        reporter.progress(80)

        data = await asyncio.to_thread(codec.encode_image, surface, IMAGE_OUTPUT_FORMAT, quality)
        if not data:
            raise EncodeError("Failed to create WebP image")
        reporter.progress(100)
        logger.info(
            "Converted image %s %sx%s -> %sx%s (%s bytes)",
            info.name, original.width, original.height, final.width, final.height, len(data),
        )
        return EncodedImage(data=data, original=original, final=final)
    finally:
        if surface is not None and surface is not decoded:
            codec.release(surface)
        if decoded is not None:
            codec.release(decoded)
