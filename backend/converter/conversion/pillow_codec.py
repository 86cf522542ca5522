"""Image codec backed by Pillow."""
import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

from converter.config import MAX_RASTER_DIMENSION, WEBP_EFFORT
from converter.conversion.codec import Raster
from converter.errors import DecodeError, EncodeError, RasterTooLargeError

logger = logging.getLogger("converter.pillow")

# Pillow warns above MAX_IMAGE_PIXELS and refuses above twice that. Any raster within
# MAX_RASTER_DIMENSION per side must open; larger ones are rejected as too large.
if Image.MAX_IMAGE_PIXELS is not None and Image.MAX_IMAGE_PIXELS < MAX_RASTER_DIMENSION ** 2:
    Image.MAX_IMAGE_PIXELS = MAX_RASTER_DIMENSION ** 2


class PillowImageCodec:
    """Decode with Image.open, resample with LANCZOS, encode with Image.save."""

    def __init__(self, effort: int = WEBP_EFFORT):
        self.effort = effort

    def decode_image(self, data: bytes) -> Raster:
        # Image.open only parses the header; pixels load on first use, after the size check.
        try:
            img = Image.open(io.BytesIO(data))
        except Image.DecompressionBombError as e:
            raise RasterTooLargeError(
                f"Image dimensions too large. Maximum {MAX_RASTER_DIMENSION}x{MAX_RASTER_DIMENSION} pixels."
            ) from e
        except (UnidentifiedImageError, OSError) as e:
            raise DecodeError(f"Failed to load image: {e}") from e
        return Raster(width=img.width, height=img.height, handle=img)

    def resample(self, raster: Raster, width: int, height: int) -> Raster:
        img: Image.Image = raster.handle
        converted: Optional[Image.Image] = None
        try:
            if img.mode not in ("RGB", "RGBA"):
                has_alpha = img.mode in ("LA", "PA") or "transparency" in img.info
                converted = img = img.convert("RGBA" if has_alpha else "RGB")
            if img.size == (width, height):
                out = img.copy()
            else:
                out = img.resize((width, height), Image.Resampling.LANCZOS)
        except (OSError, ValueError) as e:
            raise DecodeError(f"Failed to load image: {e}") from e
        finally:
            if converted is not None:
                converted.close()
        return Raster(width=width, height=height, handle=out)

    def encode_image(self, raster: Raster, fmt: str, quality: float) -> Optional[bytes]:
        if fmt.lower() != "webp":
            raise EncodeError(f"Unsupported output format: {fmt}")
        buf = io.BytesIO()
        try:
            raster.handle.save(buf, format="WEBP", quality=int(round(quality * 100)), method=self.effort)
        except (OSError, ValueError, KeyError) as e:
            raise EncodeError(f"Failed to create WebP image: {e}") from e
        logger.debug("Encoded %sx%s WebP at quality %.2f", raster.width, raster.height, quality)
        return buf.getvalue() or None

    def release(self, raster: Raster) -> None:
        if raster.handle is not None:
            raster.handle.close()
            raster.handle = None
