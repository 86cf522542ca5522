"""Batch conversion of pending items with bounded concurrency, retries and progress tracking."""
import asyncio
import logging
import os
from typing import Awaitable, Callable, Iterable, Optional, Union

from converter.config import (
    BATCH_PAUSE_MS,
    FALLBACK_PARALLELISM,
    MAX_CONCURRENCY,
    RETRY_ATTEMPTS,
    RETRY_BACKOFF_MS,
)
from converter.conversion.codec import ImageCodec, VideoCodec
from converter.conversion.ffmpeg_codec import FFmpegVideoCodec
from converter.conversion.image import EncodedImage, encode_image
from converter.conversion.models import ConversionItem, ConversionSettings, ItemStatus
from converter.conversion.pillow_codec import PillowImageCodec
from converter.conversion.progress import ProgressReporter, UpdateChannel, UpdateItem
from converter.conversion.video import EncodedVideo, FpsDetector, encode_video
from converter.errors import ConversionError

logger = logging.getLogger("converter.service")

Sleep = Callable[[float], Awaitable[None]]
OnError = Callable[[ConversionItem, Exception], None]
Encoded = Union[EncodedImage, EncodedVideo]


class ConversionService:
    """Dispatches items to the image and video adapters in bounded, sequential batches."""

    def __init__(
        self,
        image_codec: Optional[ImageCodec] = None,
        video_codec: Optional[VideoCodec] = None,
        fps_detector: Optional[FpsDetector] = None,
        max_concurrency: int = MAX_CONCURRENCY,
        attempts: int = RETRY_ATTEMPTS,
        backoff_seconds: float = RETRY_BACKOFF_MS / 1000,
        batch_pause_seconds: float = BATCH_PAUSE_MS / 1000,
        cpu_count: Callable[[], Optional[int]] = os.cpu_count,
        sleep: Sleep = asyncio.sleep,
    ):
        self.image_codec = image_codec or PillowImageCodec()
        self.video_codec = video_codec or FFmpegVideoCodec()
        self.fps_detector = fps_detector
        self.max_concurrency = max_concurrency
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds
        self.batch_pause_seconds = batch_pause_seconds
        self._cpu_count = cpu_count
        self._sleep = sleep
        logger.info("ConversionService initialized with max_concurrency=%s", max_concurrency)

    def concurrency_limit(self, pending: int) -> int:
        hint = self._cpu_count() or FALLBACK_PARALLELISM
        return max(1, min(hint, self.max_concurrency, pending))

    async def convert_all(
        self,
        items: Iterable[ConversionItem],
        settings: ConversionSettings,
        update: UpdateItem,
        on_error: Optional[OnError] = None,
    ) -> None:
        """
        Convert every PENDING item. All mutation goes through ``update(item_id, **changes)``.
        A failing item is marked ERRORED and reported to ``on_error``; the rest carry on.
        """
        pending = [item for item in items if item.status == ItemStatus.PENDING]
        if not pending:
            return
        limit = self.concurrency_limit(len(pending))
        logger.info("Converting %s item(s) in batches of %s", len(pending), limit)

        channel = UpdateChannel(update)
        channel.start()
        try:
            for start in range(0, len(pending), limit):
                batch = pending[start:start + limit]
                await asyncio.gather(
                    *(self._convert_item(item, settings, channel.reporter(item.item_id), on_error) for item in batch)
                )
                if start + limit < len(pending):
                    await self._sleep(self.batch_pause_seconds)
        finally:
            await channel.close()

    async def _convert_item(
        self,
        item: ConversionItem,
        settings: ConversionSettings,
        reporter: ProgressReporter,
        on_error: Optional[OnError],
    ) -> None:
        reporter.update(status=ItemStatus.CONVERTING, progress=0)
        try:
            result = await self._with_retry(item, lambda: self._encode(item, settings, reporter))
        except Exception as e:
            message = str(e) or e.__class__.__name__
            if isinstance(e, ConversionError):
                logger.error("Conversion failed for %s: %s", item.name, message)
            else:
                logger.exception("Conversion failed for %s: %s", item.name, e)
            reporter.update(
                status=ItemStatus.ERRORED,
                progress=0,
                error=message,
                converted=None,
                converted_size=None,
            )
            if on_error:
                on_error(item, e)
            return

        changes = {
            "status": ItemStatus.CONVERTED,
            "progress": 100,
            "converted": result.data,
            "converted_size": len(result.data),
            "error": None,
        }
        if isinstance(result, EncodedImage):
            changes["converted_preview"] = result.data
        elif result.thumbnail is not None:
            changes["converted_preview"] = result.thumbnail
        reporter.update(**changes)

    async def _with_retry(self, item: ConversionItem, work: Callable[[], Awaitable[Encoded]]) -> Encoded:
        for attempt in range(1, self.attempts + 1):
            try:
                return await work()
            except Exception as e:
                if isinstance(e, ConversionError) and not e.retryable:
                    raise
                if attempt == self.attempts:
                    raise
                logger.warning("Retry attempt %s for %s after error: %s", attempt, item.name, e)
                await self._sleep(self.backoff_seconds * attempt)
        raise RuntimeError("Max retries exceeded")

    async def _encode(self, item: ConversionItem, settings: ConversionSettings, reporter: ProgressReporter) -> Encoded:
        if item.is_video:
            return await encode_video(
                item.source,
                item.info,
                item.effective_video(settings.video),
                self.video_codec,
                reporter,
                fps_detector=self.fps_detector,
            )
        return await encode_image(
            item.source,
            item.info,
            item.effective_quality(settings.quality),
            item.effective_resize(settings.resize),
            self.image_codec,
            reporter,
        )


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service
