"""Video adapter: re-encode one video to WebM by pulling frames and pushing them to an encoder."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from converter.config import (
    DEFAULT_FPS,
    FPS_DETECTION_TIMEOUT_SECONDS,
    FPS_POLL_INTERVAL_SECONDS,
    FPS_SAMPLE_SECONDS,
    MAX_RASTER_DIMENSION,
    MIN_RECORDING_TIMEOUT_SECONDS,
    PROGRESS_EVERY_N_FRAMES,
    STUCK_FRAME_LIMIT,
    THUMBNAIL_TIMEOUT_SECONDS,
    VIDEO_OUTPUT_MIME_TYPES,
)
from converter.conversion.codec import Encoder, FrameSource, Surface, VideoCodec
from converter.conversion.models import Dimensions, SourceInfo, VideoSettings
from converter.conversion.progress import ProgressReporter, discard_reporter
from converter.conversion.resize import crf_to_bitrate, snap_frame_rate, target_video_resolution
from converter.errors import (
    ConversionTimeoutError,
    DecodeError,
    EncodeError,
    RasterTooLargeError,
    StuckError,
    UnsupportedFormatError,
)

logger = logging.getLogger("converter.video")

BitratePolicy = Callable[[float, int, int], int]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class EncodedVideo:
    data: bytes
    mime_type: str
    original: Dimensions
    final: Dimensions
    duration: float
    fps: float
    bitrate: int
    thumbnail: Optional[bytes] = None
    stop_reason: str = "ended"


def detection_start(duration: float) -> float:
    """Seek point for sampling: 1 s in, or a quarter of the way through short clips."""
    return min(1.0, duration / 4)


def recording_timeout(duration: float) -> float:
    return max(MIN_RECORDING_TIMEOUT_SECONDS, duration * 2)


def playback_progress(current_time: float, duration: float) -> int:
    """Map playback position onto the 60-98 band reserved for recording."""
    if duration <= 0:
        return 60
    value = round(60 + (current_time / duration) * 38)
    return max(60, min(value, 98))


def decode_failure_message(name: str) -> str:
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if ext == "wmv":
        return (
            f"Cannot process {name}. WMV files may use codecs that are not supported. "
            "For best results use MP4 or WebM."
        )
    if ext in ("mov", "mkv"):
        return (
            f"Cannot process {name}. This video format may not be fully supported. "
            "MP4 or WebM formats work more reliably."
        )
    return f"Cannot process {name}. The video file may use an unsupported codec or be corrupted."


class FpsDetector:
    """
    Measure a source's frame rate by sampling frame presentation times.

    Uses the source's precise frame clock when it has one, otherwise polls
    ``current_time`` at a coarse interval. Both loops are bounded by a sample
    window and a hard timeout; anything inconclusive falls back to the declared
    rate, then the default.
    ``clock`` and ``sleep`` are injectable for tests.
    """

    def __init__(
        self,
        sample_seconds: float = FPS_SAMPLE_SECONDS,
        timeout: float = FPS_DETECTION_TIMEOUT_SECONDS,
        poll_interval: float = FPS_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.sample_seconds = sample_seconds
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep

    async def detect(self, source: FrameSource, fallback: Optional[float] = None) -> float:
        """
        Measured frame rate of ``source``. When measurement fails or is inconclusive,
        ``fallback`` (the container's declared rate) is used before the default.
        """
        try:
            await source.seek(detection_start(source.duration))
            measured = await asyncio.wait_for(self._measure(source), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Frame rate detection timed out")
            measured = None
        except (DecodeError, EncodeError, OSError) as e:
            logger.warning("Frame rate detection failed (%s)", e)
            measured = None
        if measured is not None:
            return measured
        if fallback:
            logger.info("Using declared frame rate %.3f", fallback)
            return snap_frame_rate(fallback)
        logger.warning("No usable frame rate, using %s fps", DEFAULT_FPS)
        return DEFAULT_FPS

    async def _measure(self, source: FrameSource) -> Optional[float]:
        frame_clock = source.frame_clock()
        if frame_clock is not None:
            return await self._measure_with_clock(frame_clock)
        return await self._measure_by_polling(source)

    async def _measure_with_clock(self, frame_clock) -> float:
        start = await frame_clock.next_frame()
        frames = 0
        while True:
            now = await frame_clock.next_frame()
            frames += 1
            if now - start >= self.sample_seconds:
                return snap_frame_rate(frames / (now - start))

    async def _measure_by_polling(self, source: FrameSource) -> Optional[float]:
        max_polls = int(self.timeout / self.poll_interval) + 1
        start = self.clock()
        last_time = source.current_time
        frames = 0
        for _ in range(max_polls):
            await self.sleep(self.poll_interval)
            await source.advance()
            if source.ended:
                break
            if source.current_time != last_time:
                frames += 1
                last_time = source.current_time
            elapsed = self.clock() - start
            if elapsed >= self.sample_seconds:
                return snap_frame_rate(frames / elapsed)
        logger.warning("Frame rate polling was inconclusive")
        return None


async def choose_output_format(codec: VideoCodec) -> str:
    for mime_type in VIDEO_OUTPUT_MIME_TYPES:
        if await codec.supports(mime_type):
            return mime_type
    raise UnsupportedFormatError(
        "WebM video encoding is not supported on this host. "
        "Install an ffmpeg build with libvpx (VP8/VP9) support."
    )


async def _record(
    source: FrameSource,
    surface: Surface,
    encoder: Encoder,
    duration: float,
    fps: float,
    reporter: ProgressReporter,
    clock: Callable[[], float],
) -> str:
    """
    Resample the source onto the output frame grid and push frames to the encoder.

    Output frame ``k`` shows the latest source frame presented at or before ``k / fps``,
    so source frames are repeated or dropped and the output keeps the source's length.
    A ``duration`` of 0 means unknown: recording then runs until the source ends.
    Returns why recording stopped.
    """
    deadline = clock() + recording_timeout(duration)
    stuck = 0
    tick = 0
    frames = 0
    has_frame = False
    while True:
        target = tick / fps
        if duration > 0 and target >= duration:
            return "ended"
        if source.ended and (not has_frame or target >= source.current_time):
            return "ended"
        if clock() >= deadline:
            logger.warning("Video conversion timed out, stopping recording")
            return "timeout"

        while not source.ended and source.current_time <= target:
            current = source.current_time
            try:
                source.draw(surface)
                has_frame = True
            except Exception as e:
                logger.warning("Error drawing video frame at %.3fs: %s", current, e)
            await source.advance()
            if not source.ended and source.current_time == current:
                stuck += 1
                if stuck > STUCK_FRAME_LIMIT:
                    logger.warning("Video appears stuck at %.3fs, forcing completion", current)
                    return "stuck"
            else:
                stuck = 0

        if has_frame:
            await encoder.write(surface)
            frames += 1
            if duration > 0 and frames % PROGRESS_EVERY_N_FRAMES == 0:
                reporter.progress(playback_progress(target, duration))
        tick += 1


async def encode_video(
    source: bytes,
    info: SourceInfo,
    settings: VideoSettings,
    codec: VideoCodec,
    reporter: Optional[ProgressReporter] = None,
    fps_detector: Optional[FpsDetector] = None,
    bitrate_policy: BitratePolicy = crf_to_bitrate,
    clock: Callable[[], float] = time.monotonic,
) -> EncodedVideo:
    """Convert one video. ``settings`` is the already-merged (item or global) setting."""
    reporter = reporter or discard_reporter()
    fps_detector = fps_detector or FpsDetector()
    reporter.progress(10)

    metadata = await codec.probe(source, info)
    reporter.progress(20)
    if metadata.width <= 0 or metadata.height <= 0:
        raise DecodeError(decode_failure_message(info.name))

    original = Dimensions(metadata.width, metadata.height)
    final = Dimensions(*target_video_resolution(metadata.width, metadata.height, settings))
    if final.width > MAX_RASTER_DIMENSION or final.height > MAX_RASTER_DIMENSION:
        raise RasterTooLargeError(
            f"Target resolution too large. Maximum {MAX_RASTER_DIMENSION}x{MAX_RASTER_DIMENSION} pixels."
        )
    reporter.update(original_dimensions=original, final_dimensions=final, duration=metadata.duration)
    reporter.progress(30)

    mime_type = await choose_output_format(codec)
    reporter.progress(40)

    surface = Surface(final.width, final.height)
    frames: Optional[FrameSource] = None
    encoder: Optional[Encoder] = None
    try:
        reporter.progress(50)
        frames = await codec.open_source(source, metadata, final.width, final.height)

        if settings.fps in ("original", "default"):
            reporter.progress(55)
            fps = await fps_detector.detect(frames, fallback=metadata.frame_rate)
            logger.info("Detected video FPS for %s: %s", info.name, fps)
            await frames.seek(0)
        else:
            fps = float(settings.fps)

        audio_from = None
        if settings.audio_enabled:
            if frames.has_audio:
                audio_from = frames
            else:
                logger.warning("Audio requested for %s but the source has no audio track; continuing without audio", info.name)

        bitrate = bitrate_policy(settings.crf, final.width, final.height)
        encoder = await codec.open_encoder(surface, fps, bitrate, mime_type, audio_from=audio_from)
        reporter.progress(60)

        stop_reason = await _record(frames, surface, encoder, metadata.duration, fps, reporter, clock)
        data = await encoder.finalize()
        encoder = None
    finally:
        if encoder is not None:
            await encoder.abort()
        if frames is not None:
            await frames.close()
        surface.release()

    if not data:
        if stop_reason == "stuck":
            raise StuckError(f"Video {info.name} stalled before any frame was encoded")
        if stop_reason == "timeout":
            raise ConversionTimeoutError(f"Video {info.name} timed out before any frame was encoded")
        raise EncodeError(f"Encoder produced no output for {info.name}")
    reporter.progress(100)

    thumbnail = await _thumbnail(codec, data, metadata.duration)

    logger.info(
        "Converted video %s %sx%s -> %sx%s @ %s fps, %s bps (%s bytes, %s)",
        info.name, original.width, original.height, final.width, final.height,
        fps, bitrate, len(data), stop_reason,
    )
    return EncodedVideo(
        data=data,
        mime_type=mime_type,
        original=original,
        final=final,
        duration=metadata.duration,
        fps=fps,
        bitrate=bitrate,
        thumbnail=thumbnail,
        stop_reason=stop_reason,
    )


async def _thumbnail(codec: VideoCodec, data: bytes, duration: float) -> Optional[bytes]:
    """Best effort still of the encoded output; never fails the conversion."""
    try:
        return await asyncio.wait_for(
            codec.thumbnail(data, detection_start(duration)), THUMBNAIL_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.warning("Thumbnail generation timed out")
    except (DecodeError, EncodeError, OSError) as e:
        logger.warning("Could not generate converted video thumbnail: %s", e)
    return None
