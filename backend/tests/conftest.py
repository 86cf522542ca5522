"""Shared fixtures and fake codecs."""
import asyncio
import time
from typing import Optional

import pytest

from converter.conversion.codec import Raster, Surface, VideoMetadata
from converter.conversion.models import ConversionItem, MediaKind, SourceInfo, new_item_id
from converter.errors import DecodeError, EncodeError


def image_bytes(width: int, height: int) -> bytes:
    """Fake image payload understood by FakeImageCodec."""
    return f"{width}x{height}".encode()


class FakeImageCodec:
    """Decodes b"WxH" payloads; ``fail_times`` makes the first N encodes raise EncodeError."""

    def __init__(self, fail_times: int = 0, encode_result: Optional[bytes] = b"", delay: float = 0.0):
        self.fail_times = fail_times
        self.encode_result = encode_result
        self.delay = delay
        self.decode_calls = 0
        self.encode_calls = 0
        self.encoded_quality: list[float] = []
        self.released: list[Raster] = []

    def decode_image(self, data: bytes) -> Raster:
        self.decode_calls += 1
        try:
            w, h = (int(v) for v in data.decode().split("x"))
        except ValueError as e:
            raise DecodeError("Failed to load image") from e
        return Raster(width=w, height=h, handle="decoded")

    def resample(self, raster: Raster, width: int, height: int) -> Raster:
        return Raster(width=width, height=height, handle="surface")

    def encode_image(self, raster: Raster, fmt: str, quality: float) -> Optional[bytes]:
        self.encode_calls += 1
        self.encoded_quality.append(quality)
        if self.delay:
            time.sleep(self.delay)
        if self.encode_calls <= self.fail_times:
            raise EncodeError("Failed to create WebP image")
        if self.encode_result is None:
            return None
        return self.encode_result or f"{fmt}:{raster.width}x{raster.height}".encode()

    def release(self, raster: Raster) -> None:
        self.released.append(raster)


class FakeFrameClock:
    def __init__(self, timestamps: Optional[list[float]] = None, hang: bool = False):
        self.timestamps = list(timestamps or [])
        self.hang = hang

    async def next_frame(self) -> float:
        if self.hang:
            await asyncio.Event().wait()
        if not self.timestamps:
            raise DecodeError("No more frame timestamps")
        return self.timestamps.pop(0)


class FakeFrameSource:
    """
    ``duration`` seconds of frames at ``rate`` fps. ``stall_after`` freezes the clock after that many
    advances; ``bad_frames`` are indices whose draw raises.
    """

    def __init__(
        self,
        duration: float,
        rate: float = 10.0,
        has_audio: bool = False,
        stall_after: Optional[int] = None,
        bad_frames: Optional[set] = None,
        clock: Optional[FakeFrameClock] = None,
    ):
        self.duration = duration
        self.rate = rate
        self.has_audio = has_audio
        self.stall_after = stall_after
        self.bad_frames = bad_frames or set()
        self.clock = clock
        self.current_time = 0.0
        self.ended = False
        self.index = 0
        self.advances = 0
        self.seeks: list[float] = []
        self.drawn: list[int] = []
        self.closed = False

    def frame_clock(self):
        return self.clock

    async def seek(self, seconds: float) -> None:
        self.seeks.append(seconds)
        self.index = int(round(seconds * self.rate))
        self.current_time = self.index / self.rate
        self.ended = self.current_time >= self.duration

    async def advance(self) -> None:
        self.advances += 1
        if self.stall_after is not None and self.advances > self.stall_after:
            return
        self.index += 1
        self.current_time = self.index / self.rate
        if self.current_time >= self.duration:
            self.ended = True

    def draw(self, surface: Surface) -> None:
        if self.index in self.bad_frames:
            raise RuntimeError(f"decode hiccup at frame {self.index}")
        self.drawn.append(self.index)

    async def close(self) -> None:
        self.closed = True


class FakeEncoder:
    def __init__(self, fail_on_write: bool = False):
        self.fail_on_write = fail_on_write
        self.frames = 0
        self.finalized = False
        self.aborted = False

    async def write(self, surface: Surface) -> None:
        if self.fail_on_write:
            raise EncodeError("Encoder error: boom")
        self.frames += 1

    async def finalize(self) -> bytes:
        self.finalized = True
        return b"W" * self.frames

    async def abort(self) -> None:
        self.aborted = True


class FakeVideoCodec:
    def __init__(
        self,
        metadata: Optional[VideoMetadata] = None,
        supported: Optional[set] = None,
        source_factory=None,
        encoder: Optional[FakeEncoder] = None,
        thumbnail_error: Optional[Exception] = None,
    ):
        self.metadata = metadata or VideoMetadata(width=1920, height=1080, duration=2.0, frame_rate=10.0)
        self.supported = {"video/webm;codecs=vp8", "video/webm;codecs=vp9", "video/webm"} if supported is None else supported
        self.source_factory = source_factory or (lambda md: FakeFrameSource(md.duration, rate=md.frame_rate or 10.0, has_audio=md.has_audio))
        self.encoder = encoder or FakeEncoder()
        self.thumbnail_error = thumbnail_error
        self.sources: list[FakeFrameSource] = []
        self.encoder_args: Optional[dict] = None

    async def probe(self, data: bytes, info: SourceInfo) -> VideoMetadata:
        return self.metadata

    async def supports(self, mime_type: str) -> bool:
        return mime_type in self.supported

    async def open_source(self, data, metadata, width, height):
        source = self.source_factory(metadata)
        self.sources.append(source)
        return source

    async def open_encoder(self, surface, fps, bitrate, mime_type, audio_from=None):
        self.encoder_args = {
            "width": surface.width,
            "height": surface.height,
            "fps": fps,
            "bitrate": bitrate,
            "mime_type": mime_type,
            "audio_from": audio_from,
        }
        return self.encoder

    async def thumbnail(self, data: bytes, at_seconds: float) -> bytes:
        if self.thumbnail_error is not None:
            raise self.thumbnail_error
        return b"JPEG"


class RecordingSleep:
    """Async sleep replacement that records delays and returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class StepClock:
    """Monotonic clock that moves ``step`` seconds on every read."""

    def __init__(self, step: float):
        self.step = step
        self.calls = 0

    def __call__(self) -> float:
        value = self.calls * self.step
        self.calls += 1
        return value


def make_item(
    name: str = "photo.jpg",
    data: Optional[bytes] = None,
    kind: MediaKind = MediaKind.IMAGE,
    mime_type: str = "image/jpeg",
    **kwargs,
) -> ConversionItem:
    data = data if data is not None else image_bytes(100, 50)
    return ConversionItem(
        item_id=new_item_id(),
        source=data,
        kind=kind,
        name=name,
        mime_type=mime_type,
        size=len(data),
        **kwargs,
    )


@pytest.fixture
def events():
    """Changes published by a ProgressReporter, in order."""
    return []


@pytest.fixture
def publish(events):
    def _publish(item_id, changes):
        events.append(dict(changes))

    return _publish
