"""Codec capability seen by the conversion adapters.

The adapters never touch an imaging or media library directly; they talk to
these protocols. ``pillow_codec`` and ``ffmpeg_codec`` are the default
implementations, tests plug in fakes.
"""
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from converter.conversion.models import SourceInfo


@dataclass
class Raster:
    """A decoded image. ``handle`` is whatever the codec uses internally."""

    width: int
    height: int
    handle: Any = None


class Surface:
    """RGB drawing target of a fixed size that video frames are drawn into."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.data = bytearray(width * height * 3)

    @property
    def frame_size(self) -> int:
        return len(self.data)

    def release(self) -> None:
        self.data = bytearray()


@dataclass(frozen=True)
class VideoMetadata:
    width: int
    height: int
    duration: float
    frame_rate: Optional[float] = None
    has_audio: bool = False


class ImageCodec(Protocol):
    def decode_image(self, data: bytes) -> Raster: ...

    def resample(self, raster: Raster, width: int, height: int) -> Raster: ...

    def encode_image(self, raster: Raster, fmt: str, quality: float) -> Optional[bytes]: ...

    def release(self, raster: Raster) -> None: ...


class FrameClock(Protocol):
    """Precise per-frame callback: resolves with the media time of the next presented frame."""

    async def next_frame(self) -> float: ...


class FrameSource(Protocol):
    """Sequential frame pull over one decoded video."""

    current_time: float
    duration: float
    ended: bool
    has_audio: bool

    def frame_clock(self) -> Optional[FrameClock]: ...

    async def seek(self, seconds: float) -> None: ...

    async def advance(self) -> None: ...

    def draw(self, surface: Surface) -> None: ...

    async def close(self) -> None: ...


class Encoder(Protocol):
    """Push-based frame consumer producing one encoded buffer."""

    async def write(self, surface: Surface) -> None: ...

    async def finalize(self) -> bytes: ...

    async def abort(self) -> None: ...


class VideoCodec(Protocol):
    async def probe(self, data: bytes, info: SourceInfo) -> VideoMetadata: ...

    async def supports(self, mime_type: str) -> bool: ...

    async def open_source(
        self, data: bytes, metadata: VideoMetadata, width: int, height: int
    ) -> FrameSource: ...

    async def open_encoder(
        self,
        surface: Surface,
        fps: float,
        bitrate: int,
        mime_type: str,
        audio_from: Optional[FrameSource] = None,
    ) -> Encoder: ...

    async def thumbnail(self, data: bytes, at_seconds: float) -> bytes: ...
