"""Conversion items and settings."""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Optional, Union

from converter.config import (
    DEFAULT_CRF,
    DEFAULT_QUALITY,
    DEFAULT_RESIZE_MAX_HEIGHT,
    DEFAULT_RESIZE_MAX_WIDTH,
)


class ItemStatus(str, Enum):
    PENDING = "pending"
    CONVERTING = "converting"
    CONVERTED = "converted"
    ERRORED = "error"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int

    def as_tuple(self) -> tuple[int, int]:
        return (self.width, self.height)


@dataclass(frozen=True)
class ResizeSettings:
    """Downscale-only box. Sources already inside the box are left alone."""

    enabled: bool = False
    max_width: int = DEFAULT_RESIZE_MAX_WIDTH
    max_height: int = DEFAULT_RESIZE_MAX_HEIGHT


@dataclass(frozen=True)
class VideoSettings:
    """
    resolution: "original", "custom" (uses custom_width/custom_height) or a preset "WxH".
    fps: "original" (detect from source) or an explicit frame rate.
    enabled: item-level override flag; when False the global settings apply.
    """

    resolution: str = "original"
    custom_width: Optional[int] = None
    custom_height: Optional[int] = None
    crf: int = DEFAULT_CRF
    fps: Union[str, float] = "original"
    audio_enabled: bool = True
    enabled: bool = False


@dataclass(frozen=True)
class ConversionSettings:
    """Global settings passed into each conversion call. Never mutated."""

    quality: int = DEFAULT_QUALITY
    resize: ResizeSettings = field(default_factory=ResizeSettings)
    video: VideoSettings = field(default_factory=VideoSettings)


@dataclass(frozen=True)
class SourceInfo:
    """What the caller declared about a source file."""

    name: str
    mime_type: str
    size: int

    @property
    def extension(self) -> str:
        return PurePath(self.name).suffix.lower()

    @property
    def has_alpha(self) -> bool:
        return self.mime_type.lower() == "image/png" or self.extension == ".png"


def new_item_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ConversionItem:
    """One submitted file and its conversion state."""

    item_id: str
    source: bytes
    kind: MediaKind
    name: str
    mime_type: str
    size: int
    status: ItemStatus = ItemStatus.PENDING
    progress: int = 0
    resize: ResizeSettings = field(default_factory=ResizeSettings)
    video: VideoSettings = field(default_factory=VideoSettings)
    quality: Optional[int] = None
    original_dimensions: Optional[Dimensions] = None
    final_dimensions: Optional[Dimensions] = None
    duration: Optional[float] = None
    converted: Optional[bytes] = None
    converted_size: Optional[int] = None
    converted_preview: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def is_video(self) -> bool:
        return self.kind == MediaKind.VIDEO

    @property
    def info(self) -> SourceInfo:
        return SourceInfo(name=self.name, mime_type=self.mime_type, size=self.size)

    def effective_quality(self, global_quality: int) -> int:
        return self.quality if self.quality is not None else global_quality

    def effective_resize(self, global_resize: ResizeSettings) -> ResizeSettings:
        return self.resize if self.resize.enabled else global_resize

    def effective_video(self, global_video: VideoSettings) -> VideoSettings:
        return self.video if self.video.enabled else global_video
