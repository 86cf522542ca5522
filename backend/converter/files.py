"""Submitted-file queue: validation, item creation and the single update path for item records."""
import logging
from dataclasses import dataclass, fields
from pathlib import PurePath
from typing import Any, Iterable, Optional

from converter.config import (
    FPS_CHOICES,
    IMAGE_MIME_TYPES,
    MAX_IMAGE_SIZE_BYTES,
    MAX_IMAGE_SIZE_MB,
    MAX_CRF,
    MAX_QUALITY,
    MAX_VIDEO_SIZE_BYTES,
    MAX_VIDEO_SIZE_MB,
    MIN_CRF,
    MIN_QUALITY,
    RESOLUTION_PRESETS,
    VIDEO_ADDITIONAL_MIME_TYPES,
    VIDEO_EXTENSIONS,
    VIDEO_NATIVE_MIME_TYPES,
    VIDEO_REJECTED_EXTENSIONS,
    VIDEO_REJECTED_MIME_TYPES,
)
from converter.conversion.models import (
    ConversionItem,
    ItemStatus,
    MediaKind,
    ResizeSettings,
    VideoSettings,
    new_item_id,
)
from converter.errors import ValidationError

logger = logging.getLogger("converter.files")

_ITEM_FIELDS = {f.name for f in fields(ConversionItem)}


@dataclass(frozen=True)
class SubmittedFile:
    name: str
    mime_type: str
    data: bytes


def media_kind(mime_type: str, name: str = "") -> MediaKind:
    ext = PurePath(name).suffix.lower()
    if mime_type.lower().startswith("video/") or ext in VIDEO_EXTENSIONS or ext in VIDEO_REJECTED_EXTENSIONS:
        return MediaKind.VIDEO
    return MediaKind.IMAGE


def _validate_video(name: str, mime_type: str, size: int) -> None:
    if size > MAX_VIDEO_SIZE_BYTES:
        raise ValidationError(f'Video file "{name}" is too large. Maximum file size is {MAX_VIDEO_SIZE_MB}MB.')
    mime = mime_type.lower()
    ext = PurePath(name).suffix.lower()
    if not mime.startswith("video/") and ext not in VIDEO_EXTENSIONS:
        raise ValidationError(f'File "{name}" is not a supported video format.')
    if ext in VIDEO_REJECTED_EXTENSIONS or mime in VIDEO_REJECTED_MIME_TYPES:
        raise ValidationError(
            f'File "{name}" is not supported. For best results, please use MP4, WebM, MOV, or 3GP formats.'
        )
    additional_exts = {"." + m.split("/", 1)[1].replace("x-", "") for m in VIDEO_ADDITIONAL_MIME_TYPES}
    if mime not in VIDEO_NATIVE_MIME_TYPES | VIDEO_ADDITIONAL_MIME_TYPES and ext not in additional_exts:
        raise ValidationError(
            f'File "{name}" is not a supported video format. Supported formats: MP4, WebM, OGG, MOV, 3GP.'
        )


def validate_file(name: str, mime_type: str, size: int) -> MediaKind:
    """Check size and declared format. Returns the media kind, raises ValidationError otherwise."""
    kind = media_kind(mime_type, name)
    if kind == MediaKind.VIDEO:
        _validate_video(name, mime_type, size)
        return kind
    if size > MAX_IMAGE_SIZE_BYTES:
        raise ValidationError(
            f'File "{name}" is too large. Maximum file size is {MAX_IMAGE_SIZE_MB}MB for images.'
        )
    if mime_type.lower() not in IMAGE_MIME_TYPES:
        raise ValidationError(f'File "{name}" is not a supported image format.')
    return kind


def create_item(file: SubmittedFile) -> ConversionItem:
    kind = validate_file(file.name, file.mime_type, len(file.data))
    return ConversionItem(
        item_id=new_item_id(),
        source=file.data,
        kind=kind,
        name=file.name,
        mime_type=file.mime_type,
        size=len(file.data),
    )


class FileManager:
    """Ordered list of conversion items for one session."""

    def __init__(self):
        self._items: dict[str, ConversionItem] = {}

    @property
    def items(self) -> list[ConversionItem]:
        return list(self._items.values())

    def get(self, item_id: str) -> Optional[ConversionItem]:
        return self._items.get(item_id)

    def add_files(self, files: Iterable[SubmittedFile]) -> list[str]:
        """Add valid files as PENDING items. Returns the messages of rejected files."""
        errors: list[str] = []
        for file in files:
            try:
                item = create_item(file)
            except ValidationError as e:
                logger.warning("%s", e)
                errors.append(str(e))
                continue
            self._items[item.item_id] = item
            logger.info("Added %s %s (%s bytes)", item.kind.value, item.name, item.size)
        return errors

    def update(self, item_id: str, **changes: Any) -> None:
        """Apply changes to one item. Unknown ids (removed mid-conversion) are ignored."""
        item = self._items.get(item_id)
        if item is None:
            logger.debug("Ignoring update for removed item %s", item_id)
            return
        unknown = set(changes) - _ITEM_FIELDS
        if unknown:
            raise AttributeError(f"Unknown item fields: {sorted(unknown)}")
        for key, value in changes.items():
            setattr(item, key, value)

    def remove(self, item_id: str) -> bool:
        item = self._items.pop(item_id, None)
        if item is None:
            return False
        item.converted = None
        item.converted_preview = None
        return True

    def clear(self) -> None:
        for item in self._items.values():
            item.converted = None
            item.converted_preview = None
        self._items.clear()

    def set_quality(self, item_id: str, quality: Optional[int]) -> None:
        if quality is not None and not MIN_QUALITY <= quality <= MAX_QUALITY:
            raise ValueError(f"Quality must be between {MIN_QUALITY} and {MAX_QUALITY}")
        self.update(item_id, quality=quality)

    def set_resize_settings(self, item_id: str, resize: ResizeSettings) -> None:
        self.update(item_id, resize=resize)

    def set_video_settings(self, item_id: str, video: VideoSettings) -> None:
        if video.resolution not in ("original", "custom") and video.resolution not in RESOLUTION_PRESETS:
            raise ValueError(f"Unknown resolution preset: {video.resolution}")
        if video.resolution == "custom" and not (video.custom_width and video.custom_height):
            raise ValueError("Custom resolution needs both width and height")
        if video.fps != "original" and video.fps not in FPS_CHOICES:
            raise ValueError(f"Frame rate must be 'original' or one of {FPS_CHOICES}")
        if not MIN_CRF <= video.crf <= MAX_CRF:
            raise ValueError(f"CRF must be between {MIN_CRF} and {MAX_CRF}")
        self.update(item_id, video=video)

    def apply_global_resize_to_all(self, resize: ResizeSettings) -> None:
        for item_id in list(self._items):
            self.update(item_id, resize=resize)

    def pending_items(self) -> list[ConversionItem]:
        return [item for item in self._items.values() if item.status == ItemStatus.PENDING]

    def converted_items(self) -> list[ConversionItem]:
        return [item for item in self._items.values() if item.converted is not None]
