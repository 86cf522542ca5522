"""Delivery of converted items: one ZIP for several files, individual files otherwise."""
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import PurePath
from typing import Iterable, Optional

from converter.archive import build_archive, sanitize_filename
from converter.config import IMAGE_OUTPUT_EXTENSION, VIDEO_OUTPUT_EXTENSION
from converter.conversion.models import ConversionItem
from converter.errors import ArchiveError

logger = logging.getLogger("converter.batch")

ZIP_MIME_TYPE = "application/zip"
_SIZE_UNITS = ["Bytes", "KB", "MB", "GB"]
_NUMBERED = re.compile(r"^(?P<stem>.*) \((?P<n>\d+)\)$")


@dataclass
class Delivery:
    filename: str
    data: bytes
    mime_type: str


@dataclass
class Bundle:
    """What the caller should offer for download. ``error`` is set when archiving fell back."""

    deliveries: list[Delivery] = field(default_factory=list)
    archived: bool = False
    error: Optional[str] = None


def output_filename(item: ConversionItem) -> str:
    """Source name with the output extension, safe for a file system."""
    extension = VIDEO_OUTPUT_EXTENSION if item.is_video else IMAGE_OUTPUT_EXTENSION
    stem = PurePath(item.name).stem
    return sanitize_filename(stem + extension) or f"file{extension}"


def output_mime_type(item: ConversionItem) -> str:
    return "video/webm" if item.is_video else "image/webp"


def archive_filename(day: Optional[date] = None) -> str:
    day = day or date.today()
    return f"converted-files-{day.isoformat()}.zip"


def unique_names(names: Iterable[str]) -> list[str]:
    """Disambiguate repeated names as "name (1).ext", "name (2).ext", ..."""
    seen: set[str] = set()
    result = []
    for name in names:
        candidate = name
        path = PurePath(name)
        n = 0
        while candidate in seen:
            n += 1
            base = _NUMBERED.sub(r"\g<stem>", path.stem)
            candidate = f"{base} ({n}){path.suffix}"
        seen.add(candidate)
        result.append(candidate)
    return result


def individual_deliveries(items: list[ConversionItem]) -> list[Delivery]:
    names = unique_names(output_filename(item) for item in items)
    return [
        Delivery(filename=name, data=item.converted, mime_type=output_mime_type(item))
        for name, item in zip(names, items)
    ]


def bundle(items: Iterable[ConversionItem], day: Optional[date] = None) -> Bundle:
    """
    Package converted items for download. A single item is delivered as-is; several go into
    one archive. If packaging fails, every item is delivered individually instead.
    """
    converted = [item for item in items if item.converted is not None]
    if not converted:
        return Bundle()
    if len(converted) == 1:
        return Bundle(deliveries=individual_deliveries(converted))

    names = unique_names(output_filename(item) for item in converted)
    try:
        data = build_archive(zip(names, (item.converted for item in converted)))
    except ArchiveError as e:
        logger.error("ZIP creation failed, using individual downloads: %s", e)
        return Bundle(deliveries=individual_deliveries(converted), error=str(e))
    logger.info("Created zip with %s files", len(converted))
    return Bundle(
        deliveries=[Delivery(filename=archive_filename(day), data=data, mime_type=ZIP_MIME_TYPE)],
        archived=True,
    )


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[unit]}"


def savings_percentage(original: int, converted: int) -> int:
    if not original or not converted:
        return 0
    return round((original - converted) / original * 100)
