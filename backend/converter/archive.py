"""Store-only ZIP writer over in-memory buffers.

Payloads are already-compressed media, so entries are stored as-is. Layout:
every local header + payload in entry order, then the central directory in
the same order, then the end-of-central-directory record. All integers are
little-endian.
"""
import logging
import re
import struct
from dataclasses import dataclass
from typing import Iterable

from converter.errors import ArchiveError

logger = logging.getLogger("converter.archive")

LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_HEADER_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIR_SIGNATURE = 0x06054B50
ZIP_VERSION = 20

# signature, version needed, flags, method, mod time, mod date, crc, compressed, uncompressed, name len, extra len
_LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
# signature, made by, needed, flags, method, time, date, crc, compressed, uncompressed,
# name len, extra len, comment len, disk start, internal attrs, external attrs, local header offset
_CENTRAL_HEADER = struct.Struct("<IHHHHHHIIIHHHHHII")
# signature, this disk, cd disk, entries on disk, total entries, cd size, cd offset, comment len
_END_RECORD = struct.Struct("<IHHHHIIH")

_MAX_U16 = 0xFFFF
_MAX_U32 = 0xFFFFFFFF
_ILLEGAL_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ 0xEDB88320 if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


CRC_TABLE = _make_crc_table()


def crc32(data: bytes) -> int:
    """CRC-32 (reflected polynomial 0xEDB88320) of ``data``."""
    crc = 0xFFFFFFFF
    table = CRC_TABLE
    for byte in data:
        crc = (crc >> 8) ^ table[(crc ^ byte) & 0xFF]
    return crc ^ 0xFFFFFFFF


def sanitize_filename(name: str) -> str:
    """Replace characters illegal in file names with "_" and strip leading dots."""
    return _ILLEGAL_NAME_CHARS.sub("_", name).lstrip(".")


@dataclass
class ArchiveEntry:
    header: bytes
    data: bytes
    name: bytes
    offset: int
    crc: int


def _local_entry(name: str, data: bytes, offset: int) -> ArchiveEntry:
    encoded = sanitize_filename(name).encode("utf-8")
    if not encoded:
        raise ArchiveError(f"Entry name {name!r} is empty after sanitizing")
    if len(encoded) > _MAX_U16:
        raise ArchiveError(f"Entry name too long: {name[:64]}...")
    if len(data) > _MAX_U32:
        raise ArchiveError(f"Entry {name} is larger than 4 GiB")
    crc = crc32(data)
    header = _LOCAL_HEADER.pack(
        LOCAL_HEADER_SIGNATURE, ZIP_VERSION, 0, 0, 0, 0,
        crc, len(data), len(data), len(encoded), 0,
    )
    return ArchiveEntry(header=header + encoded, data=data, name=encoded, offset=offset, crc=crc)


def _central_record(entry: ArchiveEntry) -> bytes:
    size = len(entry.data)
    return _CENTRAL_HEADER.pack(
        CENTRAL_HEADER_SIGNATURE, ZIP_VERSION, ZIP_VERSION, 0, 0, 0, 0,
        entry.crc, size, size, len(entry.name), 0, 0, 0, 0, 0, entry.offset,
    ) + entry.name


def build_archive(entries: Iterable[tuple[str, bytes]]) -> bytes:
    """Serialize (name, bytes) pairs into a ZIP archive. Raises ArchiveError on any bad entry."""
    local_blocks: list[bytes] = []
    central_records: list[bytes] = []
    offset = 0
    count = 0
    for name, data in entries:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise ArchiveError(f"Entry {name} has no byte payload")
        entry = _local_entry(name, bytes(data), offset)
        local_blocks.append(entry.header)
        local_blocks.append(entry.data)
        central_records.append(_central_record(entry))
        offset += len(entry.header) + len(entry.data)
        count += 1
        if offset > _MAX_U32:
            raise ArchiveError("Archive is larger than 4 GiB")
        if count > _MAX_U16:
            raise ArchiveError(f"Too many entries for one archive (max {_MAX_U16})")

    central_size = sum(len(record) for record in central_records)
    if offset + central_size > _MAX_U32:
        raise ArchiveError("Archive is larger than 4 GiB")
    end_record = _END_RECORD.pack(END_OF_CENTRAL_DIR_SIGNATURE, 0, 0, count, count, central_size, offset, 0)
    logger.info("Built archive with %s entries (%s bytes)", count, offset + central_size + len(end_record))
    return b"".join(local_blocks + central_records + [end_record])
