"""Reader for the block based binary G-code format (``.bgcode``).

A file is a 10 byte header (``GCDE`` magic, version, checksum type) followed
by blocks. Every block carries a small header (type, compression and sizes),
type specific parameters, the payload and an optional CRC32 over all three.
Block types this module does not know are skipped by their declared size.
"""

from __future__ import annotations

import logging
import struct
import zlib
from collections.abc import Container, Iterator
from dataclasses import dataclass
from enum import IntEnum

import heatshrink2

from ..config import get_config
from ..errors import FormatError, LineParseWarning, WarningRecorder
from . import meatpack

__all__ = [
    "BGCODE_MAGIC",
    "BgcodeBlock",
    "BgcodeReader",
    "BgcodeThumbnail",
    "BlockType",
    "ChecksumType",
    "Compression",
    "GcodeEncoding",
    "ThumbnailFormat",
    "is_bgcode",
    "iter_bgcode_thumbnails",
]

logger = logging.getLogger(__name__)

BGCODE_MAGIC = b"GCDE"

_FILE_HEADER = struct.Struct("<4sIH")
_BLOCK_HEADER = struct.Struct("<HHI")
_COMPRESSED_SIZE = struct.Struct("<I")
_ENCODING_PARAMS = struct.Struct("<H")
_THUMBNAIL_PARAMS = struct.Struct("<HHH")
_CHECKSUM = struct.Struct("<I")


class BlockType(IntEnum):
    FILE_METADATA = 0
    GCODE = 1
    SLICER_METADATA = 2
    PRINTER_METADATA = 3
    PRINT_METADATA = 4
    THUMBNAIL = 5


class Compression(IntEnum):
    NONE = 0
    DEFLATE = 1
    HEATSHRINK_11_4 = 2
    HEATSHRINK_12_4 = 3


class ChecksumType(IntEnum):
    NONE = 0
    CRC32 = 1


class GcodeEncoding(IntEnum):
    NONE = 0
    MEATPACK = 1
    MEATPACK_COMMENTS = 2


class ThumbnailFormat(IntEnum):
    PNG = 0
    JPG = 1
    QOI = 2


_KNOWN_BLOCK_TYPES = frozenset(BlockType)

_METADATA_BLOCKS = frozenset(
    {
        BlockType.FILE_METADATA,
        BlockType.SLICER_METADATA,
        BlockType.PRINTER_METADATA,
        BlockType.PRINT_METADATA,
    }
)
_TEXT_BLOCKS = _METADATA_BLOCKS | {BlockType.GCODE}


@dataclass(frozen=True, slots=True)
class BgcodeBlock:
    """A decompressed block."""

    type: int
    offset: int
    parameters: bytes
    data: bytes

    @property
    def encoding(self) -> int:
        (value,) = _ENCODING_PARAMS.unpack_from(self.parameters)
        return value


@dataclass(frozen=True, slots=True)
class BgcodeThumbnail:
    format: ThumbnailFormat
    width: int
    height: int
    data: bytes


def is_bgcode(data: bytes) -> bool:
    """Return ``True`` when *data* starts with the binary G-code magic."""

    return data[:4] == BGCODE_MAGIC


class BgcodeReader:
    """Iterate over the blocks of an in-memory binary G-code file."""

    def __init__(self, data: bytes, *, warnings: WarningRecorder | None = None) -> None:
        self._data = memoryview(data)
        self._warnings = warnings or WarningRecorder(logger, limit=get_config().max_recorded_warnings)
        if len(data) < _FILE_HEADER.size:
            raise FormatError("File is too short to be binary G-code")
        magic, version, checksum_type = _FILE_HEADER.unpack_from(self._data)
        if magic != BGCODE_MAGIC:
            raise FormatError("Missing binary G-code magic")
        try:
            self.checksum_type = ChecksumType(checksum_type)
        except ValueError as exc:
            raise FormatError(f"Unsupported binary G-code checksum type {checksum_type}") from exc
        self.version = version
        logger.debug("Binary G-code version %d, checksum %s", version, self.checksum_type.name)

    def iter_blocks(self, types: Container[int] | None = None) -> Iterator[BgcodeBlock]:
        """Yield every readable block in file order.

        Only blocks whose type is in *types* are decompressed when given.
        Corrupt blocks are skipped; a block whose declared size runs past the
        end of the file stops iteration.
        """

        data = self._data
        offset = _FILE_HEADER.size
        checksum_size = _CHECKSUM.size if self.checksum_type is ChecksumType.CRC32 else 0

        while offset < len(data):
            if offset + _BLOCK_HEADER.size > len(data):
                self._warn(offset, "truncated block header")
                return
            block_type, compression, uncompressed_size = _BLOCK_HEADER.unpack_from(data, offset)
            header_size = _BLOCK_HEADER.size
            payload_size = uncompressed_size
            if compression != Compression.NONE:
                if offset + header_size + _COMPRESSED_SIZE.size > len(data):
                    self._warn(offset, "truncated block header")
                    return
                (payload_size,) = _COMPRESSED_SIZE.unpack_from(data, offset + header_size)
                header_size += _COMPRESSED_SIZE.size

            params_size = _THUMBNAIL_PARAMS.size if block_type == BlockType.THUMBNAIL else _ENCODING_PARAMS.size
            params_start = offset + header_size
            payload_start = params_start + params_size
            block_end = payload_start + payload_size + checksum_size
            if block_end > len(data):
                self._warn(offset, f"block of type {block_type} runs past the end of the file")
                return

            block_offset = offset
            offset = block_end

            if block_type not in _KNOWN_BLOCK_TYPES:
                logger.debug("Skipping unknown block type %d at offset %d", block_type, block_offset)
                continue
            if types is not None and block_type not in types:
                continue

            if checksum_size:
                (expected,) = _CHECKSUM.unpack_from(data, block_end - checksum_size)
                actual = zlib.crc32(data[block_offset : block_end - checksum_size])
                if actual != expected:
                    self._warn(block_offset, "checksum mismatch")
                    continue

            payload = bytes(data[payload_start : payload_start + payload_size])
            try:
                decoded = _decompress(payload, compression, uncompressed_size)
            except ValueError as exc:
                self._warn(block_offset, str(exc))
                continue

            yield BgcodeBlock(
                type=block_type,
                offset=block_offset,
                parameters=bytes(data[params_start:payload_start]),
                data=decoded,
            )

    def iter_text(self) -> Iterator[tuple[int, str]]:
        """Yield ``(block_type, text)`` for G-code and metadata blocks."""

        for block in self.iter_blocks(_TEXT_BLOCKS):
            if block.type == BlockType.GCODE:
                encoding = block.encoding
                if encoding == GcodeEncoding.NONE:
                    yield block.type, block.data.decode("utf-8", errors="replace")
                elif encoding in (GcodeEncoding.MEATPACK, GcodeEncoding.MEATPACK_COMMENTS):
                    yield block.type, meatpack.unpack(block.data)
                else:
                    self._warn(block.offset, f"unknown G-code encoding {encoding}")
            elif block.type in _METADATA_BLOCKS:
                yield block.type, block.data.decode("utf-8", errors="replace")

    def iter_thumbnails(self) -> Iterator[BgcodeThumbnail]:
        for block in self.iter_blocks((BlockType.THUMBNAIL,)):
            image_format, width, height = _THUMBNAIL_PARAMS.unpack(block.parameters)
            try:
                fmt = ThumbnailFormat(image_format)
            except ValueError:
                self._warn(block.offset, f"unknown thumbnail format {image_format}")
                continue
            yield BgcodeThumbnail(fmt, width, height, block.data)

    def _warn(self, offset: int, message: str) -> None:
        self._warnings.record(LineParseWarning(f"binary block at offset {offset}: {message}"))


def iter_bgcode_thumbnails(data: bytes) -> Iterator[BgcodeThumbnail]:
    """Yield the thumbnails embedded in the binary G-code *data*."""

    return BgcodeReader(data).iter_thumbnails()


def _decompress(payload: bytes, compression: int, expected_size: int) -> bytes:
    if compression == Compression.NONE:
        result = payload
    elif compression == Compression.DEFLATE:
        try:
            result = zlib.decompress(payload)
        except zlib.error as exc:
            raise ValueError(f"deflate error: {exc}") from exc
    elif compression in (Compression.HEATSHRINK_11_4, Compression.HEATSHRINK_12_4):
        window = 11 if compression == Compression.HEATSHRINK_11_4 else 12
        try:
            result = bytes(heatshrink2.decompress(payload, window_sz2=window, lookahead_sz2=4))
        except (ValueError, TypeError, RuntimeError) as exc:
            raise ValueError(f"heatshrink error: {exc}") from exc
    else:
        raise ValueError(f"unknown compression {compression}")

    if len(result) != expected_size:
        raise ValueError(f"expected {expected_size} bytes after decompression, got {len(result)}")
    return result
