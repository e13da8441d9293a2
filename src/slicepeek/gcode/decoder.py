"""Turn raw file bytes into a lazy stream of :class:`GcodeCommand`."""

from __future__ import annotations

import io
import logging
import re
from collections.abc import Iterable, Iterator
from enum import Enum

from ..config import get_config
from ..container import ContainerArchive, open_container
from ..errors import DecodeWarning, EntryNotFoundError, WarningRecorder
from .bgcode import BgcodeReader, BlockType
from .commands import GcodeCommand, iter_commands, plate_marker

__all__ = [
    "GcodeDecoder",
    "SourceKind",
    "decode",
    "find_plate_gcode",
]

logger = logging.getLogger(__name__)

_PLATE_GCODE_PATTERN = re.compile(r"^Metadata/plate_(\d+)\.gcode$", re.IGNORECASE)


class SourceKind(str, Enum):
    """Encodings understood by :func:`decode`."""

    PLAIN_TEXT = "plain-text"
    EMBEDDED_3MF = "3mf-embedded"
    PACKED_BINARY = "packed-binary"


def find_plate_gcode(archive: ContainerArchive) -> list[tuple[int, str]]:
    """Return ``(plate_id, entry_path)`` pairs for the G-code inside *archive*.

    Plates are ordered by id. Containers that do not follow the
    ``Metadata/plate_<n>.gcode`` convention fall back to any ``.gcode`` entry,
    numbered from 1 in archive order.
    """

    plates: list[tuple[int, str]] = []
    for path in archive.entries:
        match = _PLATE_GCODE_PATTERN.match(path)
        if match is not None:
            plates.append((int(match.group(1)), path))
    if plates:
        return sorted(plates)

    others = [path for path in archive.entries if path.lower().endswith(".gcode")]
    return [(index, path) for index, path in enumerate(others, start=1)]


class GcodeDecoder:
    """Decode one file into commands and keep the warnings raised doing so.

    Each decoder instance owns its warning log; use one per decode pass.
    """

    def __init__(self) -> None:
        self._warnings = WarningRecorder(logger, limit=get_config().max_recorded_warnings)
        self.metadata_blocks = 0

    @property
    def warnings(self) -> list[DecodeWarning]:
        return self._warnings.records

    @property
    def warning_count(self) -> int:
        return self._warnings.total

    def decode(self, data: bytes, kind: SourceKind | str) -> Iterator[GcodeCommand]:
        """Return a lazy, single-pass iterator over the commands in *data*.

        Container and binary headers are validated before this returns, so
        :class:`~slicepeek.errors.FormatError` and
        :class:`~slicepeek.errors.EntryNotFoundError` are raised eagerly.
        """

        kind = SourceKind(kind)
        if kind is SourceKind.PLAIN_TEXT:
            return self._decode_text(data)
        if kind is SourceKind.EMBEDDED_3MF:
            archive = open_container(data)
            plates = find_plate_gcode(archive)
            if not plates:
                archive.close()
                raise EntryNotFoundError("Container does not embed any G-code")
            return self._decode_container(archive, plates)
        return self._decode_binary(BgcodeReader(data, warnings=self._warnings))

    def decode_lines(self, lines: Iterable[str]) -> Iterator[GcodeCommand]:
        return iter_commands(lines, warnings=self._warnings)

    def _decode_text(self, data: bytes) -> Iterator[GcodeCommand]:
        stream = io.TextIOWrapper(io.BytesIO(data), encoding="utf-8", errors="replace")
        with stream:
            yield from iter_commands(stream, warnings=self._warnings)

    def _decode_container(
        self,
        archive: ContainerArchive,
        plates: list[tuple[int, str]],
    ) -> Iterator[GcodeCommand]:
        with archive:
            for plate_id, path in plates:
                logger.debug("Decoding plate %d from %s", plate_id, path)
                yield plate_marker(plate_id)
                with archive.stream(path) as raw:
                    text = io.TextIOWrapper(raw, encoding="utf-8", errors="replace")
                    yield from iter_commands(text, warnings=self._warnings)

    def _decode_binary(self, reader: BgcodeReader) -> Iterator[GcodeCommand]:
        pending = ""
        line_number = 1
        for block_type, text in reader.iter_text():
            if block_type != BlockType.GCODE:
                self.metadata_blocks += 1
                yield from _metadata_comments(text)
                continue

            lines = (pending + text).split("\n")
            # Blocks may end mid-line; carry the tail over to the next block.
            pending = lines.pop()
            yield from iter_commands(lines, warnings=self._warnings, first_line_number=line_number)
            line_number += len(lines)

        if pending:
            yield from iter_commands([pending], warnings=self._warnings, first_line_number=line_number)


def decode(data: bytes, kind: SourceKind | str) -> Iterator[GcodeCommand]:
    """Return a lazy iterator over the commands encoded in *data*."""

    return GcodeDecoder().decode(data, kind)


def _metadata_comments(text: str) -> Iterator[GcodeCommand]:
    for line in text.splitlines():
        key, separator, value = line.partition("=")
        if not separator or not key.strip():
            continue
        yield GcodeCommand(None, None, comment=f"{key.strip()} = {value.strip()}")
