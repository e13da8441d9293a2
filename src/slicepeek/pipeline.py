"""Load a sliced print file into thumbnails, a toolpath and a summary."""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field

from .config import get_config
from .container import open_container
from .errors import (
    DecodeWarning,
    EntryNotFoundError,
    FormatError,
    ThumbnailDecodeWarning,
    WarningRecorder,
)
from .gcode.bgcode import BGCODE_MAGIC, BgcodeReader
from .gcode.commands import GcodeCommand
from .gcode.decoder import GcodeDecoder, SourceKind
from .gcode.summary import GcodeSummary, SummaryCollector
from .gcode.toolpath import ColorBy, GcodeToolpath, ToolpathBuilder
from .thumbnails import (
    GENERIC_PLATE_ID,
    ThumbnailExtractor,
    encode_data_url,
    extract_gcode_thumbnails,
    is_container_filename,
)

__all__ = [
    "PrintFileLoader",
    "PrintFileResult",
    "load_print_file",
    "load_print_file_async",
    "source_kind_for",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_PLAIN_SUFFIXES = (".gcode", ".gco", ".g")
_BINARY_SUFFIX = ".bgcode"


def source_kind_for(filename: str, data: bytes | None = None) -> SourceKind:
    """Return the :class:`SourceKind` for *filename*.

    Packed binary content is recognised by its magic bytes regardless of the
    extension. Unknown extensions raise :class:`FormatError`.
    """

    if data is not None and data[: len(BGCODE_MAGIC)] == BGCODE_MAGIC:
        return SourceKind.PACKED_BINARY
    lowered = filename.lower()
    if is_container_filename(lowered):
        return SourceKind.EMBEDDED_3MF
    if lowered.endswith(_BINARY_SUFFIX):
        return SourceKind.PACKED_BINARY
    if lowered.endswith(_PLAIN_SUFFIXES):
        return SourceKind.PLAIN_TEXT
    raise FormatError(f"Unsupported print file type: {filename!r}")


@dataclass(slots=True)
class PrintFileResult:
    """Everything extracted from one print file."""

    filename: str
    kind: SourceKind
    thumbnails: dict[int, str] = field(default_factory=dict)
    toolpath: GcodeToolpath | None = None
    summary: GcodeSummary | None = None
    warnings: list[DecodeWarning] = field(default_factory=list)
    warning_count: int = 0
    command_count: int = 0

    @property
    def has_toolpath(self) -> bool:
        return self.toolpath is not None and self.toolpath.vertex_count > 0


@dataclass(slots=True)
class _LoadState:
    result: PrintFileResult
    decoder: GcodeDecoder
    commands: Iterator[GcodeCommand] | None
    builder: ToolpathBuilder
    collector: SummaryCollector


class PrintFileLoader:
    """Run the decode, toolpath and thumbnail stages for print files."""

    def __init__(
        self,
        *,
        filament_colors: Sequence[str] | None = None,
        color_by: ColorBy = "tool",
        max_vertices: int | None = None,
    ) -> None:
        self._filament_colors = list(filament_colors or ())
        self._color_by = color_by
        self._max_vertices = max_vertices

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def load(self, data: bytes, filename: str) -> PrintFileResult:
        """Decode *data* in a single blocking pass."""

        state = self._prepare(data, filename)
        if state.commands is not None:
            for command in state.commands:
                self._consume(state, command)
        return self._finish(state)

    async def load_async(
        self,
        data: bytes,
        filename: str,
        *,
        progress: ProgressCallback | None = None,
    ) -> PrintFileResult:
        """Decode *data* while handing control back to the event loop.

        The coroutine suspends every ``yield_interval`` commands and reports the
        number of commands processed so far to *progress*. Cancelling the task
        closes the underlying decode generator.
        """

        interval = get_config().yield_interval
        state = self._prepare(data, filename)
        commands = state.commands
        if commands is not None:
            try:
                for command in commands:
                    self._consume(state, command)
                    if state.result.command_count % interval == 0:
                        if progress is not None:
                            progress(state.result.command_count)
                        await asyncio.sleep(0)
            finally:
                close = getattr(commands, "close", None)
                if close is not None:
                    close()
        if progress is not None:
            progress(state.result.command_count)
        return self._finish(state)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _prepare(self, data: bytes, filename: str) -> _LoadState:
        kind = source_kind_for(filename, data)
        result = PrintFileResult(filename=filename, kind=kind)
        decoder = GcodeDecoder()

        result.thumbnails = self._thumbnails(data, kind, result)

        try:
            commands = decoder.decode(data, kind)
        except EntryNotFoundError as exc:
            logger.info("No embedded G-code in %s: %s", filename, exc)
            commands = None

        builder = ToolpathBuilder(
            max_vertices=self._max_vertices,
            color_by=self._color_by,
            filament_colors=self._filament_colors,
        )
        return _LoadState(result, decoder, commands, builder, SummaryCollector())

    def _consume(self, state: _LoadState, command: GcodeCommand) -> None:
        state.result.command_count += 1
        state.builder.feed(command)
        state.collector.feed(command)

    def _finish(self, state: _LoadState) -> PrintFileResult:
        result = state.result
        if state.commands is not None:
            toolpath = state.builder.build()
            result.toolpath = toolpath
            result.summary = state.collector.finish(toolpath)
            logger.info(
                "Decoded %s: %d commands, %d segments, %d layers",
                result.filename,
                result.command_count,
                toolpath.segment_count,
                toolpath.layer_count,
            )

        result.warnings.extend(state.decoder.warnings)
        result.warnings.extend(state.builder.warnings)
        result.warning_count += state.decoder.warning_count + state.builder.warning_count
        return result

    def _thumbnails(self, data: bytes, kind: SourceKind, result: PrintFileResult) -> dict[int, str]:
        if kind is SourceKind.EMBEDDED_3MF:
            extractor = ThumbnailExtractor()
            with open_container(data) as archive:
                thumbnails = extractor.extract_from_archive(archive)
            result.warnings.extend(extractor.warnings)
            result.warning_count += extractor.warning_count
            return thumbnails

        recorder = WarningRecorder(logger, limit=get_config().max_recorded_warnings)
        if kind is SourceKind.PACKED_BINARY:
            thumbnails = _bgcode_thumbnail(data, recorder)
        else:
            with io.TextIOWrapper(io.BytesIO(data), encoding="utf-8", errors="replace") as stream:
                thumbnails = extract_gcode_thumbnails(stream, warnings=recorder)
        result.warnings.extend(recorder.records)
        result.warning_count += recorder.total
        return thumbnails


def _bgcode_thumbnail(data: bytes, recorder: WarningRecorder) -> dict[int, str]:
    # Header problems surface later from the decoder with full context.
    try:
        reader = BgcodeReader(data, warnings=recorder)
    except FormatError:
        return {}

    best: tuple[int, str] | None = None
    for thumbnail in reader.iter_thumbnails():
        area = thumbnail.width * thumbnail.height
        if best is not None and best[0] >= area:
            continue
        try:
            data_url = encode_data_url(thumbnail.data)
        except ValueError as exc:
            recorder.record(ThumbnailDecodeWarning(f"{thumbnail.width}x{thumbnail.height} thumbnail: {exc}"))
            continue
        best = (area, data_url)
    return {GENERIC_PLATE_ID: best[1]} if best is not None else {}


def load_print_file(
    data: bytes,
    filename: str,
    *,
    filament_colors: Sequence[str] | None = None,
    color_by: ColorBy = "tool",
    max_vertices: int | None = None,
) -> PrintFileResult:
    """Return thumbnails, toolpath and summary for the print file *data*.

    :class:`~slicepeek.errors.FormatError` propagates when the file cannot be
    read at all. A container without embedded G-code yields ``toolpath=None``.
    """

    loader = PrintFileLoader(
        filament_colors=filament_colors,
        color_by=color_by,
        max_vertices=max_vertices,
    )
    return loader.load(data, filename)


async def load_print_file_async(
    data: bytes,
    filename: str,
    *,
    filament_colors: Sequence[str] | None = None,
    color_by: ColorBy = "tool",
    max_vertices: int | None = None,
    progress: ProgressCallback | None = None,
) -> PrintFileResult:
    """Cooperative variant of :func:`load_print_file` for event-loop callers."""

    loader = PrintFileLoader(
        filament_colors=filament_colors,
        color_by=color_by,
        max_vertices=max_vertices,
    )
    return await loader.load_async(data, filename, progress=progress)
