"""G-code decoding, toolpath reconstruction and print summaries."""

from __future__ import annotations

from .bgcode import BgcodeReader, BgcodeThumbnail, is_bgcode, iter_bgcode_thumbnails
from .commands import GcodeCommand, iter_commands, parse_line
from .decoder import GcodeDecoder, SourceKind, decode, find_plate_gcode
from .summary import (
    CostEstimate,
    FilamentUsage,
    GcodeSummary,
    PlateCost,
    PlateSummary,
    SummaryCollector,
    estimate_cost,
    format_print_time,
    summarize,
)
from .toolpath import Bounds, GcodeToolpath, LayerRange, PlateRange, ToolpathBuilder, build_toolpath

__all__ = [
    "BgcodeReader",
    "BgcodeThumbnail",
    "Bounds",
    "CostEstimate",
    "FilamentUsage",
    "GcodeCommand",
    "GcodeDecoder",
    "GcodeSummary",
    "GcodeToolpath",
    "LayerRange",
    "PlateCost",
    "PlateRange",
    "PlateSummary",
    "SourceKind",
    "SummaryCollector",
    "ToolpathBuilder",
    "build_toolpath",
    "decode",
    "estimate_cost",
    "find_plate_gcode",
    "format_print_time",
    "is_bgcode",
    "iter_bgcode_thumbnails",
    "iter_commands",
    "parse_line",
    "summarize",
]
