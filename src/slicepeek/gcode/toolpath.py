"""Reconstruct printed toolpaths from a stream of G-code commands."""

from __future__ import annotations

import logging
import math
import re
import zlib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

import numpy as np

from ..config import get_config, parse_hex_color
from ..errors import DecodeWarning, NumericDegradeWarning, WarningRecorder
from .commands import PLATE_MARKER, GcodeCommand

__all__ = [
    "Bounds",
    "FALLBACK_PALETTE",
    "FEATURE_COLORS",
    "GcodeToolpath",
    "LayerRange",
    "MotionState",
    "PlateRange",
    "ToolpathBuilder",
    "build_toolpath",
]

logger = logging.getLogger(__name__)

ColorBy = Literal["tool", "feature"]
RGB = tuple[float, float, float]

FALLBACK_PALETTE: tuple[str, ...] = (
    "#4f9cf5",
    "#ef4444",
    "#22c55e",
    "#f59e0b",
    "#a855f7",
    "#ec4899",
    "#06b6d4",
    "#f97316",
)
"""Colors used for tools and color changes when no filament colors are known."""

FEATURE_COLORS: Mapping[str, str] = {
    "outer wall": "#ff7d38",
    "external perimeter": "#ff7d38",
    "wall-outer": "#ff7d38",
    "inner wall": "#ffe54d",
    "perimeter": "#ffe54d",
    "wall-inner": "#ffe54d",
    "overhang wall": "#3050ff",
    "overhang perimeter": "#3050ff",
    "sparse infill": "#b03029",
    "internal infill": "#b03029",
    "fill": "#b03029",
    "internal solid infill": "#9654cc",
    "solid infill": "#9654cc",
    "top surface": "#f04040",
    "top solid infill": "#f04040",
    "skin": "#f04040",
    "bottom surface": "#66ffa3",
    "bridge": "#4d80ba",
    "bridge infill": "#4d80ba",
    "internal bridge": "#4d80ba",
    "gap infill": "#ffffff",
    "gap fill": "#ffffff",
    "skirt": "#00875c",
    "brim": "#00875c",
    "skirt/brim": "#00875c",
    "support": "#00c000",
    "support material": "#00c000",
    "support interface": "#008000",
    "support material interface": "#008000",
    "prime tower": "#b3e3ab",
    "wipe tower": "#b3e3ab",
    "ironing": "#ff8c69",
}
"""Preview colors by feature name as written by PrusaSlicer, OrcaSlicer and Cura."""

_FEATURE_MARKER = re.compile(r"^(?:TYPE|FEATURE)\s*:\s*(?P<name>.+)$", re.IGNORECASE)
_LAYER_MARKER = re.compile(r"^(?:LAYER_CHANGE|CHANGE_LAYER|LAYER\s*:\s*-?\d+)\b", re.IGNORECASE)
_COLOR_CHANGE_MARKER = re.compile(r"^COLOR_CHANGE\s*,[^#]*(?P<color>#[0-9A-Fa-f]{6})", re.IGNORECASE)
_FILAMENT_COLOUR = re.compile(r"^(?:filament_colou?r|extruder_colou?r)\s*=\s*(?P<value>.*)$", re.IGNORECASE)
_PLATE_MARKER = re.compile(rf"^{re.escape(PLATE_MARKER)}\s*(?P<plate>\d+)$")

_MAX_COORDINATE = 1.0e6
_ARC_CHORD_LENGTH = 1.0
_ARC_MAX_CHORDS = 64
_INITIAL_CAPACITY = 1024
_BAMBU_UNLOAD_SLOT = 255

# Color slot 0 always resolves to the default color.
_DEFAULT_SLOT = ("default", None)


@dataclass(frozen=True, slots=True)
class Bounds:
    """Axis-aligned box; all zero when the toolpath has no vertices."""

    min_x: float = 0.0
    max_x: float = 0.0
    min_y: float = 0.0
    max_y: float = 0.0
    min_z: float = 0.0
    max_z: float = 0.0

    @property
    def size(self) -> tuple[float, float, float]:
        return (self.max_x - self.min_x, self.max_y - self.min_y, self.max_z - self.min_z)

    @property
    def center(self) -> tuple[float, float, float]:
        return (
            (self.min_x + self.max_x) / 2.0,
            (self.min_y + self.max_y) / 2.0,
            (self.min_z + self.max_z) / 2.0,
        )

    @property
    def is_degenerate(self) -> bool:
        return any(extent <= 0.0 for extent in self.size)


@dataclass(frozen=True, slots=True)
class PlateRange:
    plate_id: int
    first_vertex: int
    vertex_count: int


@dataclass(frozen=True, slots=True)
class LayerRange:
    index: int
    plate_id: int
    z: float
    first_vertex: int
    vertex_count: int


@dataclass(frozen=True, slots=True)
class GcodeToolpath:
    """Renderable line segments extracted from a G-code program.

    ``vertices`` holds flat ``x, y, z`` triplets in machine coordinates, two
    vertices per segment. ``colors`` holds matching RGB triplets in ``0..1``
    or is ``None`` when every segment shares one color source, in which case
    the caller's default color applies. Both arrays are read-only.
    """

    vertices: np.ndarray
    colors: np.ndarray | None
    vertex_count: int
    bounds: Bounds
    plates: tuple[PlateRange, ...] = ()
    layers: tuple[LayerRange, ...] = ()
    extruded_length: float = 0.0
    tool_extrusion: Mapping[int, float] = field(default_factory=dict)
    plate_extrusion: Mapping[int, Mapping[int, float]] = field(default_factory=dict)
    sample_stride: int = 1

    def __post_init__(self) -> None:
        if self.vertices.shape != (self.vertex_count * 3,):
            raise ValueError("vertices must hold exactly vertex_count triplets")
        if self.colors is not None and self.colors.shape != self.vertices.shape:
            raise ValueError("colors must parallel vertices")

    @property
    def segment_count(self) -> int:
        return self.vertex_count // 2

    @property
    def layer_count(self) -> int:
        return len(self.layers)

    @property
    def is_multi_color(self) -> bool:
        return self.colors is not None

    def segments(self) -> np.ndarray:
        """Return the vertices reshaped to ``(segments, 2, 3)``."""

        return self.vertices.reshape(-1, 2, 3)


@dataclass(slots=True)
class MotionState:
    """Modal machine state accumulated while walking a command stream."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    e: float = 0.0
    absolute_positioning: bool = True
    absolute_extrusion: bool = True
    unit_scale: float = 1.0
    tool: int = 0
    feature: str | None = None
    color_slot: int = 0
    plate_id: int = 1

    @property
    def position(self) -> tuple[float, float, float]:
        return (self.x, self.y, self.z)

    def reset_motion(self) -> None:
        self.x = self.y = self.z = self.e = 0.0
        self.absolute_positioning = True
        self.absolute_extrusion = True
        self.unit_scale = 1.0


class ToolpathBuilder:
    """Accumulate extruding moves into a :class:`GcodeToolpath`.

    Feed commands in file order with :meth:`feed`, then call :meth:`build`.
    Segment buffers grow as segments arrive. When ``max_vertices`` is reached
    every other segment is dropped and only every second extruding move is
    sampled from then on, so long prints keep full coverage within budget.
    """

    def __init__(
        self,
        *,
        max_vertices: int | None = None,
        color_by: ColorBy = "tool",
        filament_colors: Sequence[str] | None = None,
        default_color: str | None = None,
        feature_colors: Mapping[str, str] | None = None,
    ) -> None:
        config = get_config()
        if color_by not in ("tool", "feature"):
            raise ValueError(f"Unsupported color mode: {color_by!r}")
        self._max_vertices = config.max_vertices if max_vertices is None else max_vertices
        if self._max_vertices and self._max_vertices < 2:
            raise ValueError("max_vertices must allow at least one segment")
        self._color_by = color_by
        self._filament_colors = [color for color in (filament_colors or ()) if color]
        self._header_colors: list[str] = []
        self._default_rgb = parse_hex_color(default_color or config.default_color)
        self._feature_colors = {
            key.lower(): value for key, value in (feature_colors or FEATURE_COLORS).items()
        }
        self._warnings = WarningRecorder(logger, limit=config.max_recorded_warnings)

        self.state = MotionState()

        self._segments = np.empty((_INITIAL_CAPACITY, 6), dtype=np.float32)
        self._layer_ids = np.empty(_INITIAL_CAPACITY, dtype=np.int32)
        self._plate_ids = np.empty(_INITIAL_CAPACITY, dtype=np.int32)
        self._slots: np.ndarray | None = None
        self._first_slot: int | None = None
        self._count = 0

        self._slot_keys: list[tuple[str, object]] = [_DEFAULT_SLOT]
        self._slot_index: dict[tuple[str, object], int] = {_DEFAULT_SLOT: 0}
        self._color_changes = 0
        self._explicit_change_pending = False

        self._stride = 1
        self._extrusion_index = 0
        self._layer = 0
        self._layer_segments = 0
        self._layer_z: float | None = None
        self._layer_markers = False

        self._min = [math.inf, math.inf, math.inf]
        self._max = [-math.inf, -math.inf, -math.inf]

        self._extruded = 0.0
        self._tool_extrusion: dict[int, float] = {}
        self._plate_extrusion: dict[int, dict[int, float]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def warnings(self) -> list[DecodeWarning]:
        return self._warnings.records

    @property
    def warning_count(self) -> int:
        return self._warnings.total

    @property
    def vertex_count(self) -> int:
        return self._count * 2

    def feed(self, command: GcodeCommand) -> None:
        """Apply *command* to the motion state, emitting segments as needed."""

        if command.is_comment:
            self._handle_comment(command.comment or "")
            return

        letter = command.letter
        code = command.code
        if command.subcode is not None:
            return
        if letter == "G":
            if code in (0, 1):
                self._move(command)
            elif code in (2, 3):
                self._arc(command, clockwise=code == 2)
            elif code == 90:
                self.state.absolute_positioning = True
            elif code == 91:
                self.state.absolute_positioning = False
            elif code == 92:
                self._set_position(command)
            elif code == 28:
                self._home(command)
            elif code == 20:
                self.state.unit_scale = 25.4
            elif code == 21:
                self.state.unit_scale = 1.0
        elif letter == "M":
            if code == 82:
                self.state.absolute_extrusion = True
            elif code == 83:
                self.state.absolute_extrusion = False
            elif code == 600:
                self._color_change()
            elif code == 620:
                slot = command.get("S")
                if slot is not None and math.isfinite(slot) and int(slot) != _BAMBU_UNLOAD_SLOT:
                    self._select_tool(int(slot))
        elif letter == "T":
            self._select_tool(code or 0)

    def feed_all(self, commands: Iterable[GcodeCommand]) -> ToolpathBuilder:
        for command in commands:
            self.feed(command)
        return self

    def build(self) -> GcodeToolpath:
        """Return an immutable :class:`GcodeToolpath` of everything fed so far."""

        count = self._count
        vertex_count = count * 2
        vertices = self._segments[:count].reshape(-1).copy()
        vertices.setflags(write=False)

        colors = self._resolve_colors(count)
        bounds = self._bounds() if count else Bounds()

        return GcodeToolpath(
            vertices=vertices,
            colors=colors,
            vertex_count=vertex_count,
            bounds=bounds,
            plates=tuple(
                PlateRange(int(value), start * 2, length * 2)
                for value, start, length in _runs(self._plate_ids[:count])
            ),
            layers=self._layer_ranges(count),
            extruded_length=self._extruded,
            tool_extrusion=dict(self._tool_extrusion),
            plate_extrusion={plate: dict(tools) for plate, tools in self._plate_extrusion.items()},
            sample_stride=self._stride,
        )

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------
    def _handle_comment(self, comment: str) -> None:
        text = comment.strip()
        if not text:
            return

        plate = _PLATE_MARKER.match(text)
        if plate is not None:
            self._start_plate(int(plate.group("plate")))
            return

        if _LAYER_MARKER.match(text):
            self._layer_markers = True
            self._next_layer()
            return

        feature = _FEATURE_MARKER.match(text)
        if feature is not None:
            name = feature.group("name").strip().lower()
            self.state.feature = name
            if self._color_by == "feature":
                self.state.color_slot = self._slot(("feature", name))
            return

        change = _COLOR_CHANGE_MARKER.match(text)
        if change is not None:
            if self._color_by == "tool":
                self.state.color_slot = self._slot(("hex", change.group("color").lower()))
                self._explicit_change_pending = True
            return

        colours = _FILAMENT_COLOUR.match(text)
        if colours is not None and not self._header_colors:
            values = [part.strip().strip('"') for part in re.split(r"[;,]", colours.group("value"))]
            self._header_colors = [value for value in values if _is_hex(value)]

    def _start_plate(self, plate_id: int) -> None:
        self._next_layer()
        state = self.state
        state.plate_id = plate_id
        state.reset_motion()
        state.tool = 0
        state.feature = None
        state.color_slot = 0
        self._layer_markers = False
        self._layer_z = None

    def _next_layer(self) -> None:
        if self._layer_segments:
            self._layer += 1
            self._layer_segments = 0

    def _select_tool(self, tool: int) -> None:
        self.state.tool = tool
        if self._color_by == "tool":
            self.state.color_slot = self._slot(("tool", tool))

    def _color_change(self) -> None:
        if self._explicit_change_pending:
            self._explicit_change_pending = False
            return
        self._color_changes += 1
        if self._color_by == "tool":
            self.state.color_slot = self._slot(("change", self._color_changes))

    def _set_position(self, command: GcodeCommand) -> None:
        state = self.state
        if not command.parameters:
            state.x = state.y = state.z = state.e = 0.0
            return
        for axis in "XYZE":
            value = command.get(axis)
            if value is None:
                continue
            if not math.isfinite(value):
                self._degrade(command, f"non-finite {axis} in G92")
                continue
            setattr(state, axis.lower(), value * state.unit_scale)

    def _home(self, command: GcodeCommand) -> None:
        axes = [axis for axis in "XYZ" if axis in command.parameters] or ["X", "Y", "Z"]
        for axis in axes:
            setattr(self.state, axis.lower(), 0.0)

    def _target(self, command: GcodeCommand) -> tuple[float, float, float, float] | None:
        state = self.state
        scale = state.unit_scale
        target = [state.x, state.y, state.z]
        for index, axis in enumerate("XYZ"):
            value = command.get(axis)
            if value is None:
                continue
            value *= scale
            target[index] = value if state.absolute_positioning else target[index] + value

        e_value = command.get("E")
        if e_value is None:
            new_e = state.e
        else:
            e_value *= scale
            new_e = e_value if state.absolute_extrusion else state.e + e_value

        if not all(math.isfinite(value) and abs(value) <= _MAX_COORDINATE for value in (*target, new_e)):
            self._degrade(command, "non-finite or out-of-range position")
            return None
        return target[0], target[1], target[2], new_e

    def _move(self, command: GcodeCommand) -> None:
        target = self._target(command)
        if target is None:
            return
        state = self.state
        x, y, z, new_e = target
        delta_e = new_e - state.e
        self._account_extrusion(delta_e)

        has_xyz = any(axis in command.parameters for axis in "XYZ")
        start = state.position
        end = (x, y, z)
        if has_xyz and delta_e > 0 and math.dist(start, end) > 0:
            self._emit(start, end)

        state.x, state.y, state.z, state.e = x, y, z, new_e

    def _arc(self, command: GcodeCommand, *, clockwise: bool) -> None:
        target = self._target(command)
        if target is None:
            return
        state = self.state
        i = command.get("I", 0.0)
        j = command.get("J", 0.0)
        if not (math.isfinite(i) and math.isfinite(j)) or (i == 0.0 and j == 0.0):
            # R-form and malformed arcs fall back to a straight move.
            self._move(command)
            return

        x, y, z, new_e = target
        scale = state.unit_scale
        cx = state.x + i * scale
        cy = state.y + j * scale
        radius = math.hypot(state.x - cx, state.y - cy)
        start_angle = math.atan2(state.y - cy, state.x - cx)
        end_angle = math.atan2(y - cy, x - cx)
        sweep = end_angle - start_angle
        if clockwise and sweep >= 0:
            sweep -= 2 * math.pi
        elif not clockwise and sweep <= 0:
            sweep += 2 * math.pi

        chords = max(1, min(_ARC_MAX_CHORDS, math.ceil(abs(sweep) * radius / _ARC_CHORD_LENGTH)))
        delta_e = new_e - state.e
        self._account_extrusion(delta_e)

        start = state.position
        for step in range(1, chords + 1):
            fraction = step / chords
            if step == chords:
                end = (x, y, z)
            else:
                angle = start_angle + sweep * fraction
                end = (
                    cx + radius * math.cos(angle),
                    cy + radius * math.sin(angle),
                    state.z + (z - state.z) * fraction,
                )
            if delta_e > 0 and math.dist(start, end) > 0:
                self._emit(start, end)
            start = end

        state.x, state.y, state.z, state.e = x, y, z, new_e

    def _account_extrusion(self, delta_e: float) -> None:
        if delta_e == 0:
            return
        self._extruded += delta_e
        tool = self.state.tool
        self._tool_extrusion[tool] = self._tool_extrusion.get(tool, 0.0) + delta_e
        plate = self._plate_extrusion.setdefault(self.state.plate_id, {})
        plate[tool] = plate.get(tool, 0.0) + delta_e

    def _degrade(self, command: GcodeCommand, reason: str) -> None:
        self._warnings.record(NumericDegradeWarning(f"line {command.line_number}: {reason}; move dropped"))

    # ------------------------------------------------------------------
    # Buffer management
    # ------------------------------------------------------------------
    def _emit(self, start: tuple[float, float, float], end: tuple[float, float, float]) -> None:
        if not self._layer_markers and self._layer_z is not None and end[2] != self._layer_z:
            self._next_layer()
        self._layer_z = end[2]

        self._extrusion_index += 1
        if (self._extrusion_index - 1) % self._stride:
            return

        if self._max_vertices and (self._count + 1) * 2 > self._max_vertices:
            self._compact()
            if (self._extrusion_index - 1) % self._stride:
                return

        index = self._count
        if index == len(self._segments):
            self._grow()

        row = self._segments[index]
        row[:] = (*start, *end)
        self._layer_ids[index] = self._layer
        self._plate_ids[index] = self.state.plate_id

        slot = self.state.color_slot
        if self._slots is None:
            if self._first_slot is None:
                self._first_slot = slot
            elif self._source(slot) != self._source(self._first_slot):
                # Everything stored so far shares the first segment's source.
                self._slots = np.full(len(self._segments), self._first_slot, dtype=np.int32)
        if self._slots is not None:
            self._slots[index] = slot

        self._count += 1
        self._layer_segments += 1

        # Bounds follow the stored float32 values so the box stays tight.
        for axis in range(3):
            for value in (float(row[axis]), float(row[axis + 3])):
                if value < self._min[axis]:
                    self._min[axis] = value
                if value > self._max[axis]:
                    self._max[axis] = value

    def _grow(self) -> None:
        capacity = len(self._segments) * 2
        self._segments = _resized(self._segments, capacity)
        self._layer_ids = _resized(self._layer_ids, capacity)
        self._plate_ids = _resized(self._plate_ids, capacity)
        if self._slots is not None:
            self._slots = _resized(self._slots, capacity)

    def _compact(self) -> None:
        count = self._count
        kept = (count + 1) // 2
        self._segments[:kept] = self._segments[:count:2]
        self._layer_ids[:kept] = self._layer_ids[:count:2]
        self._plate_ids[:kept] = self._plate_ids[:count:2]
        if self._slots is not None:
            self._slots[:kept] = self._slots[:count:2]
        self._count = kept
        self._stride *= 2

        points = self._segments[:kept].reshape(-1, 3)
        self._min = [float(value) for value in points.min(axis=0)]
        self._max = [float(value) for value in points.max(axis=0)]
        logger.debug("Vertex budget reached; sampling every %d extruding moves", self._stride)

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------
    def _bounds(self) -> Bounds:
        return Bounds(
            min_x=self._min[0],
            max_x=self._max[0],
            min_y=self._min[1],
            max_y=self._max[1],
            min_z=self._min[2],
            max_z=self._max[2],
        )

    def _layer_ranges(self, count: int) -> tuple[LayerRange, ...]:
        layers = []
        for index, (_, start, length) in enumerate(_runs(self._layer_ids[:count])):
            layers.append(
                LayerRange(
                    index=index,
                    plate_id=int(self._plate_ids[start]),
                    z=float(self._segments[start, 5]),
                    first_vertex=start * 2,
                    vertex_count=length * 2,
                )
            )
        return tuple(layers)

    def _slot(self, key: tuple[str, object]) -> int:
        index = self._slot_index.get(key)
        if index is None:
            index = len(self._slot_keys)
            self._slot_keys.append(key)
            self._slot_index[key] = index
        return index

    def _source(self, slot: int) -> tuple[str, object]:
        key = self._slot_keys[slot]
        if key == _DEFAULT_SLOT and self._color_by == "tool":
            # Segments before any tool selection print with tool 0.
            return ("tool", 0)
        return key

    def _resolve_colors(self, count: int) -> np.ndarray | None:
        if self._slots is None or not count:
            return None

        table = np.array([self._resolve_slot(key) for key in self._slot_keys], dtype=np.float32)
        slots = self._slots[:count]
        if np.allclose(table[np.unique(slots)], np.array(self._default_rgb, dtype=np.float32)):
            return None

        colors = np.repeat(table[slots], 2, axis=0).reshape(-1)
        colors.setflags(write=False)
        return colors

    def _resolve_slot(self, key: tuple[str, object]) -> RGB:
        kind, value = key
        if kind == "tool":
            return parse_hex_color(self._tool_color(int(value)))  # type: ignore[arg-type]
        if kind == "change":
            index = int(value)  # type: ignore[arg-type]
            if index < len(self._filament_colors):
                return parse_hex_color(self._filament_colors[index])
            return parse_hex_color(FALLBACK_PALETTE[index % len(FALLBACK_PALETTE)])
        if kind == "hex":
            return parse_hex_color(str(value))
        if kind == "feature":
            name = str(value)
            color = self._feature_colors.get(name)
            if color is None:
                color = FALLBACK_PALETTE[zlib.crc32(name.encode("utf-8")) % len(FALLBACK_PALETTE)]
            return parse_hex_color(color)
        return self._default_rgb

    def _tool_color(self, tool: int) -> str:
        for colors in (self._filament_colors, self._header_colors):
            if tool < len(colors):
                return colors[tool]
        return FALLBACK_PALETTE[tool % len(FALLBACK_PALETTE)]


def build_toolpath(
    commands: Iterable[GcodeCommand],
    *,
    max_vertices: int | None = None,
    color_by: ColorBy = "tool",
    filament_colors: Sequence[str] | None = None,
) -> GcodeToolpath:
    """Return the printed toolpath described by *commands*."""

    builder = ToolpathBuilder(
        max_vertices=max_vertices,
        color_by=color_by,
        filament_colors=filament_colors,
    )
    return builder.feed_all(commands).build()


def _runs(values: np.ndarray) -> list[tuple[int, int, int]]:
    """Return ``(value, start, length)`` for each run of equal *values*."""

    if not len(values):
        return []
    starts = np.flatnonzero(np.diff(values)) + 1
    starts = np.concatenate(([0], starts))
    lengths = np.diff(np.concatenate((starts, [len(values)])))
    return [(int(values[start]), int(start), int(length)) for start, length in zip(starts, lengths)]


def _resized(array: np.ndarray, capacity: int) -> np.ndarray:
    resized = np.empty((capacity, *array.shape[1:]), dtype=array.dtype)
    resized[: len(array)] = array
    return resized


def _is_hex(value: str) -> bool:
    try:
        parse_hex_color(value)
    except ValueError:
        return False
    return True
