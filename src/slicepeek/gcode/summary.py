"""Scalar print metrics derived from a toolpath and its vendor comments."""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace

import numpy as np

from ..config import get_config
from .commands import PLATE_MARKER, GcodeCommand
from .toolpath import GcodeToolpath

__all__ = [
    "CostEstimate",
    "FilamentUsage",
    "GcodeSummary",
    "PlateCost",
    "PlateSummary",
    "SummaryCollector",
    "estimate_cost",
    "format_print_time",
    "parse_duration",
    "summarize",
]

_DURATION = re.compile(
    r"^\s*(?:(?P<d>\d+)\s*d\s*)?(?:(?P<h>\d+)\s*h\s*)?(?:(?P<m>\d+)\s*m(?:in)?\s*)?(?:(?P<s>\d+(?:\.\d+)?)\s*s)?"
)
_CLOCK = re.compile(r"^\s*(\d+):(\d{1,2}):(\d{1,2})")
_KEY_VALUE = re.compile(r"^(?P<key>[^=:]+?)\s*[=:]\s*(?P<value>.*)$")
_NUMBER = re.compile(r"[-+]?\d+(?:\.\d+)?")
_PLATE = re.compile(rf"^{re.escape(PLATE_MARKER)}\s*(?P<plate>\d+)$")

# Plain and binary G-code carry a single plate.
_FIRST_PLATE_ID = 1


def parse_duration(text: str) -> float | None:
    """Return seconds for ``1d 2h 3m 4s`` or ``hh:mm:ss`` style text."""

    clock = _CLOCK.match(text)
    if clock is not None:
        hours, minutes, seconds = (int(part) for part in clock.groups())
        return float(hours * 3600 + minutes * 60 + seconds)

    match = _DURATION.match(text)
    if match is None or not any(match.groupdict().values()):
        return None
    parts = {key: float(value) for key, value in match.groupdict().items() if value}
    return (
        parts.get("d", 0.0) * 86400
        + parts.get("h", 0.0) * 3600
        + parts.get("m", 0.0) * 60
        + parts.get("s", 0.0)
    )


def _leading_number(text: str) -> float | None:
    match = _NUMBER.match(text.strip())
    return float(match.group()) if match is not None else None


# Ordered by preference; the first pattern that yields a positive time wins.
_TIME_PATTERNS: tuple[tuple[re.Pattern[str], Callable[[str], float | None]], ...] = (
    (re.compile(r"model printing time:\s*(?P<value>[^;]+)", re.IGNORECASE), parse_duration),
    (re.compile(r"total estimated time:\s*(?P<value>[^;]+)", re.IGNORECASE), parse_duration),
    (re.compile(r"^estimated printing time[^=]*=\s*(?P<value>.+)$", re.IGNORECASE), parse_duration),
    (re.compile(r"^total print time[^:]*:\s*(?P<value>.+)$", re.IGNORECASE), parse_duration),
    (re.compile(r"^(?:PRINT\.)?TIME:\s*(?P<value>\d+(?:\.\d+)?)\s*$"), _leading_number),
    (re.compile(r"^print_time\s*=\s*(?P<value>\d+(?:\.\d+)?)", re.IGNORECASE), _leading_number),
    (re.compile(r"^time cost\s*=\s*(?P<value>\d+:\d{1,2}:\d{1,2})", re.IGNORECASE), parse_duration),
)

_FILAMENT_MM = re.compile(r"^filament used \[mm\]\s*=\s*(?P<value>.+)$", re.IGNORECASE)
_FILAMENT_G = re.compile(r"^filament used \[g\]\s*=\s*(?P<value>.+)$", re.IGNORECASE)
_CURA_FILAMENT_M = re.compile(r"^Filament used:\s*(?P<value>.+)$")


def _hours(seconds: float | None) -> float | None:
    return None if seconds is None else seconds / 3600.0


@dataclass(frozen=True, slots=True)
class FilamentUsage:
    """Usage of one filament slot as reported by the slicer."""

    index: int
    length_mm: float | None = None
    weight_g: float | None = None
    type: str | None = None
    color: str | None = None
    cost_per_kg: float | None = None
    profile: str | None = None

    @property
    def name(self) -> str:
        """Slicer profile name, or a positional label when none was written."""

        return self.profile or f"Filament {self.index + 1}"


@dataclass(frozen=True, slots=True)
class PlateSummary:
    """Slicer figures for a single plate."""

    plate_id: int
    estimated_time_seconds: float | None
    filament_used_mm: float
    filament_used_g: float
    filaments: tuple[FilamentUsage, ...] = ()
    layer_height: float | None = None
    nozzle_diameter: float | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def estimated_time_hours(self) -> float | None:
        return _hours(self.estimated_time_seconds)


@dataclass(frozen=True, slots=True)
class GcodeSummary:
    """Print metrics shown next to manually entered project costs.

    Totals add up the figures of every plate in :attr:`plates`. ``filaments``
    merges the per-plate usage of the same filament profile and price.
    """

    estimated_length: float
    estimated_time_seconds: float | None
    filament_used_mm: float
    filament_used_g: float
    filaments: tuple[FilamentUsage, ...] = ()
    layer_count: int = 0
    plate_count: int = 0
    metadata: Mapping[str, str] = field(default_factory=dict)
    plates: tuple[PlateSummary, ...] = ()
    layer_height: float | None = None
    nozzle_diameter: float | None = None

    @property
    def estimated_time_hours(self) -> float | None:
        return _hours(self.estimated_time_seconds)


@dataclass(frozen=True, slots=True)
class PlateCost:
    plate_id: int
    material_cost: float
    machine_cost: float
    filament_costs: tuple[float, ...] = ()

    @property
    def total_cost(self) -> float:
        return round(self.material_cost + self.machine_cost, 2)


@dataclass(frozen=True, slots=True)
class CostEstimate:
    material_cost: float
    machine_cost: float
    filament_costs: tuple[float, ...] = ()
    plates: tuple[PlateCost, ...] = ()

    @property
    def total_cost(self) -> float:
        return round(self.material_cost + self.machine_cost, 2)


class _PlateCollector:
    """Comment-derived figures of one plate; the first occurrence wins."""

    __slots__ = ("plate_id", "metadata", "times", "lengths", "weights")

    def __init__(self, plate_id: int) -> None:
        self.plate_id = plate_id
        self.metadata: dict[str, str] = {}
        self.times: dict[int, float] = {}
        self.lengths: list[float] = []
        self.weights: list[float] = []

    def feed(self, text: str) -> None:
        for index, (pattern, parser) in enumerate(_TIME_PATTERNS):
            if index in self.times:
                continue
            match = pattern.search(text)
            if match is None:
                continue
            seconds = parser(match.group("value"))
            if seconds is not None and seconds > 0:
                self.times[index] = seconds

        if not self.lengths:
            match = _FILAMENT_MM.match(text)
            if match is not None:
                self.lengths = _numbers(match.group("value"))
            else:
                cura = _CURA_FILAMENT_M.match(text)
                if cura is not None:
                    self.lengths = [value * 1000.0 for value in _numbers(cura.group("value"))]
        if not self.weights:
            match = _FILAMENT_G.match(text)
            if match is not None:
                self.weights = _numbers(match.group("value"))

        pair = _KEY_VALUE.match(text)
        if pair is not None:
            self.metadata.setdefault(pair.group("key").strip(), pair.group("value").strip())

    @property
    def estimated_time_seconds(self) -> float | None:
        return self.times[min(self.times)] if self.times else None


class SummaryCollector:
    """Accumulate vendor metadata from comment commands as they stream past.

    Each ``PLATE: n`` marker opens a separate bucket, since every plate of a
    3MF project carries its own header. Within a plate only the first
    occurrence of each key and pattern is kept so memory stays bounded on
    files with a comment on every layer.
    """

    def __init__(self) -> None:
        self._plates: dict[int, _PlateCollector] = {}
        self._current: _PlateCollector | None = None

    def feed(self, command: GcodeCommand) -> None:
        text = command.comment.strip() if command.is_comment and command.comment else ""
        if text.startswith(PLATE_MARKER):
            marker = _PLATE.match(text)
            if marker is not None:
                self._select(int(marker.group("plate")))
                return

        current = self._current if self._current is not None else self._select(_FIRST_PLATE_ID)
        if text:
            current.feed(text)

    def feed_all(self, commands: Iterable[GcodeCommand]) -> SummaryCollector:
        for command in commands:
            self.feed(command)
        return self

    @property
    def plate_ids(self) -> list[int]:
        return sorted(self._plates)

    @property
    def metadata(self) -> dict[str, str]:
        """Metadata of all plates; earlier plates win on conflicting keys."""

        merged: dict[str, str] = {}
        for plate_id in self.plate_ids:
            for key, value in self._plates[plate_id].metadata.items():
                merged.setdefault(key, value)
        return merged

    @property
    def estimated_time_seconds(self) -> float | None:
        times = [plate.estimated_time_seconds for plate in self._plates.values()]
        known = [seconds for seconds in times if seconds is not None]
        return float(sum(known)) if known else None

    def finish(
        self,
        toolpath: GcodeToolpath,
        *,
        filament_diameter_mm: float | None = None,
        filament_density_g_cm3: float | None = None,
    ) -> GcodeSummary:
        config = get_config()
        diameter = filament_diameter_mm or config.filament_diameter_mm
        density = filament_density_g_cm3 or config.filament_density_g_cm3
        grams_per_mm = math.pi * (diameter / 2.0) ** 2 * density / 1000.0

        metadata = self.metadata
        plate_ids = sorted(set(self._plates) | set(toolpath.plate_extrusion))
        plates = tuple(self._plate_summary(plate_id, toolpath, grams_per_mm, metadata) for plate_id in plate_ids)

        times = [plate.estimated_time_seconds for plate in plates if plate.estimated_time_seconds is not None]
        return GcodeSummary(
            estimated_length=_path_length(toolpath),
            estimated_time_seconds=float(sum(times)) if times else None,
            filament_used_mm=float(sum(plate.filament_used_mm for plate in plates)),
            filament_used_g=float(sum(plate.filament_used_g for plate in plates)),
            filaments=_consolidate(plates),
            layer_count=toolpath.layer_count,
            plate_count=len({plate.plate_id for plate in toolpath.plates} | set(plate_ids)),
            metadata=metadata,
            plates=plates,
            layer_height=_first(plate.layer_height for plate in plates),
            nozzle_diameter=_first(plate.nozzle_diameter for plate in plates),
        )

    def _select(self, plate_id: int) -> _PlateCollector:
        bucket = self._plates.get(plate_id)
        if bucket is None:
            bucket = self._plates[plate_id] = _PlateCollector(plate_id)
        self._current = bucket
        return bucket

    def _plate_summary(
        self,
        plate_id: int,
        toolpath: GcodeToolpath,
        grams_per_mm: float,
        shared: Mapping[str, str],
    ) -> PlateSummary:
        bucket = self._plates.get(plate_id) or _PlateCollector(plate_id)
        lengths = list(bucket.lengths)
        weights = list(bucket.weights)

        extrusion = toolpath.plate_extrusion.get(plate_id, {})
        if not lengths and sum(extrusion.values()) > 0:
            lengths = [max(0.0, extrusion.get(tool, 0.0)) for tool in range(max(extrusion) + 1)]
        if not weights and lengths:
            weights = [value * grams_per_mm for value in lengths]

        # Plates without their own config block inherit the file-wide values.
        metadata = {**shared, **bucket.metadata}
        return PlateSummary(
            plate_id=plate_id,
            estimated_time_seconds=bucket.estimated_time_seconds,
            filament_used_mm=float(sum(lengths)),
            filament_used_g=float(sum(weights)),
            filaments=_filament_usage(lengths, weights, metadata),
            layer_height=_metadata_number(metadata, "layer_height"),
            nozzle_diameter=_metadata_number(metadata, "nozzle_diameter"),
            metadata=dict(bucket.metadata),
        )


def summarize(
    toolpath: GcodeToolpath,
    commands: Iterable[GcodeCommand],
    *,
    filament_diameter_mm: float | None = None,
    filament_density_g_cm3: float | None = None,
) -> GcodeSummary:
    """Return a :class:`GcodeSummary` for *toolpath*.

    Only the comment commands of *commands* are inspected; the estimated time
    and the filament figures are read from vendor metadata rather than
    recomputed. When a plate has no filament figures the extruded length of
    that plate is converted to grams using the configured filament diameter
    and density.
    """

    return SummaryCollector().feed_all(commands).finish(
        toolpath,
        filament_diameter_mm=filament_diameter_mm,
        filament_density_g_cm3=filament_density_g_cm3,
    )


def estimate_cost(
    summary: GcodeSummary,
    *,
    cost_per_hour: float | None = None,
    filament_cost_per_kg: float | None = None,
) -> CostEstimate:
    """Return material and machine costs for *summary*.

    Per-filament prices come from the slicer's ``filament_cost`` metadata,
    then *filament_cost_per_kg*, then the configured default. Summaries with
    plates get one :class:`PlateCost` per plate and totals that add them up.
    """

    config = get_config()
    hourly = config.cost_per_hour if cost_per_hour is None else cost_per_hour
    default_price = config.default_filament_cost_per_kg if filament_cost_per_kg is None else filament_cost_per_kg

    filament_costs = _filament_costs(summary.filaments, summary.filament_used_g, default_price)
    if not summary.plates:
        return CostEstimate(
            material_cost=round(sum(filament_costs), 2),
            machine_cost=round((summary.estimated_time_hours or 0.0) * hourly, 2),
            filament_costs=filament_costs,
        )

    plates = []
    for plate in summary.plates:
        costs = _filament_costs(plate.filaments, plate.filament_used_g, default_price)
        plates.append(
            PlateCost(
                plate_id=plate.plate_id,
                material_cost=round(sum(costs), 2),
                machine_cost=round((plate.estimated_time_hours or 0.0) * hourly, 2),
                filament_costs=costs,
            )
        )
    return CostEstimate(
        material_cost=round(sum(plate.material_cost for plate in plates), 2),
        machine_cost=round(sum(plate.machine_cost for plate in plates), 2),
        filament_costs=filament_costs,
        plates=tuple(plates),
    )


def format_print_time(seconds: float) -> str:
    """Return *seconds* as ``2h 5m`` style text."""

    minutes = round(seconds / 60.0)
    hours, mins = divmod(minutes, 60)
    if hours == 0:
        return f"{mins}m"
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"


def _path_length(toolpath: GcodeToolpath) -> float:
    if not toolpath.vertex_count:
        return 0.0
    segments = toolpath.segments().astype(np.float64)
    return float(np.linalg.norm(segments[:, 1] - segments[:, 0], axis=1).sum())


def _numbers(text: str) -> list[float]:
    return [float(value) for value in _NUMBER.findall(text)]


def _first(values: Iterable[float | None]) -> float | None:
    return next((value for value in values if value is not None), None)


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    separator = ";" if ";" in value else ","
    return [part.strip().strip('"') for part in value.split(separator)]


def _metadata_number(metadata: Mapping[str, str], key: str) -> float | None:
    # PrusaSlicer writes ``layer_height``, Cura ``Layer height``.
    for name, value in metadata.items():
        if name.lower().replace(" ", "_") == key:
            return _leading_number(value)
    return None


def _filament_usage(
    lengths: list[float],
    weights: list[float],
    metadata: Mapping[str, str],
) -> tuple[FilamentUsage, ...]:
    types = _split_list(metadata.get("filament_type"))
    colors = _split_list(metadata.get("filament_colour") or metadata.get("filament_color"))
    prices = [_leading_number(value) for value in _split_list(metadata.get("filament_cost"))]
    profiles = _split_list(metadata.get("filament_settings_id"))

    def pick(values: list, index: int):
        return values[index] if index < len(values) and values[index] not in ("", None) else None

    usages = []
    for index in range(max(len(lengths), len(weights))):
        length = pick(lengths, index)
        weight = pick(weights, index)
        if not length and not weight:
            # Unused slots are reported as zero by multi-material slicers.
            continue
        usages.append(
            FilamentUsage(
                index=index,
                length_mm=length,
                weight_g=weight,
                type=pick(types, index),
                color=pick(colors, index),
                cost_per_kg=pick(prices, index),
                profile=pick(profiles, index),
            )
        )
    return tuple(usages)


def _add(first: float | None, second: float | None) -> float | None:
    if first is None and second is None:
        return None
    return (first or 0.0) + (second or 0.0)


def _consolidate(plates: Sequence[PlateSummary]) -> tuple[FilamentUsage, ...]:
    merged: dict[tuple[str, float | None], FilamentUsage] = {}
    for plate in plates:
        for usage in plate.filaments:
            key = (usage.name, usage.cost_per_kg)
            known = merged.get(key)
            if known is None:
                merged[key] = usage
                continue
            merged[key] = replace(
                known,
                length_mm=_add(known.length_mm, usage.length_mm),
                weight_g=_add(known.weight_g, usage.weight_g),
            )
    return tuple(merged.values())


def _filament_costs(
    filaments: Sequence[FilamentUsage],
    total_weight_g: float,
    default_price: float,
) -> tuple[float, ...]:
    costs = []
    for filament in filaments:
        if not filament.weight_g or filament.weight_g <= 0:
            continue
        price = filament.cost_per_kg if filament.cost_per_kg else default_price
        costs.append(round(filament.weight_g / 1000.0 * price, 2))
    if not filaments and total_weight_g > 0:
        costs.append(round(total_weight_g / 1000.0 * default_price, 2))
    return tuple(costs)
