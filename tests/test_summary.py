from __future__ import annotations

import math
from pathlib import Path

import pytest

from slicepeek.gcode.commands import iter_commands, plate_marker
from slicepeek.gcode.decoder import SourceKind, decode
from slicepeek.gcode.summary import (
    FilamentUsage,
    GcodeSummary,
    SummaryCollector,
    estimate_cost,
    format_print_time,
    parse_duration,
    summarize,
)
from slicepeek.gcode.toolpath import build_toolpath


def _summary(text: str) -> GcodeSummary:
    lines = text.splitlines()
    toolpath = build_toolpath(iter_commands(lines))
    return summarize(toolpath, iter_commands(lines))


@pytest.mark.parametrize(
    ("text", "seconds"),
    [
        ("1d 2h 3m 4s", 93784.0),
        ("2h 5m", 7500.0),
        ("45s", 45.0),
        ("12m 3.5s", 723.5),
        ("01:02:03", 3723.0),
        ("soon", None),
    ],
)
def test_parse_duration(text: str, seconds: float | None) -> None:
    assert parse_duration(text) == seconds


def test_sample_print_summary(sample_gcode_path: Path) -> None:
    data = sample_gcode_path.read_bytes()
    toolpath = build_toolpath(decode(data, SourceKind.PLAIN_TEXT))

    summary = summarize(toolpath, decode(data, SourceKind.PLAIN_TEXT))

    assert summary.estimated_length == pytest.approx(160.0)
    assert summary.estimated_time_seconds == 90.0
    assert summary.estimated_time_hours == pytest.approx(0.025)
    assert summary.filament_used_mm == pytest.approx(9.6)
    assert summary.filament_used_g == pytest.approx(0.03)
    assert summary.layer_count == 2
    assert summary.plate_count == 1
    assert summary.filaments == (
        FilamentUsage(index=0, length_mm=9.6, weight_g=0.03, type="PETG", color="#FF8000", cost_per_kg=25.0),
    )
    assert summary.metadata["layer_height"] == "0.2"


def test_length_is_sum_of_segment_lengths() -> None:
    summary = _summary("G1 X3 Y4 E1\nG1 X3 Y4 Z0.5\nG0 X0 Y0\nG1 X0 Y10 E2\n")

    assert summary.estimated_length == pytest.approx(15.0)


def test_empty_program() -> None:
    summary = _summary("; nothing here\n")

    assert summary.estimated_length == 0.0
    assert summary.estimated_time_seconds is None
    assert summary.estimated_time_hours is None
    assert summary.filament_used_mm == 0.0
    assert summary.filaments == ()


@pytest.mark.parametrize(
    ("comment", "seconds"),
    [
        ("; model printing time: 1h 2m 3s; total estimated time: 1h 10m 0s", 3723.0),
        ("; total estimated time: 10m 0s", 600.0),
        (";TIME:6123", 6123.0),
        (";PRINT.TIME:42", 42.0),
        ("; print_time = 3600", 3600.0),
        ("; time cost = 00:30:00", 1800.0),
        ("; estimated printing time (normal mode) = 2h", 7200.0),
        ("; total print time: 5m", 300.0),
    ],
)
def test_vendor_time_comments(comment: str, seconds: float) -> None:
    assert _summary(comment + "\nG1 X1 E1\n").estimated_time_seconds == seconds


def test_time_preference_ignores_comment_order() -> None:
    text = ";TIME:100\n; estimated printing time (normal mode) = 3m\n"

    assert _summary(text).estimated_time_seconds == 180.0


def test_cura_filament_in_meters() -> None:
    summary = _summary(";FLAVOR:Marlin\n;TIME:60\n;Filament used: 1.5m, 0.25m\n")

    assert [usage.length_mm for usage in summary.filaments] == pytest.approx([1500.0, 250.0])
    assert summary.filament_used_mm == pytest.approx(1750.0)
    # Weights are derived from the default 1.75 mm PLA filament.
    grams_per_mm = math.pi * 0.875**2 * 1.24 / 1000.0
    assert summary.filament_used_g == pytest.approx(1750.0 * grams_per_mm)


def test_multi_material_slots_skip_unused() -> None:
    text = (
        "; filament used [mm] = 100.0, 0.0, 50.0\n"
        "; filament used [g] = 3.0, 0.0, 1.5\n"
        "; filament_type = PLA;PLA;PETG\n"
    )

    summary = _summary(text)

    assert [(usage.index, usage.type) for usage in summary.filaments] == [(0, "PLA"), (2, "PETG")]


def test_extrusion_fallback_per_tool() -> None:
    summary = _summary("G1 X10 E100\nT1\nG1 X20 E150\n")

    assert [usage.length_mm for usage in summary.filaments] == pytest.approx([100.0, 50.0])
    assert summary.filament_used_mm == pytest.approx(150.0)
    assert summary.filament_used_g > 0


def test_metadata_first_occurrence_wins() -> None:
    collector = SummaryCollector().feed_all(iter_commands(["; layer_height = 0.2", "; layer_height = 0.3"]))

    assert collector.metadata == {"layer_height": "0.2"}


def test_estimate_cost_uses_per_filament_prices() -> None:
    summary = GcodeSummary(
        estimated_length=1000.0,
        estimated_time_seconds=7200.0,
        filament_used_mm=10000.0,
        filament_used_g=150.0,
        filaments=(
            FilamentUsage(index=0, weight_g=100.0, cost_per_kg=30.0),
            FilamentUsage(index=1, weight_g=50.0),
        ),
    )

    cost = estimate_cost(summary)

    assert cost.filament_costs == (3.0, 1.0)
    assert cost.material_cost == 4.0
    assert cost.machine_cost == pytest.approx(0.2)
    assert cost.total_cost == pytest.approx(4.2)


def test_estimate_cost_overrides() -> None:
    summary = GcodeSummary(
        estimated_length=0.0,
        estimated_time_seconds=3600.0,
        filament_used_mm=0.0,
        filament_used_g=200.0,
    )

    cost = estimate_cost(summary, cost_per_hour=1.5, filament_cost_per_kg=25.0)

    assert cost.material_cost == 5.0
    assert cost.machine_cost == 1.5


def test_estimate_cost_without_time() -> None:
    summary = GcodeSummary(estimated_length=0.0, estimated_time_seconds=None, filament_used_mm=0.0, filament_used_g=0.0)

    assert estimate_cost(summary).total_cost == 0.0


@pytest.mark.parametrize(
    ("seconds", "text"),
    [(40, "1m"), (3600, "1h"), (7500, "2h 5m"), (59, "1m"), (0, "0m")],
)
def test_format_print_time(seconds: float, text: str) -> None:
    assert format_print_time(seconds) == text


def _project(make_zip) -> bytes:
    header = '; filament_settings_id = "Bambu PLA Basic";"Generic PETG"\n; filament_cost = 30;20\n'
    return make_zip(
        {
            "Metadata/plate_1.gcode": (
                "; model printing time: 60m\n"
                "; filament used [mm] = 3300.0, 660.0\n"
                "; filament used [g] = 10.0, 2.0\n"
                + header
                + "; layer_height = 0.2\n; nozzle_diameter = 0.4,0.4\nM83\nG1 X10 E1\n"
            ),
            "Metadata/plate_2.gcode": (
                "; model printing time: 30m\n"
                "; filament used [mm] = 1650.0, 0.0\n"
                "; filament used [g] = 5.0, 0.0\n"
                + header
                + "; layer_height = 0.12\nM83\nG1 X10 E1\n"
            ),
        }
    )


def _project_summary(data: bytes) -> GcodeSummary:
    toolpath = build_toolpath(decode(data, SourceKind.EMBEDDED_3MF))
    return summarize(toolpath, decode(data, SourceKind.EMBEDDED_3MF))


def test_plates_are_summed(make_zip) -> None:
    summary = _project_summary(_project(make_zip))

    assert summary.plate_count == 2
    assert summary.estimated_time_seconds == 5400.0
    assert summary.filament_used_g == pytest.approx(17.0)
    assert summary.filament_used_mm == pytest.approx(5610.0)
    assert [plate.plate_id for plate in summary.plates] == [1, 2]
    assert [plate.estimated_time_seconds for plate in summary.plates] == [3600.0, 1800.0]
    assert [plate.filament_used_g for plate in summary.plates] == pytest.approx([12.0, 5.0])


def test_plate_details(make_zip) -> None:
    summary = _project_summary(_project(make_zip))
    first, second = summary.plates

    assert first.layer_height == 0.2
    assert second.layer_height == 0.12
    # The second plate has no nozzle line of its own.
    assert second.nozzle_diameter == 0.4
    assert summary.layer_height == 0.2
    assert [usage.name for usage in first.filaments] == ["Bambu PLA Basic", "Generic PETG"]
    assert [usage.name for usage in second.filaments] == ["Bambu PLA Basic"]


def test_filaments_consolidated_across_plates(make_zip) -> None:
    summary = _project_summary(_project(make_zip))

    assert [usage.name for usage in summary.filaments] == ["Bambu PLA Basic", "Generic PETG"]
    assert [usage.weight_g for usage in summary.filaments] == pytest.approx([15.0, 2.0])
    assert [usage.length_mm for usage in summary.filaments] == pytest.approx([4950.0, 660.0])
    assert [usage.cost_per_kg for usage in summary.filaments] == [30.0, 20.0]


def test_estimate_cost_per_plate(make_zip) -> None:
    cost = estimate_cost(_project_summary(_project(make_zip)))

    assert [plate.plate_id for plate in cost.plates] == [1, 2]
    assert [plate.material_cost for plate in cost.plates] == pytest.approx([0.34, 0.15])
    assert [plate.machine_cost for plate in cost.plates] == pytest.approx([0.1, 0.05])
    assert [plate.total_cost for plate in cost.plates] == pytest.approx([0.44, 0.2])
    assert cost.filament_costs == pytest.approx((0.45, 0.04))
    assert cost.material_cost == pytest.approx(0.49)
    assert cost.machine_cost == pytest.approx(0.15)
    assert cost.total_cost == pytest.approx(0.64)


def test_extrusion_fallback_stays_within_plate(make_zip) -> None:
    data = make_zip(
        {
            "Metadata/plate_1.gcode": "; filament used [g] = 10.0\nM83\nG1 X10 E4\n",
            "Metadata/plate_2.gcode": "M83\nG1 X10 E2\n",
        }
    )

    summary = _project_summary(data)
    first, second = summary.plates

    assert first.filament_used_mm == pytest.approx(4.0)
    assert first.filament_used_g == pytest.approx(10.0)
    assert second.filament_used_mm == pytest.approx(2.0)
    assert summary.filament_used_mm == pytest.approx(6.0)
    assert summary.filament_used_g == pytest.approx(10.0 + second.filament_used_g)


def test_plate_markers_stay_out_of_metadata() -> None:
    collector = SummaryCollector()
    collector.feed(plate_marker(1))
    collector.feed_all(iter_commands(["; layer_height = 0.2"]))
    collector.feed(plate_marker(2))
    collector.feed_all(iter_commands(["; layer_height = 0.3", "; nozzle_diameter = 0.6"]))

    assert collector.plate_ids == [1, 2]
    assert collector.metadata == {"layer_height": "0.2", "nozzle_diameter": "0.6"}


def test_profile_names_fall_back_to_slot_labels() -> None:
    summary = _summary("; filament used [g] = 0.0, 4.0\n")

    assert [usage.name for usage in summary.filaments] == ["Filament 2"]
    assert summary.filaments[0].profile is None
