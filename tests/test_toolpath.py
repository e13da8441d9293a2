"""Tests for toolpath reconstruction from G-code command streams."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from slicepeek.config import DEFAULT_COLOR, parse_hex_color
from slicepeek.errors import NumericDegradeWarning
from slicepeek.gcode.decoder import GcodeDecoder, SourceKind, decode
from slicepeek.gcode.toolpath import (
    FALLBACK_PALETTE,
    FEATURE_COLORS,
    Bounds,
    GcodeToolpath,
    ToolpathBuilder,
    build_toolpath,
)


def _toolpath(text: str, **options) -> GcodeToolpath:
    return build_toolpath(decode(text.encode("utf-8"), SourceKind.PLAIN_TEXT), **options)


def _segment_colors(toolpath: GcodeToolpath) -> list[tuple[float, float, float]]:
    assert toolpath.colors is not None
    return [tuple(row) for row in toolpath.colors.reshape(-1, 3)[::2]]


def _rgb(value: str) -> tuple[float, float, float]:
    return tuple(np.float32(channel) for channel in parse_hex_color(value))


def _assert_invariants(toolpath: GcodeToolpath) -> None:
    assert toolpath.vertices.shape == (toolpath.vertex_count * 3,)
    assert toolpath.vertex_count % 2 == 0
    if toolpath.colors is not None:
        assert toolpath.colors.shape == toolpath.vertices.shape
    if toolpath.vertex_count:
        points = toolpath.vertices.reshape(-1, 3)
        low = points.min(axis=0)
        high = points.max(axis=0)
        bounds = toolpath.bounds
        assert (bounds.min_x, bounds.min_y, bounds.min_z) == tuple(float(value) for value in low)
        assert (bounds.max_x, bounds.max_y, bounds.max_z) == tuple(float(value) for value in high)
    else:
        assert toolpath.bounds == Bounds()


def test_travel_after_extrusion_adds_nothing() -> None:
    toolpath = _toolpath("G1 X10 Y0 E1\nG1 X10 Y10 E0\n")

    assert toolpath.vertex_count == 2
    assert toolpath.segments().tolist() == [[[0.0, 0.0, 0.0], [10.0, 0.0, 0.0]]]
    _assert_invariants(toolpath)


def test_moves_without_extrusion_are_filtered() -> None:
    toolpath = _toolpath("G0 X5 Y5\nG1 X10 F1200\nG1 E2\nG1 X10 E3\n")

    assert toolpath.vertex_count == 0
    assert toolpath.colors is None
    assert toolpath.bounds.is_degenerate
    _assert_invariants(toolpath)


def test_each_extruding_move_adds_one_segment() -> None:
    toolpath = _toolpath("G1 X10 E1\nG1 Y10 E2\nG1 X0 E3\nG1 Y0 E4\n")

    assert toolpath.segment_count == 4
    assert toolpath.bounds.size == (10.0, 10.0, 0.0)
    _assert_invariants(toolpath)


def test_unparseable_line_between_moves() -> None:
    decoder = GcodeDecoder()
    commands = decoder.decode(b"G1 X10 E1\nBED_MESH_CALIBRATE PROFILE=default\nG1 X20 E2\n", SourceKind.PLAIN_TEXT)

    toolpath = build_toolpath(commands)

    assert toolpath.segment_count == 2
    assert decoder.warning_count == 1


def test_decoding_twice_is_identical(sample_gcode_path: Path) -> None:
    data = sample_gcode_path.read_bytes()

    first = build_toolpath(decode(data, SourceKind.PLAIN_TEXT), color_by="feature")
    second = build_toolpath(decode(data, SourceKind.PLAIN_TEXT), color_by="feature")

    assert first.vertex_count == second.vertex_count
    assert first.bounds == second.bounds
    assert np.array_equal(first.vertices, second.vertices)
    assert np.array_equal(first.colors, second.colors)


def test_sample_print(sample_gcode_path: Path) -> None:
    toolpath = build_toolpath(decode(sample_gcode_path.read_bytes(), SourceKind.PLAIN_TEXT))

    assert toolpath.segment_count == 8
    assert toolpath.colors is None
    assert toolpath.layer_count == 2
    assert [layer.z for layer in toolpath.layers] == pytest.approx([0.2, 0.4])
    assert [layer.vertex_count for layer in toolpath.layers] == [8, 8]
    assert toolpath.extruded_length == pytest.approx(9.6)
    assert toolpath.bounds.max_x == 20.0
    assert toolpath.bounds.min_z == pytest.approx(0.2)
    _assert_invariants(toolpath)


def test_result_is_read_only() -> None:
    toolpath = _toolpath("G1 X10 E1\nT1\nG1 X20 E2\n")

    with pytest.raises(ValueError):
        toolpath.vertices[0] = 1.0
    with pytest.raises(ValueError):
        toolpath.colors[0] = 1.0


def test_relative_positioning_and_extrusion() -> None:
    toolpath = _toolpath("G91\nM83\nG1 X10 E1\nG1 Y10 E1\nG1 Y-5 E-1\n")

    assert toolpath.segments().tolist() == [
        [[0.0, 0.0, 0.0], [10.0, 0.0, 0.0]],
        [[10.0, 0.0, 0.0], [10.0, 10.0, 0.0]],
    ]
    assert toolpath.extruded_length == pytest.approx(1.0)


def test_switching_back_to_absolute_modes() -> None:
    toolpath = _toolpath("G91\nM83\nG1 X5 E1\nG90\nM82\nG1 X5 E2\nG1 X8 E3\n")

    # The G90 move targets X5 where the head already is.
    assert toolpath.segments()[:, 1, 0].tolist() == [5.0, 8.0]


def test_set_position_resets_extrusion() -> None:
    toolpath = _toolpath("G1 X10 E5\nG92 E0\nG1 X20 E1\n")

    assert toolpath.segment_count == 2
    assert toolpath.extruded_length == pytest.approx(6.0)


def test_inch_units() -> None:
    toolpath = _toolpath("G20\nG1 X1 E0.1\nG21\nG1 X30 E3\n")

    assert toolpath.segments()[0, 1, 0] == pytest.approx(25.4)
    assert toolpath.bounds.max_x == 30.0


def test_home_resets_named_axes() -> None:
    toolpath = _toolpath("G1 X10 Y10 E1\nG28 X\nG1 Y20 E2\n")

    assert toolpath.segments()[1].tolist() == [[0.0, 10.0, 0.0], [0.0, 20.0, 0.0]]


def test_home_with_joined_axis_letters() -> None:
    toolpath = _toolpath("G1 X10 Y10 Z5 E1\nG28 XY\nG1 X5 E2\n")

    assert toolpath.segments()[1].tolist() == [[0.0, 0.0, 5.0], [5.0, 0.0, 5.0]]


def test_counter_clockwise_arc_is_tessellated() -> None:
    toolpath = _toolpath("G1 X10 Y0 E1\nG3 X0 Y10 I-10 J0 E2\n")

    assert toolpath.segment_count == 1 + 16
    arc_points = toolpath.segments()[1:].reshape(-1, 3)
    radii = np.hypot(arc_points[:, 0], arc_points[:, 1])
    assert radii == pytest.approx(10.0, abs=1e-4)
    assert toolpath.segments()[-1, 1].tolist() == pytest.approx([0.0, 10.0, 0.0])


def test_non_finite_move_is_dropped_with_warning() -> None:
    builder = ToolpathBuilder()
    commands = decode(b"G1 X10 E1\nG1 X Y5 E2\nG1 X2000000 E2\nG1 X20 E3\n", SourceKind.PLAIN_TEXT)

    toolpath = builder.feed_all(commands).build()

    assert toolpath.segments()[:, 1, 0].tolist() == [10.0, 20.0]
    assert toolpath.bounds.max_y == 0.0
    assert builder.warning_count == 2
    assert all(isinstance(warning, NumericDegradeWarning) for warning in builder.warnings)


def test_tool_changes_produce_colors() -> None:
    toolpath = _toolpath("G1 X10 E1\nT1\nG1 X20 E2\nT0\nG1 X30 E3\n")

    assert toolpath.is_multi_color
    assert _segment_colors(toolpath) == [
        _rgb(DEFAULT_COLOR),
        _rgb(FALLBACK_PALETTE[1]),
        _rgb(FALLBACK_PALETTE[0]),
    ]
    _assert_invariants(toolpath)


def test_caller_filament_colors_win() -> None:
    toolpath = _toolpath("T1\nG1 X10 E1\nT0\nG1 X20 E2\n", filament_colors=["#ffffff", "#000000"])

    assert _segment_colors(toolpath) == [(0.0, 0.0, 0.0), (1.0, 1.0, 1.0)]


def test_header_filament_colours_apply_to_earlier_segments() -> None:
    toolpath = _toolpath("T1\nG1 X10 E1\nT0\nG1 X20 E2\n; filament_colour = #FF0000;#00FF00\n")

    assert _segment_colors(toolpath) == [(0.0, 1.0, 0.0), (1.0, 0.0, 0.0)]


def test_bambu_filament_slot_changes() -> None:
    toolpath = _toolpath("G1 X10 E1\nM620 S2A\nG1 X20 E2\nM620 S255\nG1 X30 E3\n")

    assert _segment_colors(toolpath) == [_rgb(DEFAULT_COLOR)] + [_rgb(FALLBACK_PALETTE[2])] * 2
    assert dict(toolpath.tool_extrusion) == {0: pytest.approx(1.0), 2: pytest.approx(2.0)}


def test_single_tool_with_header_colour_omits_colors() -> None:
    toolpath = _toolpath("; filament_colour = #FF8000\nT0\nG1 X10 E1\nG1 X20 E2\n")

    assert toolpath.segment_count == 2
    assert toolpath.colors is None


def test_segments_before_first_tool_share_tool_zero() -> None:
    toolpath = _toolpath("G1 X10 E1\nT0\nG1 X20 E2\n", filament_colors=["#ff8000"])

    assert toolpath.colors is None


def test_single_feature_omits_colors() -> None:
    toolpath = _toolpath(";TYPE:Perimeter\nG1 X10 E1\nG1 X20 E2\n", color_by="feature")

    assert toolpath.colors is None


def test_m600_color_changes_cycle_palette() -> None:
    toolpath = _toolpath("G1 X10 E1\nM600\nG1 X20 E2\nM600\nG1 X30 E3\n")

    assert _segment_colors(toolpath) == [
        _rgb(DEFAULT_COLOR),
        _rgb(FALLBACK_PALETTE[1]),
        _rgb(FALLBACK_PALETTE[2]),
    ]


def test_color_change_marker_sets_explicit_color() -> None:
    toolpath = _toolpath("G1 X10 E1\n;COLOR_CHANGE,T0,#00FF00\nM600\nG1 X20 E2\n")

    assert _segment_colors(toolpath) == [_rgb(DEFAULT_COLOR), (0.0, 1.0, 0.0)]


def test_feature_coloring() -> None:
    text = "; FEATURE: Outer wall\nG1 X10 E1\n;TYPE:Sparse infill\nG1 X20 E2\n;TYPE:Mystery\nG1 X30 E3\n"

    toolpath = _toolpath(text, color_by="feature")
    colors = _segment_colors(toolpath)

    assert colors[0] == _rgb(FEATURE_COLORS["outer wall"])
    assert colors[1] == _rgb(FEATURE_COLORS["sparse infill"])
    assert colors[2] in [_rgb(color) for color in FALLBACK_PALETTE]


def test_feature_markers_do_not_color_in_tool_mode() -> None:
    toolpath = _toolpath(";TYPE:Perimeter\nG1 X10 E1\n")

    assert toolpath.colors is None


def test_invalid_color_mode() -> None:
    with pytest.raises(ValueError):
        ToolpathBuilder(color_by="speed")  # type: ignore[arg-type]


def test_layers_follow_z_without_markers() -> None:
    toolpath = _toolpath("G1 Z0.2\nG1 X10 E1\nG1 Y10 E2\nG1 Z0.4\nG1 X0 E3\n")

    assert toolpath.layer_count == 2
    assert [layer.vertex_count for layer in toolpath.layers] == [4, 2]
    assert [layer.index for layer in toolpath.layers] == [0, 1]


def test_plates_from_container(make_zip) -> None:
    data = make_zip(
        {
            "Metadata/plate_1.gcode": "M83\nG1 X10 E1\nT1\nG1 X20 E1\n",
            "Metadata/plate_2.gcode": "G1 X5 E1\n",
        }
    )

    toolpath = build_toolpath(decode(data, SourceKind.EMBEDDED_3MF))

    assert [(plate.plate_id, plate.first_vertex, plate.vertex_count) for plate in toolpath.plates] == [
        (1, 0, 4),
        (2, 4, 2),
    ]
    # Motion and extrusion modes restart for every plate.
    assert toolpath.segments()[2].tolist() == [[0.0, 0.0, 0.0], [5.0, 0.0, 0.0]]
    assert [layer.plate_id for layer in toolpath.layers] == [1, 2]
    assert _segment_colors(toolpath)[2] == _rgb(DEFAULT_COLOR)
    assert dict(toolpath.plate_extrusion) == {1: {0: 1.0, 1: 1.0}, 2: {0: 1.0}}


def test_vertex_budget_keeps_whole_print_covered() -> None:
    text = "".join(f"G1 X{index} E{index}\n" for index in range(1, 11))

    toolpath = _toolpath(text, max_vertices=8)

    assert toolpath.vertex_count <= 8
    assert toolpath.sample_stride == 4
    assert toolpath.segments()[:, 1, 0].tolist() == [1.0, 5.0, 9.0]
    _assert_invariants(toolpath)


def test_unlimited_budget() -> None:
    text = "".join(f"G1 X{index} E{index}\n" for index in range(1, 2001))

    toolpath = _toolpath(text, max_vertices=0)

    assert toolpath.segment_count == 2000
    assert toolpath.sample_stride == 1


def test_partial_feed_yields_valid_toolpath() -> None:
    builder = ToolpathBuilder()
    commands = decode(b"G1 X10 E1\nG1 Y10 E2\nG1 X0 E3\n", SourceKind.PLAIN_TEXT)
    builder.feed(next(commands))

    toolpath = builder.build()

    assert toolpath.segment_count == 1
    _assert_invariants(toolpath)


def test_toolpath_validates_shapes() -> None:
    with pytest.raises(ValueError):
        GcodeToolpath(vertices=np.zeros(5, dtype=np.float32), colors=None, vertex_count=2, bounds=Bounds())
