"""Command line entry point for inspecting sliced print files."""

from __future__ import annotations

import argparse
import base64
import json
import logging
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .errors import FormatError, SlicePeekError
from .gcode.summary import estimate_cost, format_print_time
from .pipeline import PrintFileResult, load_print_file

__all__ = ["main"]

logger = logging.getLogger(__name__)

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/qoi": "qoi"}


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="slicepeek",
        description="Extract thumbnails, toolpaths and print metrics from sliced print files.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect = subparsers.add_parser(
        "inspect",
        help="Summarize a .gcode, .bgcode or .gcode.3mf file.",
    )
    inspect.add_argument("path", type=Path, help="Print file to inspect.")
    inspect.add_argument(
        "--json",
        action="store_true",
        help="Print the summary as JSON instead of text.",
    )
    inspect.add_argument(
        "--thumbnails",
        type=Path,
        metavar="DIR",
        help="Write embedded plate thumbnails to DIR as plate_<n>.<ext>.",
    )
    inspect.add_argument(
        "--color-by",
        choices=("tool", "feature"),
        default="tool",
        help="Color segments by extruder/color change or by feature type (default: tool).",
    )
    inspect.add_argument(
        "--max-vertices",
        type=int,
        default=None,
        help="Vertex budget for the reconstructed toolpath (0 disables the limit).",
    )
    inspect.add_argument(
        "--filament-color",
        action="append",
        default=None,
        metavar="HEX",
        help="Filament color per tool, in order. May be given more than once.",
    )
    inspect.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v for info, -vv for debug).",
    )
    return parser.parse_args(argv)


def _report(result: PrintFileResult) -> dict[str, Any]:
    report: dict[str, Any] = {
        "file": result.filename,
        "kind": result.kind.value,
        "commands": result.command_count,
        "thumbnails": sorted(result.thumbnails),
        "warnings": result.warning_count,
    }

    toolpath = result.toolpath
    if toolpath is not None:
        bounds = toolpath.bounds
        report["toolpath"] = {
            "segments": toolpath.segment_count,
            "vertices": toolpath.vertex_count,
            "layers": toolpath.layer_count,
            "plates": sorted({plate.plate_id for plate in toolpath.plates}),
            "multi_color": toolpath.is_multi_color,
            "sample_stride": toolpath.sample_stride,
            "bounds": {
                "min": [bounds.min_x, bounds.min_y, bounds.min_z],
                "max": [bounds.max_x, bounds.max_y, bounds.max_z],
            },
        }

    summary = result.summary
    if summary is not None:
        cost = estimate_cost(summary)
        plate_costs = {plate.plate_id: plate for plate in cost.plates}
        report["summary"] = {
            "estimated_length_mm": round(summary.estimated_length, 2),
            "estimated_time_seconds": summary.estimated_time_seconds,
            "filament_used_mm": round(summary.filament_used_mm, 2),
            "filament_used_g": round(summary.filament_used_g, 2),
            "layer_height": summary.layer_height,
            "nozzle_diameter": summary.nozzle_diameter,
            "material_cost": cost.material_cost,
            "machine_cost": cost.machine_cost,
            "total_cost": cost.total_cost,
            "filaments": [
                {
                    "name": filament.name,
                    "type": filament.type,
                    "color": filament.color,
                    "weight_g": None if filament.weight_g is None else round(filament.weight_g, 2),
                }
                for filament in summary.filaments
            ],
            "plates": [
                {
                    "plate": plate.plate_id,
                    "estimated_time_seconds": plate.estimated_time_seconds,
                    "filament_used_g": round(plate.filament_used_g, 2),
                    "material_cost": plate_costs[plate.plate_id].material_cost,
                    "machine_cost": plate_costs[plate.plate_id].machine_cost,
                    "total_cost": plate_costs[plate.plate_id].total_cost,
                }
                for plate in summary.plates
            ],
        }
    return report


def _print_text(report: dict[str, Any]) -> None:
    print(f"{report['file']} ({report['kind']})")
    print(f"  commands:   {report['commands']}")
    thumbnails = report["thumbnails"]
    print(f"  thumbnails: {', '.join(f'plate {plate}' for plate in thumbnails) or 'none'}")

    toolpath = report.get("toolpath")
    if toolpath is None:
        print("  toolpath:   none (no embedded G-code)")
    else:
        low, high = toolpath["bounds"]["min"], toolpath["bounds"]["max"]
        print(
            f"  toolpath:   {toolpath['segments']} segments, {toolpath['layers']} layers, "
            f"plates {toolpath['plates'] or '-'}"
        )
        print(
            "  bounds:     "
            + " ".join(f"{axis}[{lo:.2f}, {hi:.2f}]" for axis, lo, hi in zip("XYZ", low, high))
        )

    summary = report.get("summary")
    if summary is not None:
        seconds = summary["estimated_time_seconds"]
        print(f"  time:       {format_print_time(seconds) if seconds else 'unknown'}")
        print(f"  filament:   {summary['filament_used_mm']:.0f} mm / {summary['filament_used_g']:.1f} g")
        print(f"  path:       {summary['estimated_length_mm']:.0f} mm")
        print(
            f"  cost:       {summary['total_cost']:.2f} "
            f"(material {summary['material_cost']:.2f}, machine {summary['machine_cost']:.2f})"
        )
        plates = summary["plates"]
        if len(plates) > 1:
            for plate in plates:
                seconds = plate["estimated_time_seconds"]
                print(
                    f"    plate {plate['plate']}: {format_print_time(seconds) if seconds else 'unknown'}, "
                    f"{plate['filament_used_g']:.1f} g, cost {plate['total_cost']:.2f}"
                )
    if report["warnings"]:
        print(f"  warnings:   {report['warnings']}")


def _write_thumbnails(result: PrintFileResult, directory: Path) -> list[Path]:
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for plate_id, data_url in sorted(result.thumbnails.items()):
        header, _, payload = data_url.partition(",")
        mime = header.removeprefix("data:").split(";", 1)[0]
        target = directory / f"plate_{plate_id}.{_EXTENSIONS.get(mime, 'png')}"
        target.write_bytes(base64.b64decode(payload))
        written.append(target)
        logger.info("Wrote %s", target)
    return written


def _inspect(args: argparse.Namespace) -> int:
    data = args.path.read_bytes()
    result = load_print_file(
        data,
        args.path.name,
        filament_colors=args.filament_color,
        color_by=args.color_by,
        max_vertices=args.max_vertices,
    )

    if args.thumbnails is not None:
        _write_thumbnails(result, args.thumbnails)

    report = _report(result)
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        _print_text(report)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        return _inspect(args)
    except FormatError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except SlicePeekError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
