"""Configuration helpers for slicepeek."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields
from typing import Any, Final

__all__ = [
    "AppConfig",
    "DEFAULT_COLOR",
    "DEFAULT_MAX_VERTICES",
    "ENV_PREFIX",
    "configure",
    "get_config",
    "parse_hex_color",
]

ENV_PREFIX: Final[str] = "SLICEPEEK_"
"""Prefix of environment variables that override configuration fields."""

DEFAULT_MAX_VERTICES: Final[int] = 80_000
"""Default vertex budget for a single toolpath."""

DEFAULT_COLOR: Final[str] = "#4f9cf5"
"""Color applied to segments when no color change was encountered."""

_HEX_COLOR_PATTERN = re.compile(r"^#?([0-9A-Fa-f]{6})(?:[0-9A-Fa-f]{2})?$")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Runtime configuration for slicepeek."""

    max_vertices: int = DEFAULT_MAX_VERTICES
    default_color: str = DEFAULT_COLOR
    filament_diameter_mm: float = 1.75
    filament_density_g_cm3: float = 1.24
    cost_per_hour: float = 0.1
    default_filament_cost_per_kg: float = 20.0
    yield_interval: int = 50_000
    max_recorded_warnings: int = 100

    def __post_init__(self) -> None:
        if self.max_vertices < 0:
            raise ValueError("max_vertices cannot be negative")
        if self.max_vertices and self.max_vertices < 2:
            raise ValueError("max_vertices must allow at least one segment")
        if self.yield_interval <= 0:
            raise ValueError("yield_interval must be positive")
        if self.filament_diameter_mm <= 0 or self.filament_density_g_cm3 <= 0:
            raise ValueError("Filament diameter and density must be positive")
        if self.max_recorded_warnings < 0:
            raise ValueError("max_recorded_warnings cannot be negative")
        parse_hex_color(self.default_color)


_CONFIG: AppConfig | None = None


def get_config() -> AppConfig:
    """Return the cached :class:`AppConfig` instance."""

    global _CONFIG
    if _CONFIG is None:
        _CONFIG = _build_config()
    return _CONFIG


def configure(**overrides: Any) -> AppConfig:
    """Rebuild the global configuration with optional overrides.

    Overrides set to ``None`` fall back to the environment or the defaults.
    """

    global _CONFIG
    _CONFIG = _build_config(**overrides)
    return _CONFIG


def parse_hex_color(value: str) -> tuple[float, float, float]:
    """Return ``#RRGGBB`` (alpha ignored) as normalized RGB components."""

    match = _HEX_COLOR_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid hex color: {value!r}")
    digits = match.group(1)
    return (
        int(digits[0:2], 16) / 255.0,
        int(digits[2:4], 16) / 255.0,
        int(digits[4:6], 16) / 255.0,
    )


def _build_config(**overrides: Any) -> AppConfig:
    known = {field.name: field for field in fields(AppConfig)}
    unknown = set(overrides) - set(known)
    if unknown:
        raise TypeError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for name, field in known.items():
        override = overrides.get(name)
        if override is not None:
            values[name] = override
            continue

        env_value = os.environ.get(ENV_PREFIX + name.upper())
        if env_value is None or not env_value.strip():
            continue
        values[name] = _coerce_env_value(name, env_value.strip(), field.type)

    return AppConfig(**values)


def _coerce_env_value(name: str, text: str, annotation: object) -> Any:
    # Annotations are strings under postponed evaluation.
    kind = str(annotation)
    try:
        if kind == "int":
            return int(text)
        if kind == "float":
            return float(text)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {text!r}") from exc
    return text
