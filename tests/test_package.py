"""Basic smoke tests for the slicepeek package."""

from __future__ import annotations

import importlib


def test_package_importable() -> None:
    """Ensure that the top-level package can be imported."""

    module = importlib.import_module("slicepeek")
    assert module.__version__ == "0.1.0"


def test_gcode_subpackage_exports_pipeline_types() -> None:
    module = importlib.import_module("slicepeek.gcode")
    for name in module.__all__:
        assert hasattr(module, name), name
