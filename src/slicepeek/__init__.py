"""Top-level package for slicepeek.

slicepeek reads sliced 3D printer files (``.gcode``, ``.gcode.3mf`` and
``.bgcode``) and turns them into renderable toolpaths, plate thumbnails and
print summaries for cost calculation.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
