"""Pytest configuration helpers for slicepeek tests."""

from __future__ import annotations

import io
import os
import struct
import sys
import zipfile
import zlib
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

import pytest
from PIL import Image

# Ensure the source directory is importable without requiring an editable install.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def reset_app_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure each test runs with the default application configuration."""

    from slicepeek.config import ENV_PREFIX, configure

    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)
    configure()
    yield
    # Restore the environment first; tests may leave invalid values behind.
    monkeypatch.undo()
    configure()


def png_bytes(width: int = 4, height: int = 4, color: tuple[int, int, int] = (255, 0, 0)) -> bytes:
    """Return a small solid-color PNG image."""

    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def zip_bytes(entries: Mapping[str, bytes | str]) -> bytes:
    """Return an in-memory zip archive holding *entries*."""

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path, payload in entries.items():
            archive.writestr(path, payload)
    return buffer.getvalue()


BgcodeBlockSpec = tuple[int, bytes, bytes, int]
"""``(block_type, payload, parameters, compression)`` for :func:`bgcode_bytes`."""


def bgcode_block(block_type: int, payload: bytes, parameters: bytes, compression: int, *, checksum: bool) -> bytes:
    stored = zlib.compress(payload) if compression == 1 else payload
    header = struct.pack("<HHI", block_type, compression, len(payload))
    if compression:
        header += struct.pack("<I", len(stored))
    body = header + parameters + stored
    if checksum:
        body += struct.pack("<I", zlib.crc32(body))
    return body


def bgcode_bytes(blocks: Iterable[BgcodeBlockSpec], *, checksum: bool = True, version: int = 1) -> bytes:
    """Return a binary G-code file made of *blocks*."""

    data = bytearray(struct.pack("<4sIH", b"GCDE", version, 1 if checksum else 0))
    for block_type, payload, parameters, compression in blocks:
        data += bgcode_block(block_type, payload, parameters, compression, checksum=checksum)
    return bytes(data)


def gcode_block(text: str, *, compression: int = 0, encoding: int = 0) -> BgcodeBlockSpec:
    return (1, text.encode("utf-8"), struct.pack("<H", encoding), compression)


def metadata_block(block_type: int, entries: Mapping[str, str], *, compression: int = 0) -> BgcodeBlockSpec:
    text = "".join(f"{key}={value}\n" for key, value in entries.items())
    return (block_type, text.encode("utf-8"), struct.pack("<H", 0), compression)


def thumbnail_block(image: bytes, width: int, height: int, *, image_format: int = 0) -> BgcodeBlockSpec:
    return (5, image, struct.pack("<HHH", image_format, width, height), 0)


@pytest.fixture()
def make_png() -> Callable[..., bytes]:
    return png_bytes


@pytest.fixture()
def make_zip() -> Callable[[Mapping[str, bytes | str]], bytes]:
    return zip_bytes


@pytest.fixture()
def sample_gcode_path() -> Path:
    """Path to the bundled two-layer PrusaSlicer style print."""

    return FIXTURES_DIR / "sample_print.gcode"
