"""Plate thumbnail extraction for sliced print files."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from ..config import get_config
from ..container import ContainerArchive, open_container
from ..errors import FormatError, ThumbnailDecodeWarning, WarningRecorder

__all__ = [
    "GENERIC_THUMBNAIL_RULES",
    "GENERIC_PLATE_ID",
    "PLATE_THUMBNAIL_RULES",
    "ThumbnailExtractor",
    "ThumbnailRule",
    "encode_data_url",
    "extract_gcode_thumbnails",
    "extract_thumbnails",
    "is_container_filename",
]

logger = logging.getLogger(__name__)

CONTAINER_SUFFIX = ".gcode.3mf"

GENERIC_PLATE_ID = 1
"""Plate id assigned to a thumbnail found by the generic fallback scan."""


@dataclass(frozen=True, slots=True)
class ThumbnailRule:
    """Match container entries that hold a preview image.

    Rules with a ``plate`` group yield per-plate thumbnails; rules without one
    are only used by the generic fallback scan.
    """

    pattern: re.Pattern[str]
    vendor: str

    def plate_id(self, path: str) -> int | None:
        match = self.pattern.match(path)
        if match is None:
            return None
        if "plate" not in self.pattern.groupindex:
            return GENERIC_PLATE_ID
        return int(match.group("plate"))


def _rule(expression: str, vendor: str) -> ThumbnailRule:
    return ThumbnailRule(re.compile(expression, re.IGNORECASE), vendor)


# Order matters: earlier rules are the canonical locations and win per plate.
PLATE_THUMBNAIL_RULES: tuple[ThumbnailRule, ...] = (
    _rule(r"^Metadata/plate_(?P<plate>\d+)\.png$", "bambu/orca"),
    _rule(r"^Metadata/top_(?P<plate>\d+)\.png$", "bambu/orca"),
    _rule(r"^Metadata/plate_(?P<plate>\d+)_thumbnail\.png$", "orca"),
    _rule(r"^Thumbnails/plate_(?P<plate>\d+)\.png$", "generic"),
    _rule(r"^thumbnails/plate_(?P<plate>\d+)\.png$", "generic"),
)

GENERIC_THUMBNAIL_RULES: tuple[ThumbnailRule, ...] = (
    _rule(r"^Metadata/thumbnail[^/]*\.png$", "prusa/cura"),
    _rule(r"^Thumbnails/[^/]+\.png$", "generic"),
    _rule(r"^thumbnails/[^/]+\.png$", "generic"),
)

_GCODE_THUMBNAIL_BEGIN = re.compile(
    r"^;\s*thumbnail(?:_(?P<format>[A-Za-z]+))?\s+begin\s+(?P<width>\d+)x(?P<height>\d+)",
    re.IGNORECASE,
)
_GCODE_THUMBNAIL_END = re.compile(r"^;\s*thumbnail(?:_[A-Za-z]+)?\s+end", re.IGNORECASE)


def is_container_filename(filename: str) -> bool:
    """Return ``True`` when *filename* names a ``.gcode.3mf`` container."""

    return filename.lower().endswith(CONTAINER_SUFFIX)


def encode_data_url(image_bytes: bytes) -> str:
    """Return *image_bytes* wrapped as a ``data:`` URL after verifying them.

    The bytes are embedded unchanged. Raises ``ValueError`` when Pillow cannot
    identify or verify the image.
    """

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            mime = image.get_format_mimetype() or "image/png"
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValueError(f"Unreadable image data: {exc}") from exc

    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime};base64,{encoded}"


class ThumbnailExtractor:
    """Collect plate thumbnails from containers using an ordered rule table."""

    def __init__(
        self,
        plate_rules: Sequence[ThumbnailRule] = PLATE_THUMBNAIL_RULES,
        generic_rules: Sequence[ThumbnailRule] = GENERIC_THUMBNAIL_RULES,
    ) -> None:
        self._plate_rules = tuple(plate_rules)
        self._generic_rules = tuple(generic_rules)
        self._warnings = WarningRecorder(logger, limit=get_config().max_recorded_warnings)

    @property
    def warnings(self) -> list[ThumbnailDecodeWarning]:
        return self._warnings.records  # type: ignore[return-value]

    @property
    def warning_count(self) -> int:
        return self._warnings.total

    def extract(self, data: bytes, filename: str) -> dict[int, str]:
        """Return ``{plate_id: data_url}`` for the container *data*.

        Files that are not ``.gcode.3mf`` containers yield an empty mapping.
        """

        if not is_container_filename(filename):
            return {}

        with open_container(data) as archive:
            return self.extract_from_archive(archive)

    def extract_from_archive(self, archive: ContainerArchive) -> dict[int, str]:
        entries = archive.entries
        thumbnails: dict[int, str] = {}
        claimed: set[int] = set()

        for rule in self._plate_rules:
            for path in entries:
                plate_id = rule.plate_id(path)
                if plate_id is None or plate_id in claimed:
                    continue
                # A corrupt image does not claim the plate.
                data_url = self._decode_entry(archive, path)
                if data_url is None:
                    continue
                thumbnails[plate_id] = data_url
                claimed.add(plate_id)
                logger.debug("Plate %d thumbnail from %s (%s)", plate_id, path, rule.vendor)

        if thumbnails:
            return thumbnails

        for rule in self._generic_rules:
            for path in entries:
                if rule.plate_id(path) is None:
                    continue
                data_url = self._decode_entry(archive, path)
                if data_url is None:
                    continue
                logger.debug("Generic thumbnail from %s (%s)", path, rule.vendor)
                return {GENERIC_PLATE_ID: data_url}

        return thumbnails

    def _decode_entry(self, archive: ContainerArchive, path: str) -> str | None:
        try:
            return encode_data_url(archive.read(path))
        except (FormatError, ValueError) as exc:
            self._warnings.record(ThumbnailDecodeWarning(f"{path}: {exc}"))
            return None


def extract_thumbnails(data: bytes, filename: str) -> dict[int, str]:
    """Return the plate thumbnails embedded in a ``.gcode.3mf`` container."""

    return ThumbnailExtractor().extract(data, filename)


def extract_gcode_thumbnails(
    lines: Iterable[str],
    *,
    warnings: WarningRecorder | None = None,
) -> dict[int, str]:
    """Return the largest base64 thumbnail block embedded in G-code comments.

    PrusaSlicer, OrcaSlicer and Cura write previews as ``; thumbnail begin
    WxH LEN`` ... ``; thumbnail end`` comment blocks in the file header. The
    scan stops at the first command line and the largest readable image is
    returned as plate 1.
    """

    best: tuple[int, str] | None = None
    chunks: list[str] | None = None
    area = 0

    for raw_line in lines:
        line = raw_line.strip()
        if not line:
            continue
        if not line.startswith(";"):
            break

        if chunks is None:
            begin = _GCODE_THUMBNAIL_BEGIN.match(line)
            if begin is not None:
                chunks = []
                area = int(begin.group("width")) * int(begin.group("height"))
            continue

        if _GCODE_THUMBNAIL_END.match(line):
            payload = "".join(chunks)
            chunks = None
            if best is not None and best[0] >= area:
                continue
            try:
                data_url = encode_data_url(base64.b64decode(payload, validate=True))
            except (binascii.Error, ValueError) as exc:
                warning = ThumbnailDecodeWarning(f"{area}px thumbnail block: {exc}")
                if warnings is not None:
                    warnings.record(warning)
                else:
                    logger.warning("%s: %s", ThumbnailDecodeWarning.__name__, warning)
                continue
            best = (area, data_url)
            continue

        chunks.append(line.lstrip(";").strip())

    return {GENERIC_PLATE_ID: best[1]} if best is not None else {}
