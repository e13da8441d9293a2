"""Tokenize G-code text into :class:`GcodeCommand` objects."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from ..errors import LineParseWarning, WarningRecorder

__all__ = [
    "GcodeCommand",
    "PLATE_MARKER",
    "iter_commands",
    "parse_line",
    "plate_marker",
]

logger = logging.getLogger(__name__)

_COMMAND_PATTERN = re.compile(r"([A-Za-z])(\d+)(?:\.(\d+))?(?=[\sA-Za-z]|$)")
_WORD_PATTERN = re.compile(r"\s*([A-Za-z])([-+]?(?:\d+\.?\d*|\.\d+))?")
_PAREN_COMMENT_PATTERN = re.compile(r"\(([^)]*)\)")
_LINE_NUMBER_PATTERN = re.compile(r"^[Nn]\d+\s*")
_CHECKSUM_PATTERN = re.compile(r"\*\d+\s*$")

# Commands whose argument is free text rather than parameter words.
_TEXT_COMMANDS = frozenset({("M", 23), ("M", 28), ("M", 30), ("M", 32), ("M", 117), ("M", 118), ("M", 928)})

_EMPTY_PARAMETERS: Mapping[str, float] = MappingProxyType({})

PLATE_MARKER = "PLATE:"
"""Prefix of the comment that opens the commands of a new plate."""


@dataclass(frozen=True, slots=True)
class GcodeCommand:
    """A decoded G-code instruction or a comment-only line.

    Parameter letters given without a value (``G28 X Y`` or ``G28 XY``) are
    stored as NaN.
    """

    letter: str | None
    code: int | None
    parameters: Mapping[str, float] = field(default_factory=lambda: _EMPTY_PARAMETERS)
    comment: str | None = None
    subcode: int | None = None
    text: str | None = None
    line_number: int = 0

    @property
    def is_comment(self) -> bool:
        return self.letter is None

    @property
    def name(self) -> str:
        if self.letter is None:
            return ""
        base = f"{self.letter}{self.code}"
        return base if self.subcode is None else f"{base}.{self.subcode}"

    def matches(self, letter: str, *codes: int) -> bool:
        return self.letter == letter and self.code in codes and self.subcode is None

    def get(self, key: str, default: float | None = None) -> float | None:
        return self.parameters.get(key, default)


def parse_line(raw_line: str, line_number: int = 0) -> GcodeCommand | None:
    """Parse a single line of G-code.

    Returns ``None`` for blank lines. Raises ``ValueError`` when the line does
    not follow the ``<letter><code> <letter><value> ... ;comment`` grammar.
    """

    line = raw_line.strip()
    if not line:
        return None
    if line.startswith(";"):
        return GcodeCommand(None, None, comment=line[1:].strip(), line_number=line_number)

    comment: str | None = None
    if ";" in line:
        line, comment = line.split(";", 1)
        comment = comment.strip()

    paren_comments = _PAREN_COMMENT_PATTERN.findall(line)
    if paren_comments:
        line = _PAREN_COMMENT_PATTERN.sub(" ", line)
        if comment is None:
            comment = " ".join(part.strip() for part in paren_comments)

    line = _CHECKSUM_PATTERN.sub("", _LINE_NUMBER_PATTERN.sub("", line.strip()))
    if not line:
        if comment is None:
            return None
        return GcodeCommand(None, None, comment=comment, line_number=line_number)

    head = _COMMAND_PATTERN.match(line)
    if head is None:
        raise ValueError(f"unrecognized command {line.split(None, 1)[0]!r}")

    letter = head.group(1).upper()
    code = int(head.group(2))
    subcode = int(head.group(3)) if head.group(3) is not None else None
    rest = line[head.end() :]

    if (letter, code) in _TEXT_COMMANDS:
        text = rest.strip()
        return GcodeCommand(
            letter,
            code,
            comment=comment,
            subcode=subcode,
            text=text or None,
            line_number=line_number,
        )

    parameters: dict[str, float] = {}
    position = 0
    while position < len(rest):
        if rest[position:].isspace():
            break
        word = _WORD_PATTERN.match(rest, position)
        if word is None or word.end() == position:
            raise ValueError(f"unexpected text {rest[position:].strip()!r}")
        key = word.group(1).upper()
        if key in parameters:
            raise ValueError(f"duplicate parameter {key}")
        value = word.group(2)
        parameters[key] = float(value) if value is not None else math.nan
        position = word.end()
        if position >= len(rest) or rest[position].isspace():
            continue
        if not rest[position].isalpha():
            raise ValueError(f"unexpected text {rest[position:].strip()!r}")

    return GcodeCommand(
        letter,
        code,
        MappingProxyType(parameters) if parameters else _EMPTY_PARAMETERS,
        comment=comment,
        subcode=subcode,
        line_number=line_number,
    )


def iter_commands(
    lines: Iterable[str],
    *,
    warnings: WarningRecorder | None = None,
    first_line_number: int = 1,
) -> Iterator[GcodeCommand]:
    """Lazily yield the commands of *lines*, skipping unparseable ones."""

    for line_number, raw_line in enumerate(lines, start=first_line_number):
        try:
            command = parse_line(raw_line, line_number)
        except ValueError as exc:
            warning = LineParseWarning(f"line {line_number}: {exc}: {raw_line.strip()[:80]!r}")
            if warnings is not None:
                warnings.record(warning)
            else:
                logger.warning("%s: %s", LineParseWarning.__name__, warning)
            continue
        if command is not None:
            yield command


def plate_marker(plate_id: int) -> GcodeCommand:
    """Return the comment command that announces the start of *plate_id*."""

    return GcodeCommand(None, None, comment=f"{PLATE_MARKER} {plate_id}")
