"""Exception and warning types shared across slicepeek."""

from __future__ import annotations

import logging

__all__ = [
    "DecodeWarning",
    "EntryNotFoundError",
    "FormatError",
    "LineParseWarning",
    "NumericDegradeWarning",
    "SlicePeekError",
    "ThumbnailDecodeWarning",
    "WarningRecorder",
]


class SlicePeekError(RuntimeError):
    """Base class for errors surfaced to callers."""


class FormatError(SlicePeekError):
    """Raised when a container or packed-binary file cannot be read at all."""


class EntryNotFoundError(SlicePeekError, KeyError):
    """Raised when an archive does not contain the requested entry."""

    def __str__(self) -> str:
        # KeyError quotes its message otherwise.
        return str(self.args[0]) if self.args else ""


class DecodeWarning(UserWarning):
    """Non-fatal condition that reduced the completeness of a result."""


class LineParseWarning(DecodeWarning):
    """A G-code line or packed-binary block did not match the known grammar."""


class NumericDegradeWarning(DecodeWarning):
    """A move produced a non-finite or out-of-range position and was dropped."""


class ThumbnailDecodeWarning(DecodeWarning):
    """An embedded preview image could not be decoded."""


class WarningRecorder:
    """Log non-fatal decode conditions and keep the first few for callers."""

    def __init__(self, logger: logging.Logger, *, limit: int) -> None:
        self._logger = logger
        self._limit = limit
        self.records: list[DecodeWarning] = []
        self.total = 0

    def record(self, warning: DecodeWarning) -> None:
        self.total += 1
        if len(self.records) < self._limit:
            self.records.append(warning)
            self._logger.warning("%s: %s", type(warning).__name__, warning)
        else:
            self._logger.debug("%s: %s", type(warning).__name__, warning)

    @property
    def suppressed(self) -> int:
        return self.total - len(self.records)
