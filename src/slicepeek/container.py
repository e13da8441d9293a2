"""Read-only access to zip based ``.gcode.3mf`` containers."""

from __future__ import annotations

import io
import logging
import zipfile
import zlib
from collections.abc import Iterator
from contextlib import contextmanager

from .errors import EntryNotFoundError, FormatError

__all__ = [
    "ContainerArchive",
    "list_entries",
    "open_container",
    "read_entry",
]

logger = logging.getLogger(__name__)


class ContainerArchive:
    """Wrap an in-memory zip archive and expose its entries by path.

    Entry paths are case-sensitive and always use forward slashes. Directory
    entries are not listed.
    """

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(bytes(data)))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as exc:
            raise FormatError(f"Not a valid zip/3MF container: {exc}") from exc
        self._entries: tuple[str, ...] = tuple(
            info.filename for info in self._zip.infolist() if not info.is_dir()
        )
        logger.debug("Opened container with %d entries", len(self._entries))

    def __enter__(self) -> ContainerArchive:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def entries(self) -> tuple[str, ...]:
        return self._entries

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def read(self, path: str) -> bytes:
        """Return the decompressed bytes stored under *path*."""

        if path not in self._entries:
            raise EntryNotFoundError(f"Container entry {path!r} does not exist")
        try:
            return self._zip.read(path)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError) as exc:
            raise FormatError(f"Unable to decompress {path!r}: {exc}") from exc

    @contextmanager
    def stream(self, path: str) -> Iterator[io.BufferedIOBase]:
        """Yield a binary stream for *path* without reading it fully."""

        if path not in self._entries:
            raise EntryNotFoundError(f"Container entry {path!r} does not exist")
        with self._zip.open(path) as handle:
            try:
                yield handle  # type: ignore[misc]
            except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
                raise FormatError(f"Unable to decompress {path!r}: {exc}") from exc

    def close(self) -> None:
        self._zip.close()


def open_container(data: bytes | bytearray | memoryview) -> ContainerArchive:
    """Return a :class:`ContainerArchive` for *data*.

    Raises :class:`~slicepeek.errors.FormatError` when *data* is not a zip
    stream.
    """

    return ContainerArchive(data)


def list_entries(archive: ContainerArchive) -> tuple[str, ...]:
    """Return the file entry paths of *archive* in archive order."""

    return archive.entries


def read_entry(archive: ContainerArchive, path: str) -> bytes:
    """Return the bytes stored under *path* in *archive*."""

    return archive.read(path)
