"""Zip archive creation for backup dumps."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 9
_COPY_CHUNK = 1024 * 1024


def _reserve_destination(destination: Path) -> Path:
    """Create an empty file at ``destination`` or the first free ``<stem>-N`` variant."""
    candidate = destination
    index = 1
    while True:
        try:
            fd = os.open(candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            candidate = destination.with_name(f"{destination.stem}-{index}{destination.suffix}")
            index += 1
            continue
        os.close(fd)
        return candidate


class ArchiveBuilder:
    """Build a deflated zip archive entry by entry.

    Entries go to a uniquely named ``.part`` file next to the destination.
    :meth:`finalize` closes it, claims the destination name (or a ``-N``
    variant when another archive already holds it) and moves the archive
    there, so concurrent builders never write to the same file.
    """

    def __init__(self, destination: Path, compresslevel: int = DEFAULT_COMPRESSION_LEVEL) -> None:
        self.destination = Path(destination)
        self.destination.parent.mkdir(parents=True, exist_ok=True)
        fd, partial = tempfile.mkstemp(
            prefix=f".{self.destination.stem}-",
            suffix=".part",
            dir=self.destination.parent,
        )
        os.close(fd)
        self.partial_path = Path(partial)
        try:
            self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(
                self.partial_path,
                mode="w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=compresslevel,
            )
        except Exception:
            self.partial_path.unlink(missing_ok=True)
            raise
        self.entries = []

    def _require_open(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise RuntimeError(f"Archive {self.destination} is already closed")
        return self._zip

    def add_file(self, path: Path, arcname: Optional[str] = None) -> None:
        path = Path(path)
        name = arcname or path.name
        self._require_open().write(path, arcname=name)
        self.entries.append(name)

    def add_stream(self, arcname: str, fileobj: BinaryIO) -> None:
        """Copy a binary stream into the archive without reading it whole."""
        with self._require_open().open(arcname, mode="w") as dest:
            shutil.copyfileobj(fileobj, dest, _COPY_CHUNK)
        self.entries.append(arcname)

    def finalize(self) -> int:
        """Close the archive, move it into place and return its size in bytes.

        ``destination`` is updated when the requested name was taken.
        """
        self._require_open().close()
        self._zip = None
        final = _reserve_destination(self.destination)
        try:
            os.replace(self.partial_path, final)
        except OSError:
            final.unlink(missing_ok=True)
            raise
        if final != self.destination:
            logger.warning("Archive %s already exists, wrote %s instead", self.destination.name, final.name)
            self.destination = final
        size = self.destination.stat().st_size
        logger.info("Zip file created: %s (%d bytes, %d entries)", self.destination, size, len(self.entries))
        return size

    def abort(self) -> None:
        """Discard a partially written archive."""
        if self._zip is not None:
            try:
                self._zip.close()
            except Exception:
                logger.debug("Closing aborted archive %s failed", self.partial_path)
            self._zip = None
        self.partial_path.unlink(missing_ok=True)

    def __enter__(self) -> "ArchiveBuilder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None or self._zip is not None:
            self.abort()


def archive_directory(
    source_dir: Path,
    destination: Path,
    compresslevel: int = DEFAULT_COMPRESSION_LEVEL,
) -> Tuple[Path, int]:
    """Zip the regular files of ``source_dir`` (no containing folder).

    Returns:
        tuple: path the archive was written to and its size in bytes
    """
    with ArchiveBuilder(destination, compresslevel=compresslevel) as builder:
        for f in sorted(Path(source_dir).iterdir()):
            if f.is_file() and not f.name.startswith("."):
                builder.add_file(f, arcname=f.name)
        size = builder.finalize()
        return builder.destination, size
