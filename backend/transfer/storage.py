"""
Byte sources and sinks for transferred files.

The protocol treats a file as an opaque sequential byte source on the
sending side and a write-once sink on the receiving side. Blocking disk
I/O runs in worker threads so the event loop keeps serving the channel.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import BinaryIO, Protocol, runtime_checkable

from transfer.errors import WriteError

logger = logging.getLogger(__name__)


@runtime_checkable
class ByteSource(Protocol):
    """Sequential reader over one file's bytes."""

    async def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; ``b""`` at end of data."""

    async def close(self) -> None:
        """Release the underlying handle."""


@runtime_checkable
class ByteSink(Protocol):
    """Destination for completely received files."""

    async def save(self, name: str, data: bytes) -> str:
        """Store ``data`` under ``name`` and return where it went."""


class FileSource:
    """Reads a local file; the handle is opened on first read."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._file: BinaryIO | None = None

    async def read(self, size: int) -> bytes:
        if self._file is None:
            self._file = await asyncio.to_thread(open, self.path, "rb")
        return await asyncio.to_thread(self._file.read, size)

    async def close(self) -> None:
        if self._file is not None:
            await asyncio.to_thread(self._file.close)
            self._file = None


class BytesSource:
    """Serves an in-memory buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._offset = 0
        self.closed = False

    async def read(self, size: int) -> bytes:
        piece = self._data[self._offset:self._offset + size]
        self._offset += len(piece)
        return bytes(piece)

    async def close(self) -> None:
        self.closed = True


def _unique_path(directory: Path, name: str) -> Path:
    """Pick ``name``, or ``name (1).ext``, ``name (2).ext`` ... if taken."""
    candidate = directory / name
    stem, suffix = os.path.splitext(name)
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate


class DirectorySink:
    """Saves received files into a directory, never overwriting."""

    def __init__(self, save_dir: str) -> None:
        self.save_dir = save_dir

    async def save(self, name: str, data: bytes) -> str:
        # Peer supplied names must not escape the save directory
        safe_name = Path(name.replace("\\", "/")).name or "received-file"
        try:
            return await asyncio.to_thread(self._write, safe_name, data)
        except OSError as e:
            raise WriteError(f"Could not save '{safe_name}': {e}") from e

    def _write(self, name: str, data: bytes) -> str:
        directory = Path(self.save_dir)
        directory.mkdir(parents=True, exist_ok=True)
        target = _unique_path(directory, name)
        target.write_bytes(data)
        logger.info(f"Saved {len(data):,} bytes to {target}")
        return str(target)
