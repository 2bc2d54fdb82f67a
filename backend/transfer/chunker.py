"""Splitting byte sources into chunks and putting them back together."""

from typing import AsyncIterator, Iterable

from config import CHUNK_SIZE
from transfer.errors import ReadError
from transfer.storage import ByteSource


def chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Number of slices ``split`` produces for ``size`` bytes."""
    if size == 0:
        return 1
    return -(-size // chunk_size)


def progress_percent(done: int, total: int) -> int:
    """Whole-number percentage of ``done`` over ``total``, capped at 100."""
    if total <= 0:
        return 100
    return min(100, round(done / total * 100))


async def split(
    source: ByteSource, size: int, chunk_size: int = CHUNK_SIZE
) -> AsyncIterator[bytes]:
    """
    Yield consecutive slices of ``source`` covering exactly ``size`` bytes.

    Reads are issued one at a time; the next read starts only after the
    consumer has taken the previous slice. A zero-byte file still yields a
    single empty slice so the receiver sees a final chunk.

    Raises:
        ReadError: the source failed or ended before ``size`` bytes.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    if size == 0:
        yield b""
        return

    offset = 0
    while offset < size:
        want = min(chunk_size, size - offset)
        try:
            piece = await source.read(want)
        except OSError as e:
            raise ReadError(f"Read failed at offset {offset}: {e}") from e
        if not piece:
            raise ReadError(f"Source ended at {offset} of {size} bytes")
        # A source may return less than asked; keep reading to fill the slice
        while len(piece) < want:
            try:
                more = await source.read(want - len(piece))
            except OSError as e:
                raise ReadError(f"Read failed at offset {offset + len(piece)}: {e}") from e
            if not more:
                raise ReadError(f"Source ended at {offset + len(piece)} of {size} bytes")
            piece += more
        offset += len(piece)
        yield piece


def reassemble(slices: Iterable[bytes]) -> bytes:
    """Concatenate slices in the order they arrived."""
    return b"".join(slices)
