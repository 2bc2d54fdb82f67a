"""
Transfer engine: streams accepted files for the sender and reassembles
them for the receiver.

Files go one after another, each as a ``file-metadata`` message followed
by its chunks in offset order. The sender never waits for the receiver;
``Channel.send`` is the only throttle.
"""

import logging

from config import CHUNK_SIZE
from transfer.channel import Channel
from transfer.chunker import progress_percent, reassemble, split
from transfer.errors import ProtocolViolation
from transfer.history import HistoryRecorder
from transfer.models import Chunk, Direction, FileDescriptor, FileMetadata
from transfer.protocol import encode_message
from transfer.storage import ByteSink

logger = logging.getLogger(__name__)


class BatchSender:
    """Sends an accepted file list over a channel."""

    def __init__(
        self,
        channel: Channel,
        history: HistoryRecorder,
        progress_callback,
        status_callback,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        """
        Args:
            progress_callback: async fn(metadata, percent) on progress.
            status_callback: async fn(message) on status changes.
        """
        self._channel = channel
        self._history = history
        self._progress_callback = progress_callback
        self._status_callback = status_callback
        self._chunk_size = chunk_size
        self.current: FileMetadata | None = None

    async def stream_batch(self, files: list[FileDescriptor]) -> None:
        """Send every file in order.

        Raises:
            ReadError: a source failed; nothing more is sent.
            ChannelError: the channel failed.
        """
        total = len(files)
        for index, descriptor in enumerate(files):
            await self._stream_file(descriptor, index, total)
        self.current = None

    async def _stream_file(
        self, descriptor: FileDescriptor, index: int, total: int
    ) -> None:
        metadata = FileMetadata(
            name=descriptor.name,
            size=descriptor.size,
            index=index,
            total=total,
        )
        self.current = metadata
        await self._channel.send(*encode_message(metadata))
        await self._progress_callback(metadata, 0)
        await self._status_callback(f"Sending: {metadata.name} ({index + 1}/{total})")

        sent = 0
        reported = 0
        try:
            async for piece in split(descriptor.source, descriptor.size, self._chunk_size):
                sent += len(piece)
                last = sent >= descriptor.size
                chunk = Chunk(
                    payload=piece,
                    last=last,
                    is_last_in_batch=last and metadata.is_last,
                )
                await self._channel.send(*encode_message(chunk))
                logger.debug(f"'{metadata.name}': {sent}/{descriptor.size} bytes sent")

                percent = progress_percent(sent, descriptor.size)
                if percent > reported or last:
                    reported = percent
                    await self._progress_callback(metadata, percent)
        finally:
            await descriptor.source.close()

        logger.info(f"Sent '{metadata.name}' ({sent:,} bytes, {index + 1}/{total})")
        await self._history.append(metadata.name, Direction.SENT)


class BatchReceiver:
    """Rebuilds files from metadata and chunk messages."""

    def __init__(
        self,
        sink: ByteSink,
        history: HistoryRecorder,
        progress_callback,
        status_callback,
        file_callback,
    ) -> None:
        """
        Args:
            progress_callback: async fn(metadata, percent) on progress.
            status_callback: async fn(message) on status changes.
            file_callback: async fn(metadata, location) per stored file.
        """
        self._sink = sink
        self._history = history
        self._progress_callback = progress_callback
        self._status_callback = status_callback
        self._file_callback = file_callback
        self._buffer: list[bytes] = []
        self._received = 0
        self._reported = 0
        self._accepted: dict[str, int] = {}  # name -> size the user approved
        self._next_index = 0
        self.active = False
        self.current: FileMetadata | None = None

    def begin_batch(self, accepted: dict[str, int]) -> None:
        """Expect the files of a freshly granted batch, by name and size."""
        self.discard()
        self._accepted = dict(accepted)
        self._next_index = 0
        self.active = True

    def discard(self) -> None:
        """Drop any partially received file."""
        if self._buffer:
            logger.info(
                f"Discarding {self._received:,} bytes of incomplete "
                f"'{self.current.name if self.current else '?'}'"
            )
        self._buffer = []
        self._received = 0
        self._reported = 0
        self.current = None
        self.active = False

    async def on_metadata(self, metadata: FileMetadata) -> None:
        if not self.active:
            raise ProtocolViolation("File metadata outside an accepted batch")
        if self.current is not None:
            raise ProtocolViolation(
                f"Metadata for '{metadata.name}' before '{self.current.name}' completed"
            )
        if metadata.index < self._next_index:
            raise ProtocolViolation(f"File index {metadata.index} is already past")
        if metadata.index != self._next_index:
            raise ProtocolViolation(
                f"Expected file index {self._next_index}, got {metadata.index}"
            )
        if metadata.total != len(self._accepted):
            raise ProtocolViolation(
                f"Batch announced {metadata.total} files, {len(self._accepted)} were accepted"
            )
        if metadata.name not in self._accepted:
            raise ProtocolViolation(f"'{metadata.name}' was not accepted")
        if metadata.size != self._accepted[metadata.name]:
            raise ProtocolViolation(
                f"'{metadata.name}' announced {metadata.size} bytes, "
                f"{self._accepted[metadata.name]} were proposed"
            )

        self._buffer = []
        self._received = 0
        self._reported = 0
        self.current = metadata
        await self._progress_callback(metadata, 0)
        await self._status_callback(f"Receiving: {metadata.name}")

    async def on_chunk(self, chunk: Chunk) -> bool:
        """Take one chunk; returns True once the whole batch has arrived.

        Raises:
            ProtocolViolation: no active file, or the chunk does not fit it.
            WriteError: the completed file could not be stored.
        """
        metadata = self.current
        if metadata is None:
            raise ProtocolViolation("Chunk received with no active file")

        received = self._received + len(chunk.payload)
        if received > metadata.size:
            raise ProtocolViolation(
                f"'{metadata.name}' overflowed: {received} of {metadata.size} bytes"
            )
        self._buffer.append(chunk.payload)
        self._received = received

        percent = progress_percent(received, metadata.size)
        if percent > self._reported or chunk.last:
            self._reported = percent
            await self._progress_callback(metadata, percent)

        if not chunk.last:
            return False

        if received != metadata.size:
            raise ProtocolViolation(
                f"'{metadata.name}' ended at {received} of {metadata.size} bytes"
            )
        if chunk.is_last_in_batch != metadata.is_last:
            raise ProtocolViolation(
                f"Last-in-batch flag wrong on file {metadata.index + 1}/{metadata.total}"
            )

        data = reassemble(self._buffer)
        self._buffer = []
        self._received = 0
        self.current = None
        self._next_index += 1

        location = await self._sink.save(metadata.name, data)
        logger.info(f"Received '{metadata.name}' ({len(data):,} bytes)")
        await self._history.append(metadata.name, Direction.RECEIVED)
        await self._file_callback(metadata, location)
        await self._status_callback(f"File Received: {metadata.name}")

        if chunk.is_last_in_batch:
            self.active = False
            return True
        return False
