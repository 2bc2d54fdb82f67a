"""In-memory stand-ins for the channel, sink and UI used by the tests."""

import asyncio
from dataclasses import dataclass

from config import CHUNK_SIZE
from transfer.errors import ChannelError
from transfer.history import HistoryRecorder
from transfer.models import Chunk, FileDescriptor, FileMetadata, Role
from transfer.protocol import decode_message
from transfer.session import TransferSession
from transfer.storage import BytesSource


class MemoryChannel:
    """One end of an in-process channel pair."""

    def __init__(self, name: str) -> None:
        self.remote_address = f"memory:{name}"
        self.remote_peer_id = name
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.peer: "MemoryChannel | None" = None
        self.sent: list[tuple[int, bytes]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, msg_type: int, payload: bytes = b"") -> None:
        if self._closed:
            raise ChannelError("Channel closed")
        self.sent.append((msg_type, payload))
        await self.peer.inbox.put((msg_type, payload))
        # Give the other side a chance to run, like a real transport would
        await asyncio.sleep(0)

    async def recv(self) -> tuple[int, bytes]:
        if self._closed:
            raise ChannelError("Channel closed")
        item = await self.inbox.get()
        if item is None:
            raise ChannelError("Peer closed the connection")
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.inbox.put_nowait(None)
        if not self.peer.closed:
            self.peer.inbox.put_nowait(None)

    def sent_messages(self) -> list:
        return [decode_message(t, p) for t, p in self.sent]


def memory_channel_pair() -> tuple[MemoryChannel, MemoryChannel]:
    a = MemoryChannel("peer-b")
    b = MemoryChannel("peer-a")
    a.peer, b.peer = b, a
    return a, b


class EventLog:
    """Collects ``emit`` calls."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))

    def of(self, event_type: str) -> list[dict]:
        return [d for t, d in self.events if t == event_type]

    def progress_for(self, name: str) -> list[int]:
        return [d["percent"] for d in self.of("progress") if d.get("file_name") == name]


class MemorySink:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}

    async def save(self, name: str, data: bytes) -> str:
        self.files[name] = data
        return f"memory://{name}"


class GatedSource:
    """Serves the first read, then blocks until ``gate`` is set."""

    def __init__(self, data: bytes) -> None:
        self._inner = BytesSource(data)
        self.gate = asyncio.Event()
        self._reads = 0
        self.closed = False

    async def read(self, size: int) -> bytes:
        self._reads += 1
        if self._reads > 1:
            await self.gate.wait()
        return await self._inner.read(size)

    async def close(self) -> None:
        self.closed = True


class FailingSource:
    """Serves ``good`` bytes, then raises OSError."""

    def __init__(self, good: bytes) -> None:
        self._inner = BytesSource(good)
        self._served = False
        self.closed = False

    async def read(self, size: int) -> bytes:
        if self._served:
            raise OSError("device not ready")
        self._served = True
        return await self._inner.read(size)

    async def close(self) -> None:
        self.closed = True


@dataclass
class Endpoint:
    session: TransferSession
    channel: MemoryChannel
    events: EventLog
    history: HistoryRecorder
    sink: MemorySink
    task: asyncio.Task

    @classmethod
    def create(
        cls,
        channel: MemoryChannel,
        role: Role,
        chunk_size: int = CHUNK_SIZE,
        sink=None,
        events=None,
    ) -> "Endpoint":
        events = events or EventLog()
        history = HistoryRecorder()
        sink = sink or MemorySink()
        session = TransferSession(channel, role, history, sink, emit=events, chunk_size=chunk_size)
        task = asyncio.create_task(session.run())
        return cls(session, channel, events, history, sink, task)

    async def shutdown(self) -> None:
        await self.session.close()
        await self.task


def start_pair(chunk_size: int = CHUNK_SIZE) -> tuple[Endpoint, Endpoint]:
    """A connected initiator/responder pair with running sessions."""
    a, b = memory_channel_pair()
    return (
        Endpoint.create(a, Role.INITIATOR, chunk_size),
        Endpoint.create(b, Role.RESPONDER, chunk_size),
    )


def start_single(chunk_size: int = CHUNK_SIZE) -> tuple[Endpoint, MemoryChannel]:
    """A running session whose peer is a bare channel driven by the test."""
    mine, raw = memory_channel_pair()
    return Endpoint.create(mine, Role.RESPONDER, chunk_size), raw


def descriptor(name: str, data: bytes) -> FileDescriptor:
    return FileDescriptor(name=name, size=len(data), source=BytesSource(data))


def frames_of(messages: list, kind: type) -> list:
    return [m for m in messages if isinstance(m, kind)]


def metadata_frames(channel: MemoryChannel) -> list[FileMetadata]:
    return frames_of(channel.sent_messages(), FileMetadata)


def chunk_frames(channel: MemoryChannel) -> list[Chunk]:
    return frames_of(channel.sent_messages(), Chunk)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
