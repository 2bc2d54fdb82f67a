"""
Message channel between two endpoints.

A channel carries ``(type, payload)`` frames in order, exactly once. The
concrete implementation runs over an asyncio TCP stream: each frame is a
5-byte header (type, length) followed by the payload, and after an X25519
handshake every payload is sealed with AES-256-GCM.
"""

import asyncio
import logging
import struct
from typing import Protocol

from config import CONNECT_TIMEOUT, LOCAL_PEER_ID, MAX_FRAME_SIZE
from security.crypto import PUBLIC_KEY_SIZE, FrameCipher, KeyExchange
from transfer.errors import ChannelError
from transfer.models import MessageType

logger = logging.getLogger(__name__)

# --- Wire framing helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class Channel(Protocol):
    """Ordered, reliable, bidirectional message transport."""

    remote_address: str
    remote_peer_id: str

    @property
    def closed(self) -> bool:
        ...

    async def send(self, msg_type: int, payload: bytes = b"") -> None:
        """Send one frame; may suspend while the transport drains."""

    async def recv(self) -> tuple[int, bytes]:
        """Wait for the next frame.

        Raises:
            ChannelError: the channel closed or failed.
        """

    async def close(self) -> None:
        """Close the channel; pending ``recv`` calls fail."""


async def write_frame(
    writer: asyncio.StreamWriter, msg_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, msg_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def read_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    msg_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ChannelError(f"Frame of {length:,} bytes exceeds limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return msg_type, payload


class StreamChannel:
    """Encrypted channel over an asyncio stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cipher: FrameCipher,
        remote_peer_id: str = "",
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._cipher = cipher
        self._closed = False
        self.remote_peer_id = remote_peer_id
        peer = writer.get_extra_info("peername")
        self.remote_address = f"{peer[0]}:{peer[1]}" if peer else ""

    @property
    def closed(self) -> bool:
        return self._closed or self._writer.is_closing()

    async def send(self, msg_type: int, payload: bytes = b"") -> None:
        if self.closed:
            raise ChannelError("Channel closed")
        sealed = self._cipher.seal(msg_type, payload)
        try:
            await write_frame(self._writer, msg_type, sealed)
        except (ConnectionError, OSError) as e:
            raise ChannelError(f"Send failed: {e}") from e

    async def recv(self) -> tuple[int, bytes]:
        if self._closed:
            raise ChannelError("Channel closed")
        try:
            msg_type, sealed = await read_frame(self._reader)
        except asyncio.IncompleteReadError as e:
            raise ChannelError("Peer closed the connection") from e
        except (ConnectionError, OSError) as e:
            raise ChannelError(f"Receive failed: {e}") from e
        try:
            return msg_type, self._cipher.open(msg_type, sealed)
        except ValueError as e:
            raise ChannelError(str(e)) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass


def _hello(public_bytes: bytes) -> bytes:
    return public_bytes + LOCAL_PEER_ID.encode("utf-8")


def _parse_hello(msg_type: int, payload: bytes) -> tuple[bytes, str]:
    if msg_type != MessageType.HANDSHAKE:
        raise ChannelError(f"Expected HANDSHAKE, got {msg_type:#x}")
    if len(payload) < PUBLIC_KEY_SIZE:
        raise ChannelError("Handshake too short")
    peer_id = payload[PUBLIC_KEY_SIZE:].decode("utf-8", errors="replace")
    return payload[:PUBLIC_KEY_SIZE], peer_id


async def _handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    initiator: bool,
) -> StreamChannel:
    exchange = KeyExchange()
    try:
        # Initiator speaks first; the responder answers
        if initiator:
            await write_frame(writer, MessageType.HANDSHAKE, _hello(exchange.public_bytes))
        msg_type, payload = await read_frame(reader)
        peer_pub_bytes, peer_id = _parse_hello(msg_type, payload)
        if not initiator:
            await write_frame(writer, MessageType.HANDSHAKE, _hello(exchange.public_bytes))
    except asyncio.IncompleteReadError as e:
        raise ChannelError("Peer closed the connection during handshake") from e
    except (ConnectionError, OSError) as e:
        raise ChannelError(f"Handshake failed: {e}") from e

    try:
        cipher = exchange.derive(peer_pub_bytes)
    except ValueError as e:
        raise ChannelError(f"Handshake failed: {e}") from e
    return StreamChannel(reader, writer, cipher, remote_peer_id=peer_id)


async def open_channel(
    host: str, port: int, timeout: float = CONNECT_TIMEOUT
) -> StreamChannel:
    """Dial a peer and perform the handshake as initiator."""
    writer: asyncio.StreamWriter | None = None
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
        channel = await asyncio.wait_for(
            _handshake(reader, writer, initiator=True), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        await _abort(writer)
        raise ChannelError(f"Timed out connecting to {host}:{port}") from e
    except ChannelError:
        await _abort(writer)
        raise
    except OSError as e:
        raise ChannelError(f"Could not connect to {host}:{port}: {e}") from e

    logger.info(f"Channel open to {channel.remote_peer_id} at {host}:{port}")
    return channel


async def accept_channel(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    timeout: float = CONNECT_TIMEOUT,
) -> StreamChannel:
    """Answer the handshake of an inbound connection as responder."""
    try:
        channel = await asyncio.wait_for(
            _handshake(reader, writer, initiator=False), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        await _abort(writer)
        raise ChannelError("Timed out waiting for handshake") from e
    except ChannelError:
        await _abort(writer)
        raise

    logger.info(
        f"Channel accepted from {channel.remote_peer_id} at {channel.remote_address}"
    )
    return channel


async def _abort(writer: asyncio.StreamWriter | None) -> None:
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass
