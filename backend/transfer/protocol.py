"""
Wire encoding of the batch transfer messages.

Every message travels as one channel frame ``(type, payload)``:

    batch-request       JSON {"files": [{"name", "size"}], "total_count"}
    permission-granted  JSON {"accepted_files": [name, ...]}
    permission-denied   empty
    file-metadata       JSON {"name", "size", "index", "total"}
    chunk               1 flag byte (0x01 last, 0x02 last in batch) + raw bytes
"""

import json
import struct

from pydantic import BaseModel, ValidationError

from transfer.errors import ProtocolViolation
from transfer.models import (
    BatchDecision,
    BatchProposal,
    Chunk,
    FileMetadata,
    MessageType,
)

FLAG_LAST = 0x01
FLAG_LAST_IN_BATCH = 0x02
FLAG_FORMAT = "!B"
FLAG_SIZE = struct.calcsize(FLAG_FORMAT)

Message = BatchProposal | BatchDecision | FileMetadata | Chunk


def _to_json(model: BaseModel) -> bytes:
    return json.dumps(model.model_dump(mode="json")).encode("utf-8")


def encode_message(message: Message) -> tuple[int, bytes]:
    """Return the ``(type, payload)`` frame for a protocol message."""
    if isinstance(message, Chunk):
        flags = 0
        if message.last:
            flags |= FLAG_LAST
        if message.is_last_in_batch:
            flags |= FLAG_LAST_IN_BATCH
        return MessageType.CHUNK, struct.pack(FLAG_FORMAT, flags) + message.payload
    if isinstance(message, FileMetadata):
        return MessageType.FILE_METADATA, _to_json(message)
    if isinstance(message, BatchProposal):
        return MessageType.BATCH_REQUEST, _to_json(message)
    if isinstance(message, BatchDecision):
        if message.granted:
            return MessageType.PERMISSION_GRANTED, _to_json(message)
        return MessageType.PERMISSION_DENIED, b""
    raise TypeError(f"Not a protocol message: {type(message).__name__}")


def decode_message(msg_type: int, payload: bytes) -> Message:
    """Parse a received frame.

    Raises:
        ProtocolViolation: unknown type or malformed payload.
    """
    try:
        if msg_type == MessageType.CHUNK:
            if len(payload) < FLAG_SIZE:
                raise ProtocolViolation("Chunk frame without flags")
            (flags,) = struct.unpack_from(FLAG_FORMAT, payload)
            return Chunk(
                payload=payload[FLAG_SIZE:],
                last=bool(flags & FLAG_LAST),
                is_last_in_batch=bool(flags & FLAG_LAST_IN_BATCH),
            )
        if msg_type == MessageType.PERMISSION_DENIED:
            return BatchDecision.denied()
        if msg_type == MessageType.FILE_METADATA:
            return FileMetadata(**json.loads(payload.decode("utf-8")))
        if msg_type == MessageType.BATCH_REQUEST:
            return BatchProposal(**json.loads(payload.decode("utf-8")))
        if msg_type == MessageType.PERMISSION_GRANTED:
            decision = BatchDecision(**json.loads(payload.decode("utf-8")))
            if not decision.granted:
                raise ProtocolViolation("permission-granted without files")
            return decision
    except (ValueError, TypeError, ValidationError) as e:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise ProtocolViolation(f"Malformed frame {msg_type:#x}: {e}") from e
    raise ProtocolViolation(f"Unknown message type {msg_type:#x}")
