"""Pydantic models for batch file transfer."""

import os
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from transfer.storage import ByteSource, FileSource


class Role(str, Enum):
    """How the channel of a session was established."""
    INITIATOR = "initiator"
    RESPONDER = "responder"


class Direction(str, Enum):
    SENT = "Sent"
    RECEIVED = "Received"


class SessionState(str, Enum):
    """All possible states of a transfer session."""
    IDLE = "idle"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_DECISION = "awaiting_decision"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"


# --- Wire protocol message types ---

class MessageType:
    HANDSHAKE = 0x01
    BATCH_REQUEST = 0x10
    PERMISSION_GRANTED = 0x11
    PERMISSION_DENIED = 0x12
    FILE_METADATA = 0x20
    CHUNK = 0x21


class FileEntry(BaseModel):
    """A file as announced in a proposal."""
    name: str = Field(min_length=1)
    size: int = Field(ge=0)


class FileDescriptor(BaseModel):
    """A file the sender holds for one transfer attempt."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    source: ByteSource

    @classmethod
    def from_path(cls, path: str) -> "FileDescriptor":
        return cls(
            name=os.path.basename(path),
            size=os.path.getsize(path),
            source=FileSource(path),
        )

    def entry(self) -> FileEntry:
        return FileEntry(name=self.name, size=self.size)


class BatchProposal(BaseModel):
    """Sent once per batch attempt: the files the sender offers."""
    model_config = ConfigDict(frozen=True)

    files: tuple[FileEntry, ...]
    total_count: int

    @model_validator(mode="after")
    def _check_files(self) -> "BatchProposal":
        if not self.files:
            raise ValueError("a proposal needs at least one file")
        if self.total_count != len(self.files):
            raise ValueError(
                f"total_count {self.total_count} does not match {len(self.files)} files"
            )
        names = [f.name for f in self.files]
        if len(set(names)) != len(names):
            raise ValueError("file names within a batch must be unique")
        return self

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.files]


class BatchDecision(BaseModel):
    """The receiver's single answer to a proposal.

    An empty ``accepted_files`` list is a denial.
    """
    model_config = ConfigDict(frozen=True)

    accepted_files: tuple[str, ...] = ()

    @property
    def granted(self) -> bool:
        return bool(self.accepted_files)

    @classmethod
    def denied(cls) -> "BatchDecision":
        return cls()


class FileMetadata(BaseModel):
    """Metadata sent before the chunks of each accepted file."""
    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    index: int
    total: int

    @model_validator(mode="after")
    def _check_index(self) -> "FileMetadata":
        if not 0 <= self.index < self.total:
            raise ValueError(f"index {self.index} outside 0..{self.total - 1}")
        return self

    @property
    def is_last(self) -> bool:
        return self.index == self.total - 1


class Chunk(BaseModel):
    """A slice of a file's bytes."""
    payload: bytes
    last: bool = False
    is_last_in_batch: bool = False

    @model_validator(mode="after")
    def _check_flags(self) -> "Chunk":
        if self.is_last_in_batch and not self.last:
            raise ValueError("is_last_in_batch requires last")
        return self


class HistoryRecord(BaseModel):
    """One completed file transfer."""
    id: int
    name: str
    direction: Direction
    timestamp: float


class SessionInfo(BaseModel):
    """Snapshot of the current session, exposed to the frontend."""
    peer_id: str
    remote_peer_id: str | None = None
    remote_address: str | None = None
    role: Role | None = None
    state: SessionState = SessionState.DISCONNECTED
    status: str = ""
    progress: int = 0
    current_file: str | None = None
    current_index: int | None = None
    total_files: int = 0
