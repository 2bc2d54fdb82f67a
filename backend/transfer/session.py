"""
Transfer session: one per connected channel.

Holds the session state machine, the file list held for an outgoing
batch, the pending decision for an incoming one, and both halves of the
transfer engine. ``run()`` reads the channel until it closes; ``close()``
tears everything down and discards partial data.
"""

import asyncio
import logging
from enum import Enum

from config import CHUNK_SIZE, LOCAL_PEER_ID
from transfer.channel import Channel
from transfer.engine import BatchReceiver, BatchSender
from transfer.errors import (
    ChannelError,
    IllegalTransition,
    InvalidBatch,
    ProtocolViolation,
    ReadError,
    WriteError,
)
from transfer.history import HistoryRecorder
from transfer.models import (
    BatchDecision,
    BatchProposal,
    Chunk,
    Direction,
    FileDescriptor,
    FileMetadata,
    Role,
    SessionInfo,
    SessionState,
)
from transfer.negotiator import PendingDecision, build_proposal, filter_accepted
from transfer.protocol import Message, decode_message, encode_message
from transfer.storage import ByteSink

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    CONNECTED = "connected"
    PROPOSE = "propose"
    GRANTED = "granted"
    DENIED = "denied"
    PROPOSAL_RECEIVED = "proposal_received"
    ACCEPT = "accept"
    REJECT = "reject"
    BATCH_COMPLETE = "batch_complete"
    CHANNEL_CLOSED = "channel_closed"


_TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.DISCONNECTED, SessionEvent.CONNECTED): SessionState.IDLE,
    # Sender side
    (SessionState.IDLE, SessionEvent.PROPOSE): SessionState.AWAITING_APPROVAL,
    (SessionState.AWAITING_APPROVAL, SessionEvent.GRANTED): SessionState.STREAMING,
    (SessionState.AWAITING_APPROVAL, SessionEvent.DENIED): SessionState.IDLE,
    # Receiver side
    (SessionState.IDLE, SessionEvent.PROPOSAL_RECEIVED): SessionState.AWAITING_DECISION,
    (SessionState.AWAITING_DECISION, SessionEvent.ACCEPT): SessionState.STREAMING,
    (SessionState.AWAITING_DECISION, SessionEvent.REJECT): SessionState.IDLE,
    (SessionState.STREAMING, SessionEvent.BATCH_COMPLETE): SessionState.IDLE,
}


class SessionStateMachine:
    """Legal state transitions of one endpoint."""

    def __init__(self, state: SessionState = SessionState.DISCONNECTED) -> None:
        self.state = state

    def can(self, event: SessionEvent) -> bool:
        if event == SessionEvent.CHANNEL_CLOSED:
            return True
        return (self.state, event) in _TRANSITIONS

    def fire(self, event: SessionEvent) -> SessionState:
        if event == SessionEvent.CHANNEL_CLOSED:
            new_state = SessionState.DISCONNECTED
        else:
            new_state = _TRANSITIONS.get((self.state, event))
            if new_state is None:
                raise IllegalTransition(
                    f"Cannot handle '{event.value}' while {self.state.value}"
                )
        logger.debug(f"Session {self.state.value} --{event.value}--> {new_state.value}")
        self.state = new_state
        return new_state


async def _no_emit(event_type: str, data: dict) -> None:
    return None


class TransferSession:
    """Batch transfer protocol over a single channel."""

    def __init__(
        self,
        channel: Channel,
        role: Role,
        history: HistoryRecorder,
        sink: ByteSink,
        emit=None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        """
        Args:
            emit: async fn(event_type, data) receiving UI events.
        """
        self.channel = channel
        self.role = role
        self._emit = emit or _no_emit
        self._machine = SessionStateMachine()
        self._machine.fire(SessionEvent.CONNECTED)
        self._sender = BatchSender(
            channel, history, self._on_progress, self.set_status, chunk_size
        )
        self._receiver = BatchReceiver(
            sink, history, self._on_progress, self.set_status, self._on_file_received
        )
        self._outgoing: list[FileDescriptor] = []
        self._pending: PendingDecision | None = None
        self._stream_task: asyncio.Task | None = None
        self._direction: Direction | None = None
        self._current: FileMetadata | None = None
        self._closed = False
        self._closed_event = asyncio.Event()
        self.status = "Connected"
        self.progress = 0

    # --- Introspection ---

    @property
    def state(self) -> SessionState:
        return self._machine.state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> PendingDecision | None:
        """The incoming proposal awaiting a decision, if any."""
        return self._pending

    def info(self) -> SessionInfo:
        current = self._current
        return SessionInfo(
            peer_id=LOCAL_PEER_ID,
            remote_peer_id=self.channel.remote_peer_id or None,
            remote_address=self.channel.remote_address or None,
            role=self.role,
            state=self.state,
            status=self.status,
            progress=self.progress,
            current_file=current.name if current else None,
            current_index=current.index if current else None,
            total_files=current.total if current else 0,
        )

    # --- Local operations ---

    async def propose_batch(self, files: list[FileDescriptor]) -> BatchProposal:
        """Offer ``files`` to the peer.

        Raises:
            InvalidBatch: no files, duplicate names, not connected, or busy.
        """
        if self._closed or self.channel.closed:
            raise InvalidBatch("Not connected to a peer")
        if self.state != SessionState.IDLE:
            raise InvalidBatch(f"A batch is already in progress ({self.state.value})")
        proposal = build_proposal(files)

        self._outgoing = list(files)
        await self._transition(SessionEvent.PROPOSE)
        await self.set_status(f"Waiting for peer to accept {len(files)} file(s)...")
        await self._send(proposal)
        logger.info(f"Proposed {len(files)} file(s) to {self._peer_label}")
        return proposal

    async def decide(self, names=None) -> BatchDecision:
        """Answer the pending proposal.

        Args:
            names: accepted file names; ``None`` uses the pending selection.
        """
        if self.state != SessionState.AWAITING_DECISION or self._pending is None:
            raise IllegalTransition("No batch request is awaiting a decision")
        proposal = self._pending.proposal
        decision = self._pending.finalize(names)
        self._pending = None

        if decision.granted:
            self._receiver.begin_batch({
                f.name: f.size for f in proposal.files if f.name in decision.accepted_files
            })
            self._direction = Direction.RECEIVED
            await self._transition(SessionEvent.ACCEPT)
            await self.set_status(
                f"Accepted {len(decision.accepted_files)} file(s), waiting for data..."
            )
        else:
            await self._transition(SessionEvent.REJECT)
            await self.set_status("Transfer declined")
        await self._send(decision)
        logger.info(
            f"Decided on batch from {self._peer_label}: "
            f"{len(decision.accepted_files)} file(s) accepted"
        )
        return decision

    async def close(self, status: str = "Disconnected") -> None:
        """Tear the session down; safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        task = self._stream_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._receiver.discard()
        self._pending = None
        await self._release(self._outgoing)
        self._outgoing = []
        self._direction = None
        self._current = None
        self.progress = 0

        self._machine.fire(SessionEvent.CHANNEL_CLOSED)
        await self.channel.close()
        logger.info(f"Session with {self._peer_label} closed: {status}")
        await self._emit("session_state", self.info().model_dump(mode="json"))
        await self.set_status(status)
        self._closed_event.set()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    # --- Receive loop ---

    async def run(self) -> None:
        """Handle inbound messages until the channel closes."""
        try:
            while not self._closed:
                msg_type, payload = await self.channel.recv()
                await self._dispatch(decode_message(msg_type, payload))
        except ChannelError as e:
            if not self._closed:
                logger.info(f"Channel to {self._peer_label} ended: {e}")
            await self.close("Disconnected")
        except ProtocolViolation as e:
            logger.error(f"Protocol violation from {self._peer_label}: {e}")
            await self._notify("error", f"Receive error: {e}")
            await self.close(f"Receive error: {e}")
        except WriteError as e:
            logger.error(f"Could not store received file: {e}")
            await self._notify("error", f"Transfer failed: {e}")
            await self.close(f"Transfer failed: {e}")
        except asyncio.CancelledError:
            await self.close("Disconnected")
            raise

    async def _dispatch(self, message: Message) -> None:
        if isinstance(message, Chunk):
            self._require_receiving("chunk")
            if await self._receiver.on_chunk(message):
                await self._finish_batch("Batch received")
        elif isinstance(message, FileMetadata):
            self._require_receiving("file-metadata")
            await self._receiver.on_metadata(message)
        elif isinstance(message, BatchProposal):
            await self._on_proposal(message)
        elif isinstance(message, BatchDecision):
            await self._on_decision(message)

    def _require_receiving(self, what: str) -> None:
        if self.state != SessionState.STREAMING or self._direction != Direction.RECEIVED:
            raise ProtocolViolation(f"Unexpected {what} while {self.state.value}")

    async def _on_proposal(self, proposal: BatchProposal) -> None:
        task = self._stream_task
        if (
            self.state == SessionState.STREAMING
            and self._direction == Direction.SENT
            and task is not None
        ):
            # The peer is done receiving; let our stream task wind down first
            await asyncio.wait({task})
            if self._closed:
                return
        if self.state == SessionState.AWAITING_APPROVAL:
            # Both sides proposed at once: decline theirs, ours gets the same answer
            logger.warning(f"{self._peer_label} proposed while we were proposing, declining")
            await self._send(BatchDecision.denied())
            return
        if self.state != SessionState.IDLE:
            raise ProtocolViolation(f"Unexpected batch-request while {self.state.value}")

        self._pending = PendingDecision(proposal)
        await self._transition(SessionEvent.PROPOSAL_RECEIVED)
        await self.set_status(f"Peer wants to send {proposal.total_count} file(s)")
        await self._emit("batch_request", self._pending.to_dict())

    async def _on_decision(self, decision: BatchDecision) -> None:
        if self.state != SessionState.AWAITING_APPROVAL:
            raise ProtocolViolation(f"Unexpected decision while {self.state.value}")

        if not decision.granted:
            await self._release(self._outgoing)
            self._outgoing = []
            await self._transition(SessionEvent.DENIED)
            await self.set_status("Transfer declined by peer")
            await self._notify("warning", "The peer declined the transfer.")
            return

        accepted, rejected = filter_accepted(self._outgoing, decision.accepted_files)
        await self._release(rejected)
        self._outgoing = accepted
        self._direction = Direction.SENT
        await self._transition(SessionEvent.GRANTED)

        if not accepted:
            await self._finish_batch("Nothing to send", notify=False)
            return
        await self.set_status("Sending...")
        self._stream_task = asyncio.create_task(self._stream(accepted))
        self._stream_task.add_done_callback(self._on_stream_done)

    def _on_stream_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Stream task to {self._peer_label} failed: {error!r}")

    async def _stream(self, files: list[FileDescriptor]) -> None:
        """Background task that sends one granted batch."""
        try:
            await self._sender.stream_batch(files)
        except ReadError as e:
            logger.error(f"Aborting batch to {self._peer_label}: {e}")
            await self._notify("error", f"Transfer failed: {e}")
            await self.close(f"Transfer failed: {e}")
            return
        except ChannelError as e:
            logger.info(f"Channel to {self._peer_label} failed while sending: {e}")
            await self.close("Disconnected")
            return
        self._outgoing = []
        await self._finish_batch("Batch sent")

    async def _finish_batch(self, status: str, notify: bool = True) -> None:
        direction = self._direction
        self._direction = None
        self._current = None
        self.progress = 0
        await self._transition(SessionEvent.BATCH_COMPLETE)
        await self._emit("progress", {"percent": 0, "file_name": None})
        await self.set_status(status)
        if not notify:
            return
        if direction == Direction.SENT:
            await self._notify("success", "All files sent successfully!")
        elif direction == Direction.RECEIVED:
            await self._notify("success", "All files received successfully!")

    # --- Helpers ---

    @property
    def _peer_label(self) -> str:
        return self.channel.remote_peer_id or self.channel.remote_address or "peer"

    async def _send(self, message: Message) -> None:
        try:
            await self.channel.send(*encode_message(message))
        except ChannelError:
            await self.close("Disconnected")
            raise

    async def _transition(self, event: SessionEvent) -> None:
        self._machine.fire(event)
        await self._emit("session_state", self.info().model_dump(mode="json"))

    async def set_status(self, message: str) -> None:
        self.status = message
        await self._emit("status", {"message": message})

    async def _notify(self, kind: str, message: str) -> None:
        await self._emit("notification", {"type": kind, "message": message})

    async def _on_progress(self, metadata: FileMetadata, percent: int) -> None:
        self._current = metadata
        self.progress = percent
        await self._emit("progress", {
            "percent": percent,
            "file_name": metadata.name,
            "index": metadata.index,
            "total": metadata.total,
            "direction": self._direction.value if self._direction else None,
        })

    async def _on_file_received(self, metadata: FileMetadata, location: str) -> None:
        await self._emit("file_received", {"name": metadata.name, "location": location})

    async def _release(self, files: list[FileDescriptor]) -> None:
        for descriptor in files:
            try:
                await descriptor.source.close()
            except OSError as e:
                logger.warning(f"Could not close source of '{descriptor.name}': {e}")
