"""
Transfer Manager: owns the single active transfer session.

Listens for inbound peers, dials outbound ones, replaces the current
session when a new connection arrives, and forwards session events to
the WebSocket event system.
"""

import asyncio
import logging
import os
import random

from config import (
    DEFAULT_SAVE_DIR,
    LOCAL_PEER_ID,
    TRANSFER_HOST,
    TRANSFER_PORT_MAX,
    TRANSFER_PORT_MIN,
)
from transfer.channel import Channel, accept_channel, open_channel
from transfer.errors import ChannelError, IllegalTransition, InvalidBatch
from transfer.history import HistoryRecorder
from transfer.models import (
    BatchDecision,
    BatchProposal,
    FileDescriptor,
    HistoryRecord,
    Role,
    SessionInfo,
)
from transfer.negotiator import PendingDecision
from transfer.session import TransferSession
from transfer.storage import DirectorySink

logger = logging.getLogger(__name__)


class TransferManager:
    """Manages the peer connection and its transfer session."""

    def __init__(self, save_dir: str = DEFAULT_SAVE_DIR) -> None:
        self._session: TransferSession | None = None
        self._session_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._receiver_server: asyncio.Server | None = None
        self._receiver_port = 0
        self._sink = DirectorySink(save_dir)
        self._history = HistoryRecorder()
        self._history.on_append(self._on_history)
        self._status = "Initializing..."

    @property
    def save_dir(self) -> str:
        return self._sink.save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._sink.save_dir = path

    @property
    def history(self) -> HistoryRecorder:
        return self._history

    @property
    def session(self) -> TransferSession | None:
        return self._session

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        if event_type == "status":
            self._status = data["message"]
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Lifecycle ---

    async def start(self, port: int | None = None) -> None:
        """Start the inbound listener.

        Args:
            port: fixed port to bind (0 for any); by default a random
                free port in the configured range.
        """
        if port is not None:
            self._receiver_server = await asyncio.start_server(
                self._handle_incoming_connection, TRANSFER_HOST, port
            )
        else:
            port = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)
            # Try a few ports if the first one is busy
            for attempt in range(10):
                try:
                    self._receiver_server = await asyncio.start_server(
                        self._handle_incoming_connection, TRANSFER_HOST, port
                    )
                    break
                except OSError:
                    port = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)
            else:
                raise RuntimeError("Could not bind to any transfer port")

        self._receiver_port = self._receiver_server.sockets[0].getsockname()[1]
        self._status = "Ready to Share"
        logger.info(
            f"Peer {LOCAL_PEER_ID} listening for transfers on port {self._receiver_port}"
        )

    @property
    def receiver_port(self) -> int:
        return self._receiver_port

    async def stop(self) -> None:
        """Close the session and the listener."""
        await self.disconnect()
        if self._receiver_server:
            self._receiver_server.close()
            await self._receiver_server.wait_closed()
            self._receiver_server = None
        logger.info("Transfer manager stopped")

    # --- Connections ---

    async def connect(self, host: str, port: int) -> SessionInfo:
        """Dial a peer; the new session replaces any current one."""
        await self._set_status("Connecting...")
        try:
            channel = await open_channel(host, port)
        except ChannelError as e:
            logger.warning(f"Connection to {host}:{port} failed: {e}")
            await self._set_status("Connection Failed")
            await self._emit("notification", {
                "type": "error",
                "message": f"Could not connect to {host}:{port}: {e}",
            })
            raise
        session = await self._install_session(channel, Role.INITIATOR, "Connected!")
        return session.info()

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a new inbound TCP connection."""
        try:
            channel = await accept_channel(reader, writer)
        except ChannelError as e:
            logger.warning(f"Rejected inbound connection: {e}")
            return
        session = await self._install_session(channel, Role.RESPONDER, "Peer Connected!")
        await session.wait_closed()

    async def _install_session(
        self, channel: Channel, role: Role, status: str
    ) -> TransferSession:
        """Tear down the current session, then start one on ``channel``."""
        async with self._lock:
            previous, previous_task = self._session, self._session_task
            if previous is not None and not previous.closed:
                logger.info(
                    f"New {role.value} connection supersedes session with "
                    f"{previous.channel.remote_peer_id or previous.channel.remote_address}"
                )
                await previous.close("Superseded by new connection")
            if previous_task is not None:
                await previous_task

            session = TransferSession(
                channel, role, self._history, self._sink, emit=self._emit
            )
            self._session = session
            self._session_task = asyncio.create_task(session.run())

        await self._emit("session_state", session.info().model_dump(mode="json"))
        await session.set_status(status)
        return session

    async def disconnect(self) -> None:
        """Close the active session, discarding any partial transfer."""
        session, task = self._session, self._session_task
        if session is None:
            return
        await session.close("Disconnected")
        if task is not None:
            await task

    def session_info(self) -> SessionInfo:
        if self._session is None or self._session.closed:
            return SessionInfo(peer_id=LOCAL_PEER_ID, status=self._status)
        return self._session.info()

    def _active_session(self) -> TransferSession:
        session = self._session
        if session is None or session.closed:
            raise InvalidBatch("Not connected to a peer")
        return session

    # --- Batches ---

    async def send_files(self, file_paths: list[str]) -> BatchProposal:
        """Propose the files at ``file_paths`` to the connected peer."""
        session = self._active_session()
        try:
            files = [FileDescriptor.from_path(path) for path in file_paths]
        except OSError as e:
            raise InvalidBatch(f"Cannot read file: {e}") from e
        return await session.propose_batch(files)

    def pending_request(self) -> dict | None:
        """The incoming proposal and current selection, if any."""
        session = self._session
        if session is None or session.pending is None:
            return None
        return session.pending.to_dict()

    def _pending_decision(self) -> PendingDecision:
        session = self._session
        if session is None or session.pending is None:
            raise IllegalTransition("No batch request is awaiting a decision")
        return session.pending

    def select_file(self, name: str, accepted: bool) -> list[str]:
        """Accept or reject one file of the pending proposal."""
        pending = self._pending_decision()
        if accepted:
            pending.accept(name)
        else:
            pending.reject(name)
        return pending.selected

    def toggle_file(self, name: str) -> list[str]:
        pending = self._pending_decision()
        pending.toggle(name)
        return pending.selected

    def select_all(self, accepted: bool) -> list[str]:
        """Accept or reject every file of the pending proposal."""
        pending = self._pending_decision()
        if accepted:
            pending.accept_all()
        else:
            pending.reject_all()
        return pending.selected

    async def respond_to_request(
        self, accepted_files: list[str] | None = None
    ) -> BatchDecision:
        """Finalize the decision on the pending proposal."""
        session = self._session
        if session is None:
            raise IllegalTransition("No batch request is awaiting a decision")
        return await session.decide(accepted_files)

    # --- History ---

    def get_history(self) -> list[HistoryRecord]:
        return self._history.records()

    async def clear_history(self) -> None:
        self._history.clear()
        await self._emit("history_cleared", {})

    async def _on_history(self, record: HistoryRecord) -> None:
        await self._emit("history", record.model_dump(mode="json"))

    async def _set_status(self, message: str) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.set_status(message)
        else:
            await self._emit("status", {"message": message})
