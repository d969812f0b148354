"""
Peer session controller.

Owns the device's one connection to the coordinator, keeps the peer list and
handshake state current, turns user intent (request, respond, send) into
wire messages, and reassembles incoming files. The presentation layer
observes it through ``on_event`` callbacks.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Sequence

import websockets
from websockets.exceptions import ConnectionClosed as WebSocketClosed

from netdrops.config import (
    COORDINATOR_URL,
    DEFAULT_SAVE_DIR,
    MAX_CONCURRENT_FILES,
    MAX_INFLIGHT_READS,
)
from netdrops.protocol.connection import Connection
from netdrops.protocol.errors import (
    ConnectionClosed,
    ErrorCode,
    MalformedMessage,
    NetdropsError,
    NotAuthorized,
    ProtocolViolation,
    TargetUnavailable,
    error_for,
)
from netdrops.protocol.framing import Reassembler, ReceivedFile
from netdrops.protocol.messages import (
    ErrorMessage,
    InitMessage,
    MetaMessage,
    PeerInfo,
    RequestMessage,
    ResponseData,
    ResponseMessage,
    UserListMessage,
    decode_message,
)
from netdrops.transfer.handshake import HandshakeState, HandshakeStateMachine
from netdrops.transfer.scheduler import ConcurrentSendScheduler

logger = logging.getLogger(__name__)


class PeerClient:
    """One device's session with the coordinator."""

    def __init__(
        self,
        url: str = COORDINATOR_URL,
        save_dir: str = DEFAULT_SAVE_DIR,
        max_files: int = MAX_CONCURRENT_FILES,
        max_inflight_reads: int = MAX_INFLIGHT_READS,
    ) -> None:
        self._url = url
        self._save_dir = save_dir
        self._max_files = max_files
        self._max_inflight_reads = max_inflight_reads
        self._ws = None
        self._connection: Connection | None = None
        self._scheduler: ConcurrentSendScheduler | None = None
        self._reader_task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._event_callbacks: list = []  # async fn(event_type, data)

        self.session_id: str | None = None
        self.nickname: str | None = None
        self._peers: dict[str, PeerInfo] = {}
        # Coordinator is authoritative for expiry; no local timer
        self.handshake = HandshakeStateMachine(timeout=None)
        self._incoming: dict[str, RequestMessage] = {}
        self._grants: set[str] = set()
        self._reassembler = Reassembler()

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._connection.closed

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Lifecycle ---

    async def connect(self, timeout: float = 10.0) -> None:
        """Open the connection and wait for the coordinator's identity."""
        self._ws = await websockets.connect(self._url, max_size=None)
        self.attach(Connection(self._ws.send, self._ws.send, name="coordinator"))
        self._reader_task = asyncio.create_task(self._read_loop())
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        logger.info(f"Connected to {self._url} as {self.nickname} ({self.session_id})")

    def attach(self, connection: Connection) -> None:
        """Use an already open connection."""
        self._connection = connection
        self._scheduler = ConcurrentSendScheduler(
            connection,
            max_files=self._max_files,
            max_inflight_reads=self._max_inflight_reads,
        )
        connection.start()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            await self._reader_task
            self._reader_task = None

    async def wait_closed(self) -> None:
        if self._reader_task is not None:
            await self._reader_task

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, str):
                    await self.handle_text(message)
                else:
                    await self.handle_binary(message)
        except WebSocketClosed as e:
            logger.info(f"Connection to coordinator lost: {e}")
        finally:
            if self._connection is not None:
                await self._connection.abort()
            await self._emit("notification", {
                "code": ErrorCode.CONNECTION_CLOSED.value,
                "message": "Disconnected from the coordinator",
            })

    # --- Inbound traffic ---

    async def handle_text(self, text: str) -> None:
        try:
            message = decode_message(text)
        except MalformedMessage as e:
            logger.warning(f"Discarding malformed message from coordinator: {e}")
            return

        try:
            if isinstance(message, InitMessage):
                await self._on_init(message)
            elif isinstance(message, UserListMessage):
                await self._on_user_list(message)
            elif isinstance(message, RequestMessage):
                await self._on_request(message)
            elif isinstance(message, ResponseMessage):
                await self._on_response(message)
            elif isinstance(message, MetaMessage):
                self._reassembler.expect(message)
            elif isinstance(message, ErrorMessage):
                await self._on_error(message)
            else:
                raise ProtocolViolation(f"Unhandled message type '{message.type}'")
        except NetdropsError as e:
            logger.warning(f"Rejected {message.type} message: {e.message}")
            await self._notify(e)

    async def handle_binary(self, frame: bytes) -> None:
        try:
            received = self._reassembler.accept(frame)
        except ProtocolViolation as e:
            logger.warning(f"Discarding binary frame: {e.message}")
            await self._notify(e)
            return
        logger.info(
            f"Received {received.file_name} ({len(received.data)} bytes) "
            f"from {received.origin}"
        )
        await self._emit("file_received", received)

    async def _on_init(self, message: InitMessage) -> None:
        self.session_id = message.session_id
        self.nickname = message.nickname
        self._ready.set()
        await self._emit("identity", message.model_dump(by_alias=True))

    async def _on_user_list(self, message: UserListMessage) -> None:
        current = {user.session_id: user for user in message.users}
        for gone in set(self._peers) - set(current):
            self._forget_peer(gone)
        self._peers = current
        await self._emit(
            "peer_list", [user.model_dump(by_alias=True) for user in message.users]
        )

    async def _on_request(self, message: RequestMessage) -> None:
        requester = message.sender_session_id
        if requester is None:
            raise ProtocolViolation("Request without a sender")
        self.handshake.open(requester, self.session_id)
        self._incoming[requester] = message
        await self._emit("transfer_request", message.model_dump(by_alias=True))

    async def _on_response(self, message: ResponseMessage) -> None:
        responder = message.sender_session_id
        if responder is None:
            raise ProtocolViolation("Response without a sender")
        outcome = self.handshake.resolve(
            self.session_id, responder, message.data.accepted
        )
        if outcome == HandshakeState.ACCEPTED:
            self._grants.add(responder)
        await self._emit("transfer_response", {
            "sessionId": responder,
            "accepted": outcome == HandshakeState.ACCEPTED,
        })

    async def _on_error(self, message: ErrorMessage) -> None:
        error = error_for(
            message.code, message.message,
            target=message.target, file_id=message.file_id,
        )
        if message.code == ErrorCode.REQUEST_EXPIRED and message.file_id:
            self._reassembler.discard(message.file_id)
        elif message.target and message.code in (
            ErrorCode.TARGET_UNAVAILABLE, ErrorCode.REQUEST_EXPIRED,
        ):
            self._forget_requests(message.target)
            if message.code == ErrorCode.TARGET_UNAVAILABLE:
                self._grants.discard(message.target)
        await self._notify(error)

    async def _notify(self, error: NetdropsError) -> None:
        await self._emit("notification", {
            "code": error.code.value,
            "message": error.message,
            "target": error.target,
            "fileId": error.file_id,
        })

    def _forget_requests(self, session_id: str) -> None:
        self.handshake.drop_peer(session_id)
        self._incoming.pop(session_id, None)

    def _forget_peer(self, session_id: str) -> None:
        self._forget_requests(session_id)
        self._grants.discard(session_id)
        self._reassembler.discard_origin(session_id)

    # --- User intent ---

    def peers(self) -> list[PeerInfo]:
        """Everyone online except this device."""
        return [p for sid, p in self._peers.items() if sid != self.session_id]

    def find_peer(self, key: str) -> PeerInfo | None:
        """Look a peer up by session id or nickname."""
        if key in self._peers:
            return self._peers[key]
        return next((p for p in self.peers() if p.nickname == key), None)

    def pending_requests(self) -> list[RequestMessage]:
        return list(self._incoming.values())

    def can_send_to(self, target: str) -> bool:
        return target in self._grants

    def request_transfer(self, target: str) -> None:
        """Ask ``target`` for permission to send files."""
        connection = self._require_connection()
        if target not in self._peers or target == self.session_id:
            raise TargetUnavailable(f"Peer {target} is not online", target=target)
        self.handshake.open(self.session_id, target)
        try:
            connection.send_message(RequestMessage(
                target=target,
                sender_session_id=self.session_id,
                sender_nickname=self.nickname,
            ))
        except ConnectionClosed:
            self.handshake.cancel(self.session_id, target)
            raise

    def respond(self, requester: str, accepted: bool) -> None:
        """Accept or reject a pending incoming request."""
        connection = self._require_connection()
        self.handshake.resolve(requester, self.session_id, accepted)
        self._incoming.pop(requester, None)
        connection.send_message(ResponseMessage(
            data=ResponseData(accepted=accepted), target=requester,
        ))

    async def send_files(self, target: str,
                         file_paths: Sequence[str | Path]) -> list[str]:
        """Send one batch to a peer that accepted our request."""
        self._require_connection()
        if target not in self._grants:
            raise NotAuthorized(
                f"{target} has not accepted a transfer request", target=target
            )
        self._scheduler.validate(file_paths)
        self._grants.discard(target)
        return await self._scheduler.send_batch(target, file_paths)

    async def save_file(self, received: ReceivedFile,
                        directory: str | None = None) -> Path:
        """Write a received file, never overwriting an existing one."""
        directory = directory or self._save_dir
        os.makedirs(directory, exist_ok=True)
        name = os.path.basename(received.file_name) or f"netdrops_{received.file_id}"
        path = Path(directory) / name
        stem, suffix = path.stem, path.suffix
        counter = 1
        while path.exists():
            path = Path(directory) / f"{stem} ({counter}){suffix}"
            counter += 1
        await asyncio.to_thread(path.write_bytes, received.data)
        return path

    def _require_connection(self) -> Connection:
        if not self.connected or self.session_id is None:
            raise ConnectionClosed("Not connected to the coordinator")
        return self._connection
