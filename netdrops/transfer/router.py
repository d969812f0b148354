"""
Relay/Router: forwards control messages and file frames between peers.

Every inbound message from a peer passes through here. Requests and
responses drive the handshake; an accepted handshake opens a single-use
send grant; ``meta`` messages bind fileIds to that grant and the first
binary frame seals it, so one grant carries one batch. Frames are relayed
only for announced fileIds and only inside one network locality.
Failures are reported to the sending peer alone as typed ``error``
messages.
"""

import asyncio
import logging

from pydantic import BaseModel, Field

from netdrops.config import FILE_ID_WIDTH, CoordinatorSettings
from netdrops.protocol.errors import (
    Busy,
    ConnectionClosed,
    LocalityMismatch,
    NetdropsError,
    NotAuthorized,
    ProtocolViolation,
    RequestExpired,
    TargetUnavailable,
    ValidationError,
)
from netdrops.protocol.framing import is_file_id, split_frame
from netdrops.protocol.messages import (
    PEER_MESSAGE_TYPES,
    MetaMessage,
    RequestMessage,
    ResponseMessage,
    WireModel,
    decode_message,
    error_message,
)
from netdrops.session.models import Peer
from netdrops.session.registry import SessionRegistry
from netdrops.transfer.handshake import (
    HandshakeState,
    HandshakeStateMachine,
    TransferRequest,
)

logger = logging.getLogger(__name__)


class SendGrant(BaseModel):
    """Authorization for ``origin`` to send one batch of files to ``target``."""
    origin: str
    target: str
    pending: set[str] = Field(default_factory=set)
    used: bool = False
    # Set by the first frame; no further meta may join the batch
    sealed: bool = False


class Router:
    """Coordinator-side dispatch for one process worth of sessions."""

    def __init__(self, registry: SessionRegistry,
                 settings: CoordinatorSettings | None = None) -> None:
        self._registry = registry
        self._settings = settings or CoordinatorSettings()
        self.handshake = HandshakeStateMachine(
            timeout=self._settings.request_timeout,
            on_expire=self._on_request_expired,
        )
        self._grants: dict[tuple[str, str], SendGrant] = {}
        # origin -> {fileId: target}, filled by meta, drained by frames
        self._files: dict[str, dict[str, str]] = {}
        # A grant idle for request_timeout expires with its unsent files
        self._grant_timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        registry.on_peer_change(self.handle_peer_event)

    def grants(self) -> list[SendGrant]:
        return list(self._grants.values())

    def clear(self) -> None:
        """Forget all requests and grants and cancel their timers."""
        for timer in self._grant_timers.values():
            timer.cancel()
        self._grant_timers.clear()
        self._grants.clear()
        self._files.clear()
        self.handshake.clear()

    # --- Inbound traffic ---

    def handle_text(self, origin: str, text: str) -> None:
        """Process one control message sent by ``origin``."""
        try:
            message = decode_message(text)
            self._dispatch(origin, message)
        except NetdropsError as e:
            self._report(origin, e)

    def handle_binary(self, origin: str, frame: bytes) -> None:
        """Process one binary file frame sent by ``origin``."""
        try:
            self._relay_frame(origin, frame)
        except NetdropsError as e:
            self._report(origin, e)

    def _dispatch(self, origin: str, message: WireModel) -> None:
        if message.type not in PEER_MESSAGE_TYPES:
            raise ProtocolViolation(f"Peers may not send '{message.type}' messages")

        if isinstance(message, RequestMessage):
            self._handle_request(origin, message)
        elif isinstance(message, ResponseMessage):
            self._handle_response(origin, message)
        elif isinstance(message, MetaMessage):
            self._handle_meta(origin, message)
        else:
            raise ProtocolViolation(f"Unhandled message type '{message.type}'")

    def _handle_request(self, origin: str, message: RequestMessage) -> None:
        sender = self._require_peer(origin)
        target = self._require_peer(message.target)
        if (origin, target.session_id) in self._grants:
            raise Busy(
                f"{origin} already holds a send authorization for {target.session_id}",
                target=target.session_id,
            )
        self.handshake.open(origin, target.session_id)

        forwarded = RequestMessage(
            target=target.session_id,
            sender_session_id=origin,
            sender_nickname=sender.nickname,
        )
        try:
            self._send(target, forwarded)
        except TargetUnavailable:
            self.handshake.cancel(origin, target.session_id)
            raise
        logger.info(f"Forwarded request message from {origin} to {target.session_id}")

    def _handle_response(self, origin: str, message: ResponseMessage) -> None:
        requester_id = message.target
        accepted = message.data.accepted
        outcome = self.handshake.resolve(requester_id, origin, accepted)
        requester = self._require_peer(requester_id)

        self._send(requester, ResponseMessage(
            data=message.data, target=requester_id, sender_session_id=origin,
        ))
        logger.info(
            f"Forwarded response message from {origin} to {requester_id}: "
            f"accepted={accepted}"
        )
        if outcome == HandshakeState.ACCEPTED:
            key = (requester_id, origin)
            self._grants[key] = SendGrant(origin=requester_id, target=origin)
            self._touch_grant(key)
            logger.info(f"Opened send authorization {requester_id} -> {origin}")

    def _handle_meta(self, origin: str, message: MetaMessage) -> None:
        if not is_file_id(message.file_id):
            raise ProtocolViolation(
                f"fileId must be {FILE_ID_WIDTH} ASCII characters",
                target=message.target,
            )
        sender = self._require_peer(origin)
        key = (origin, message.target)
        grant = self._grants.get(key)
        if grant is None:
            raise NotAuthorized(
                f"No accepted request from {origin} to {message.target}",
                target=message.target, file_id=message.file_id,
            )
        if grant.sealed:
            raise NotAuthorized(
                f"The batch from {origin} to {message.target} is already "
                f"being sent; request again to send more",
                target=message.target, file_id=message.file_id,
            )
        if len(grant.pending) >= self._settings.max_concurrent_files:
            raise ValidationError(
                f"At most {self._settings.max_concurrent_files} files may be "
                f"in flight at once",
                target=message.target, file_id=message.file_id,
            )
        files = self._files.setdefault(origin, {})
        if message.file_id in files:
            raise ProtocolViolation(
                f"File {message.file_id} is already in flight",
                target=message.target, file_id=message.file_id,
            )
        target = self._require_peer(message.target)

        files[message.file_id] = target.session_id
        grant.pending.add(message.file_id)
        grant.used = True
        self._touch_grant(key)

        # Metadata is withheld across localities; the frame draws the denial
        if sender.locality != target.locality:
            logger.debug(f"Holding meta {message.file_id}: localities differ")
            return
        forwarded = message.model_copy(update={"sender_session_id": origin})
        try:
            self._send(target, forwarded)
        except TargetUnavailable:
            self._release(origin, target.session_id, message.file_id)
            raise
        logger.debug(f"Forwarded meta {message.file_id} from {origin} to {target.session_id}")

    def _relay_frame(self, origin: str, frame: bytes) -> None:
        file_id, payload = split_frame(frame)
        target_id = self._files.get(origin, {}).pop(file_id, None)
        if target_id is None:
            raise ProtocolViolation(
                f"No metadata received for file {file_id}", file_id=file_id
            )
        grant = self._grants.get((origin, target_id))
        if grant is not None:
            grant.sealed = True

        try:
            sender = self._require_peer(origin)
            target = self._registry.get(target_id)
            if target is None:
                raise TargetUnavailable(
                    f"Peer {target_id} is not connected",
                    target=target_id, file_id=file_id,
                )
            if sender.locality != target.locality:
                logger.warning(
                    f"Dropped file {file_id} from {origin} to {target_id}: "
                    f"{sender.locality} != {target.locality}"
                )
                raise LocalityMismatch(
                    "Sender and receiver are not on the same network",
                    target=target_id, file_id=file_id,
                )
            self._send(target, frame, file_id=file_id)
            logger.info(
                f"Forwarding binary message for file {file_id} "
                f"({len(payload)} bytes) from {origin} to {target_id}"
            )
        finally:
            self._release(origin, target_id, file_id)

    # --- Bookkeeping ---

    def _release(self, origin: str, target: str, file_id: str) -> None:
        files = self._files.get(origin)
        if files is not None:
            files.pop(file_id, None)
            if not files:
                del self._files[origin]
        key = (origin, target)
        grant = self._grants.get(key)
        if grant is None:
            return
        grant.pending.discard(file_id)
        if grant.sealed and not grant.pending:
            self._drop_grant(key)
            logger.info(f"Closed send authorization {origin} -> {target}")
        else:
            self._touch_grant(key)

    def _touch_grant(self, key: tuple[str, str]) -> None:
        timer = self._grant_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if self._settings.request_timeout:
            loop = asyncio.get_running_loop()
            self._grant_timers[key] = loop.call_later(
                self._settings.request_timeout, self._expire_grant, key
            )

    def _drop_grant(self, key: tuple[str, str]) -> SendGrant | None:
        timer = self._grant_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        return self._grants.pop(key, None)

    def _expire_grant(self, key: tuple[str, str]) -> None:
        self._grant_timers.pop(key, None)
        grant = self._grants.pop(key, None)
        if grant is None:
            return
        origin, target = key
        files = self._files.get(origin, {})
        for file_id in grant.pending:
            files.pop(file_id, None)
        if origin in self._files and not files:
            del self._files[origin]
        logger.warning(
            f"Send authorization {origin} -> {target} expired with "
            f"{len(grant.pending)} file(s) never sent"
        )

        self._notify(origin, RequestExpired(
            "The send authorization expired", target=target,
        ))
        # Only files whose meta reached the target need retracting there
        sender = self._registry.get(origin)
        receiver = self._registry.get(target)
        if sender is None or receiver is None or sender.locality != receiver.locality:
            return
        for file_id in sorted(grant.pending):
            self._notify(target, RequestExpired(
                "The file was announced but never sent",
                target=origin, file_id=file_id,
            ))

    def handle_peer_event(self, event: str, peer: Peer) -> None:
        """Callback compatible with SessionRegistry.on_peer_change()."""
        if event != "peer_left":
            return
        gone = peer.session_id

        for request in self.handshake.drop_peer(gone):
            survivor = request.target if request.requester == gone else request.requester
            self._notify(survivor, TargetUnavailable(
                f"Peer {gone} disconnected", target=gone,
            ))

        for key in [k for k in self._grants if gone in k]:
            grant = self._drop_grant(key)
            if grant.target == gone:
                self._notify(grant.origin, TargetUnavailable(
                    f"Peer {gone} disconnected", target=gone,
                ))

        self._files.pop(gone, None)
        for origin, files in list(self._files.items()):
            for file_id in [f for f, t in files.items() if t == gone]:
                del files[file_id]
            if not files:
                del self._files[origin]

    def _on_request_expired(self, request: TransferRequest) -> None:
        self._notify(request.requester, RequestExpired(
            "The transfer request was not answered in time",
            target=request.target,
        ))
        self._notify(request.target, RequestExpired(
            "The transfer request was not answered in time",
            target=request.requester,
        ))

    # --- Output ---

    def _require_peer(self, session_id: str) -> Peer:
        peer = self._registry.get(session_id)
        if peer is None or peer.connection.closed:
            raise TargetUnavailable(
                f"Peer {session_id} does not exist or has disconnected",
                target=session_id,
            )
        return peer

    def _send(self, peer: Peer, item: WireModel | bytes,
              file_id: str | None = None) -> None:
        try:
            if isinstance(item, bytes):
                peer.connection.send_frame(item)
            else:
                peer.connection.send_message(item)
        except ConnectionClosed:
            raise TargetUnavailable(
                f"Peer {peer.session_id} is not connected",
                target=peer.session_id, file_id=file_id,
            )

    def _notify(self, session_id: str, error: NetdropsError) -> None:
        peer = self._registry.get(session_id)
        if peer is None:
            return
        try:
            peer.connection.send_message(error_message(error))
        except ConnectionClosed:
            logger.debug(f"Could not notify {session_id}: connection closed")

    def _report(self, origin: str, error: NetdropsError) -> None:
        logger.warning(f"Rejected message from {origin}: [{error.code.value}] {error.message}")
        self._notify(origin, error)
