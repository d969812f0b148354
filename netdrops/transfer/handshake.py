"""
Request/accept negotiation between two peers.

Each ordered pair (requester, target) moves IDLE → REQUESTED →
ACCEPTED | REJECTED → IDLE. Only REQUESTED is stored; a pair with no record
is IDLE. A pending request expires after ``timeout`` seconds, which counts
as a rejection.
"""

import asyncio
import logging
import time
from enum import Enum

from pydantic import BaseModel

from netdrops.config import REQUEST_TIMEOUT
from netdrops.protocol.errors import Busy, ProtocolViolation

logger = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class TransferRequest(BaseModel):
    """An outstanding permission request."""
    requester: str
    target: str
    state: HandshakeState = HandshakeState.REQUESTED
    created_at: float  # Unix timestamp


class HandshakeStateMachine:
    """Tracks at most one outstanding request per ordered peer pair."""

    def __init__(self, timeout: float | None = REQUEST_TIMEOUT,
                 on_expire=None) -> None:
        self._requests: dict[tuple[str, str], TransferRequest] = {}
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._timeout = timeout
        self._on_expire = on_expire  # fn(TransferRequest)

    def state(self, requester: str, target: str) -> HandshakeState:
        request = self._requests.get((requester, target))
        return request.state if request else HandshakeState.IDLE

    def pending(self) -> list[TransferRequest]:
        return list(self._requests.values())

    def open(self, requester: str, target: str) -> TransferRequest:
        """IDLE → REQUESTED. Raises Busy if the pair already has one."""
        if requester == target:
            raise ProtocolViolation("A peer cannot request a transfer to itself",
                                    target=target)
        key = (requester, target)
        if key in self._requests:
            raise Busy(
                f"A request from {requester} to {target} is already pending",
                target=target,
            )

        request = TransferRequest(
            requester=requester, target=target, created_at=time.time()
        )
        self._requests[key] = request
        if self._timeout is not None:
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(self._timeout, self._expire, key)
        logger.info(f"Handshake {requester} -> {target}: requested")
        return request

    def resolve(self, requester: str, target: str, accepted: bool) -> HandshakeState:
        """REQUESTED → ACCEPTED | REJECTED, then back to IDLE."""
        request = self._discard((requester, target))
        if request is None:
            raise ProtocolViolation(
                f"No pending request from {requester} to {target}",
                target=requester,
            )
        outcome = HandshakeState.ACCEPTED if accepted else HandshakeState.REJECTED
        logger.info(f"Handshake {requester} -> {target}: {outcome.value}")
        return outcome

    def cancel(self, requester: str, target: str) -> TransferRequest | None:
        """Forget a pending request without deciding it."""
        return self._discard((requester, target))

    def drop_peer(self, session_id: str) -> list[TransferRequest]:
        """Cancel every request naming ``session_id`` in either role."""
        dropped = []
        for key in [k for k in self._requests if session_id in k]:
            request = self._discard(key)
            if request is not None:
                dropped.append(request)
        if dropped:
            logger.info(f"Cancelled {len(dropped)} request(s) involving {session_id}")
        return dropped

    def clear(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._requests.clear()

    def _discard(self, key: tuple[str, str]) -> TransferRequest | None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        return self._requests.pop(key, None)

    def _expire(self, key: tuple[str, str]) -> None:
        self._timers.pop(key, None)
        request = self._requests.pop(key, None)
        if request is None:
            return
        request.state = HandshakeState.REJECTED
        logger.info(
            f"Handshake {request.requester} -> {request.target}: "
            f"expired after {self._timeout}s"
        )
        if self._on_expire:
            try:
                self._on_expire(request)
            except Exception as e:
                logger.error(f"Expiry callback error: {e}", exc_info=True)
