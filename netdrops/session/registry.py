"""
Session registry: the coordinator's authoritative table of connected peers.

Assigns every new connection its identity and tells listeners about joins
and leaves. All mutations run under one lock, and listeners are called
while it is held, so every observer sees membership changes in one order.
"""

import asyncio
import logging
import time
import uuid

from netdrops.protocol.connection import Connection
from netdrops.protocol.errors import ConnectionClosed
from netdrops.protocol.messages import InitMessage, PeerInfo
from netdrops.session.models import Peer
from netdrops.session.nicknames import generate_nickname

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owns every Peer; other components refer to peers by session id."""

    def __init__(self) -> None:
        self._peers: dict[str, Peer] = {}
        self._lock = asyncio.Lock()
        self._on_peer_change: list = []  # callbacks: fn(event, peer)

    def on_peer_change(self, callback) -> None:
        """Register fn(event, peer), event is "peer_joined" or "peer_left"."""
        self._on_peer_change.append(callback)

    def _notify(self, event: str, peer: Peer) -> None:
        for cb in self._on_peer_change:
            try:
                cb(event, peer)
            except Exception as e:
                logger.error(f"Peer change callback error: {e}", exc_info=True)

    async def register(self, connection: Connection, locality: str) -> Peer:
        """Admit a connection and send it its identity."""
        async with self._lock:
            session_id = str(uuid.uuid4())
            while session_id in self._peers:
                session_id = str(uuid.uuid4())

            peer = Peer(
                session_id=session_id,
                nickname=generate_nickname(),
                locality=locality,
                connection=connection,
                connected_at=time.time(),
            )
            self._peers[session_id] = peer
            connection.name = session_id

            try:
                connection.send_message(
                    InitMessage(session_id=session_id, nickname=peer.nickname)
                )
            except ConnectionClosed:
                logger.debug(f"Connection for {session_id} closed before init")

            logger.info(
                f"New connection established: sessionId={session_id}, "
                f"nickname={peer.nickname}, locality={locality}"
            )
            self._notify("peer_joined", peer)
            return peer

    async def unregister(self, session_id: str) -> Peer | None:
        """Remove a peer; returns None if it was already gone."""
        async with self._lock:
            peer = self._peers.pop(session_id, None)
            if peer is None:
                return None
            logger.info(f"Connection closed: sessionId={session_id}")
            self._notify("peer_left", peer)
            return peer

    def get(self, session_id: str) -> Peer | None:
        return self._peers.get(session_id)

    def is_connected(self, session_id: str) -> bool:
        peer = self._peers.get(session_id)
        return peer is not None and not peer.connection.closed

    def peers(self) -> list[Peer]:
        return list(self._peers.values())

    def snapshot(self) -> list[PeerInfo]:
        """Fresh peer list built from the current membership."""
        return [peer.info() for peer in self._peers.values()]
