"""Broadcasts peer-list snapshots to every connection on membership change."""

import logging

from netdrops.protocol.errors import ConnectionClosed
from netdrops.protocol.messages import UserListMessage
from netdrops.session.models import Peer
from netdrops.session.registry import SessionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    """Sends a ``userList`` to all peers whenever someone joins or leaves."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self.last_snapshot: UserListMessage | None = None
        registry.on_peer_change(self.handle_event)

    def handle_event(self, event: str, peer: Peer) -> None:
        """Callback compatible with SessionRegistry.on_peer_change()."""
        self.broadcast()

    def broadcast(self) -> None:
        message = UserListMessage(users=self._registry.snapshot())
        self.last_snapshot = message
        logger.info(f"Broadcasting user list of {len(message.users)} peer(s)")
        for peer in self._registry.peers():
            try:
                peer.connection.send_message(message)
            except ConnectionClosed:
                logger.debug(f"Skipping closed connection {peer.session_id}")
