"""Pydantic models for connected peers."""

from pydantic import BaseModel, ConfigDict

from netdrops.protocol.connection import Connection
from netdrops.protocol.messages import PeerInfo


class Peer(BaseModel):
    """A device connected to the coordinator."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    nickname: str
    locality: str  # network the peer's address belongs to
    connection: Connection
    connected_at: float  # Unix timestamp

    def info(self) -> PeerInfo:
        return PeerInfo(session_id=self.session_id, nickname=self.nickname)
