"""
File framing codec.

A file travels as two messages on the same connection: a ``meta`` control
message naming its fileId, then one binary frame made of the fileId's
36-character ASCII text followed by the raw file bytes. The receiver only
accepts a frame whose fileId it has already seen announced.
"""

import logging
import uuid
from dataclasses import dataclass

from netdrops.config import FILE_ID_WIDTH
from netdrops.protocol.errors import ProtocolViolation
from netdrops.protocol.messages import MetaMessage

logger = logging.getLogger(__name__)


def new_file_id() -> str:
    return str(uuid.uuid4())


def is_file_id(text: str) -> bool:
    """True if ``text`` fits the fixed-width frame prefix."""
    return len(text) == FILE_ID_WIDTH and text.isascii()


def encode_frame(file_id: str, data: bytes) -> bytes:
    """Prefix ``data`` with the fixed-width fileId."""
    prefix = file_id.encode("ascii")
    if len(prefix) != FILE_ID_WIDTH:
        raise ValueError(
            f"fileId must be {FILE_ID_WIDTH} ASCII characters, got {len(prefix)}"
        )
    return prefix + data


def split_frame(frame: bytes) -> tuple[str, bytes]:
    """Return ``(file_id, payload)`` from a binary frame."""
    if len(frame) < FILE_ID_WIDTH:
        raise ProtocolViolation(
            f"Binary frame of {len(frame)} bytes is shorter than the fileId prefix"
        )
    try:
        file_id = frame[:FILE_ID_WIDTH].decode("ascii")
    except UnicodeDecodeError:
        raise ProtocolViolation("Binary frame prefix is not an ASCII fileId")
    return file_id, frame[FILE_ID_WIDTH:]


@dataclass
class ReceivedFile:
    """A fully reassembled file, handed to the presentation layer."""
    file_id: str
    origin: str | None
    file_name: str
    data: bytes


class Reassembler:
    """Receiver-side correlation of binary frames with pending metadata."""

    def __init__(self) -> None:
        self._pending: dict[str, MetaMessage] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def expect(self, meta: MetaMessage) -> None:
        if not is_file_id(meta.file_id):
            raise ProtocolViolation(
                f"fileId must be {FILE_ID_WIDTH} ASCII characters",
                file_id=meta.file_id,
            )
        if meta.file_id in self._pending:
            raise ProtocolViolation(
                f"Duplicate metadata for file {meta.file_id}",
                file_id=meta.file_id,
            )
        self._pending[meta.file_id] = meta

    def accept(self, frame: bytes) -> ReceivedFile:
        """Consume the pending metadata a frame belongs to."""
        file_id, payload = split_frame(frame)
        meta = self._pending.pop(file_id, None)
        if meta is None:
            raise ProtocolViolation(
                f"Binary frame for unannounced file {file_id}",
                file_id=file_id,
            )
        return ReceivedFile(
            file_id=file_id,
            origin=meta.sender_session_id,
            file_name=meta.file_name or f"netdrops_{file_id}.jpg",
            data=payload,
        )

    def discard(self, file_id: str) -> bool:
        """Drop metadata for a file that will never arrive."""
        return self._pending.pop(file_id, None) is not None

    def discard_origin(self, session_id: str) -> int:
        """Drop metadata announced by a peer that has left."""
        stale = [
            fid for fid, meta in self._pending.items()
            if meta.sender_session_id == session_id
        ]
        for fid in stale:
            del self._pending[fid]
        if stale:
            logger.info(f"Discarded {len(stale)} pending file(s) from {session_id}")
        return len(stale)
