"""Pydantic models for the control-message wire protocol.

Every text frame on a connection is one JSON object whose ``type`` field
selects exactly one of the models below. Field names travel in camelCase.
"""

from typing import Annotated, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from netdrops.protocol.errors import ErrorCode, MalformedMessage, NetdropsError


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PeerInfo(WireModel):
    """One entry of a peer-list snapshot."""
    session_id: str
    nickname: str
    online: bool = True


class InitMessage(WireModel):
    """Coordinator → new peer: the peer's authoritative identity."""
    type: Literal["init"] = "init"
    session_id: str
    nickname: str


class UserListMessage(WireModel):
    """Coordinator → every peer on membership change."""
    type: Literal["userList"] = "userList"
    users: list[PeerInfo]


class RequestMessage(WireModel):
    """Requester → target: ask permission to send files."""
    type: Literal["request"] = "request"
    target: str
    # Stamped by the coordinator; whatever the client claims is overwritten
    sender_session_id: str | None = None
    sender_nickname: str | None = None


class ResponseData(WireModel):
    accepted: bool


class ResponseMessage(WireModel):
    """Target → requester: the decision. ``target`` names the requester."""
    type: Literal["response"] = "response"
    data: ResponseData
    target: str
    sender_session_id: str | None = None


class MetaMessage(WireModel):
    """Announces one file; always precedes that file's binary frame."""
    type: Literal["meta"] = "meta"
    file_id: str
    target: str
    sender_session_id: str | None = None
    file_name: str | None = None


class ErrorMessage(WireModel):
    """Typed failure notice, sent only to the affected peer."""
    type: Literal["error"] = "error"
    code: ErrorCode
    message: str = ""
    target: str | None = None
    file_id: str | None = None


ControlMessage = Annotated[
    Union[
        InitMessage,
        UserListMessage,
        RequestMessage,
        ResponseMessage,
        MetaMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

# Types a peer may send; the rest are emitted only by the coordinator
PEER_MESSAGE_TYPES = frozenset({"request", "response", "meta"})

_adapter: TypeAdapter = TypeAdapter(ControlMessage)


def decode_message(text: str | bytes) -> ControlMessage:
    """Parse one control message, raising MalformedMessage on any defect."""
    try:
        return _adapter.validate_json(text)
    except pydantic.ValidationError as e:
        raise MalformedMessage(
            f"Invalid control message: {e.error_count()} error(s), "
            f"first: {e.errors()[0]['msg']}"
        ) from e


def encode_message(message: WireModel) -> str:
    return message.model_dump_json(by_alias=True, exclude_none=True)


def error_message(error: NetdropsError) -> ErrorMessage:
    return ErrorMessage(
        code=error.code,
        message=error.message,
        target=error.target,
        file_id=error.file_id,
    )
