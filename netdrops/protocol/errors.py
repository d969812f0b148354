"""Typed errors shared by the coordinator and peers."""

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error kinds carried by `error` control messages."""
    VALIDATION_ERROR = "validation_error"
    TARGET_UNAVAILABLE = "target_unavailable"
    BUSY = "busy"
    LOCALITY_MISMATCH = "locality_mismatch"
    PROTOCOL_VIOLATION = "protocol_violation"
    CONNECTION_CLOSED = "connection_closed"
    NOT_AUTHORIZED = "not_authorized"
    MALFORMED_MESSAGE = "malformed_message"
    REQUEST_EXPIRED = "request_expired"


class NetdropsError(Exception):
    """Base class; every subclass pins an ErrorCode."""
    code: ErrorCode = ErrorCode.PROTOCOL_VIOLATION

    def __init__(self, message: str = "", *, target: str | None = None,
                 file_id: str | None = None) -> None:
        super().__init__(message or self.code.value)
        self.message = message or self.code.value
        self.target = target
        self.file_id = file_id


class ValidationError(NetdropsError):
    code = ErrorCode.VALIDATION_ERROR


class TargetUnavailable(NetdropsError):
    code = ErrorCode.TARGET_UNAVAILABLE


class Busy(NetdropsError):
    code = ErrorCode.BUSY


class LocalityMismatch(NetdropsError):
    code = ErrorCode.LOCALITY_MISMATCH


class ProtocolViolation(NetdropsError):
    code = ErrorCode.PROTOCOL_VIOLATION


class ConnectionClosed(NetdropsError):
    code = ErrorCode.CONNECTION_CLOSED


class NotAuthorized(NetdropsError):
    code = ErrorCode.NOT_AUTHORIZED


class MalformedMessage(NetdropsError):
    code = ErrorCode.MALFORMED_MESSAGE


class RequestExpired(NetdropsError):
    code = ErrorCode.REQUEST_EXPIRED


_BY_CODE: dict[ErrorCode, type[NetdropsError]] = {
    cls.code: cls
    for cls in (
        ValidationError, TargetUnavailable, Busy, LocalityMismatch,
        ProtocolViolation, ConnectionClosed, NotAuthorized,
        MalformedMessage, RequestExpired,
    )
}


def error_for(code: ErrorCode, message: str = "", *, target: str | None = None,
              file_id: str | None = None) -> NetdropsError:
    """Rebuild the typed exception for an error code received on the wire."""
    return _BY_CODE[ErrorCode(code)](message, target=target, file_id=file_id)
