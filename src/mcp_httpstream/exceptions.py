"""Error taxonomy for the HTTP stream transport.

Every error maps to a JSON-RPC error code (used in the protocol-level error body)
and to the HTTP status the front door replies with.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from mcp_httpstream.types import (
    BACKPRESSURE,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    LATE_DELIVERY,
    PARSE_ERROR,
    PAYLOAD_TOO_LARGE,
    SESSION_NOT_FOUND,
    TIMED_OUT,
    UNAUTHORIZED,
    ErrorData,
)

if TYPE_CHECKING:
    from mcp_httpstream.types import JSONRPCMessage


class TransportError(Exception):
    """Base class for errors raised by the transport.

    Attributes:
        code: JSON-RPC error code reported to the client
        status_code: HTTP status used when the error ends an HTTP exchange
    """

    code: int = INTERNAL_ERROR
    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None, data: Any | None = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=self.message, data=self.data)


class MalformedPayload(TransportError):
    """The body is not valid JSON."""

    code = PARSE_ERROR
    status_code = HTTPStatus.BAD_REQUEST
    default_message = "Parse error"


class ProtocolViolation(TransportError):
    """The body is JSON but not a well-formed or correlated JSON-RPC message."""

    code = INVALID_REQUEST
    status_code = HTTPStatus.BAD_REQUEST
    default_message = "Invalid request"


class PayloadTooLarge(TransportError):
    """The body exceeds the configured maximum message size."""

    code = PAYLOAD_TOO_LARGE
    status_code = HTTPStatus.REQUEST_ENTITY_TOO_LARGE

    def __init__(self, limit: int, size: int | None = None):
        self.limit = limit
        self.size = size
        super().__init__(f"Payload exceeds max_message_size={limit}", data={"limit": limit})


class Unauthorized(TransportError):
    code = UNAUTHORIZED
    status_code = HTTPStatus.UNAUTHORIZED
    default_message = "Unauthorized"


class SessionNotFound(TransportError):
    code = SESSION_NOT_FOUND
    status_code = HTTPStatus.NOT_FOUND
    default_message = "Session not found"

    def __init__(self, session_id: str | None = None):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}" if session_id else None)


class Backpressure(TransportError):
    """The session's outbound queue overflowed.

    The message passed to ``deliver`` was queued; ``dropped`` is the oldest
    queued message, which was discarded to make room for it.
    """

    code = BACKPRESSURE
    status_code = HTTPStatus.SERVICE_UNAVAILABLE

    def __init__(self, session_id: str, dropped: JSONRPCMessage):
        self.session_id = session_id
        self.dropped = dropped
        super().__init__(f"Outbound queue full for session {session_id}; dropped oldest message")


class LateDelivery(TransportError):
    """A response arrived after the batch window for its request was flushed."""

    code = LATE_DELIVERY

    def __init__(self, session_id: str, message: JSONRPCMessage):
        self.session_id = session_id
        self.late_message = message
        super().__init__(f"Late delivery for session {session_id}: batch window already flushed")


class TimedOut(TransportError):
    """The session did not acknowledge a ping probe in time."""

    code = TIMED_OUT
    status_code = HTTPStatus.REQUEST_TIMEOUT
    default_message = "Session timed out"
