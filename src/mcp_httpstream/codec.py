"""Wire codec for JSON-RPC messages.

Clients may send either a bare JSON object or a JSON array of objects; both
shapes decode into a ``DecodedPayload``. Encoding never fails for well-formed
in-memory messages.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import pydantic_core
from pydantic import ValidationError

from mcp_httpstream.exceptions import MalformedPayload, PayloadTooLarge, ProtocolViolation, TransportError
from mcp_httpstream.types import (
    JSONRPC_VERSION,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResultResponse,
    RequestId,
)

DEFAULT_MAX_MESSAGE_SIZE = 4 * 1024 * 1024  # 4MiB


@dataclass(frozen=True)
class DecodedPayload:
    messages: list[JSONRPCMessage]
    is_batch: bool


class MessageCodec:
    """Decodes and encodes JSON-RPC messages, enforcing a maximum payload size."""

    def __init__(self, max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE):
        if max_message_size <= 0:
            raise ValueError("max_message_size must be positive")
        self.max_message_size = max_message_size

    def decode(self, raw: bytes | str) -> DecodedPayload:
        """Decode a request body into one or more messages.

        Raises:
            PayloadTooLarge: ``raw`` is longer than ``max_message_size``; raised
                before any parsing takes place.
            MalformedPayload: ``raw`` is not valid UTF-8 JSON.
            ProtocolViolation: the JSON is not a JSON-RPC message or batch.
        """
        if isinstance(raw, str):
            raw = raw.encode()
        if len(raw) > self.max_message_size:
            raise PayloadTooLarge(self.max_message_size, len(raw))

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedPayload(f"Parse error: {exc}") from exc

        if isinstance(data, list):
            if not data:
                raise ProtocolViolation("Empty batch")
            return DecodedPayload(messages=[self.decode_message(item) for item in data], is_batch=True)
        return DecodedPayload(messages=[self.decode_message(data)], is_batch=False)

    def decode_message(self, obj: Any) -> JSONRPCMessage:
        """Classify and validate a single parsed JSON object."""
        if not isinstance(obj, dict):
            raise ProtocolViolation("Message must be a JSON object")
        if obj.get("jsonrpc") != JSONRPC_VERSION:
            raise ProtocolViolation('Message must declare "jsonrpc": "2.0"')

        model: type[JSONRPCMessage]
        if "method" in obj:
            model = JSONRPCRequest if "id" in obj else JSONRPCNotification
        elif "result" in obj and "error" in obj:
            raise ProtocolViolation("Response cannot carry both result and error")
        elif "result" in obj:
            model = JSONRPCResultResponse
        elif "error" in obj:
            model = JSONRPCErrorResponse
        else:
            raise ProtocolViolation("Message has no method, result or error")

        try:
            return model.model_validate(obj)
        except ValidationError as exc:
            raise ProtocolViolation(f"Invalid {model.__name__}: {exc.error_count()} validation error(s)") from exc

    def to_jsonable(self, message: JSONRPCMessage) -> dict[str, Any]:
        data = message.model_dump(mode="json", by_alias=True, exclude_none=True)
        if isinstance(message, JSONRPCErrorResponse):
            # JSON-RPC requires the id member on error responses, null when unknown
            data["id"] = message.id
        return data

    def encode(self, message: JSONRPCMessage) -> bytes:
        return pydantic_core.to_json(self.to_jsonable(message))

    def encode_batch(self, messages: Iterable[JSONRPCMessage]) -> bytes:
        return pydantic_core.to_json([self.to_jsonable(message) for message in messages])

    def error_payload(self, exc: TransportError, request_id: RequestId | None = None) -> bytes:
        """Build the protocol-level error body for an HTTP error reply."""
        return self.encode(JSONRPCErrorResponse(id=request_id, error=exc.to_error_data()))


def request_ids(messages: Sequence[JSONRPCMessage]) -> list[RequestId]:
    return [message.id for message in messages if isinstance(message, JSONRPCRequest)]
