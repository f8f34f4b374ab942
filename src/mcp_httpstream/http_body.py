from __future__ import annotations

from starlette.requests import Request

from mcp_httpstream.codec import DEFAULT_MAX_MESSAGE_SIZE
from mcp_httpstream.exceptions import PayloadTooLarge


async def read_request_body(request: Request, *, max_body_bytes: int = DEFAULT_MAX_MESSAGE_SIZE) -> bytes:
    """Read an HTTP request body with a hard cap.

    Notes:
    - The body is never buffered beyond max_body_bytes bytes.
    - A declared Content-Length above the cap is rejected before reading anything.
    """
    if max_body_bytes <= 0:
        raise ValueError("max_body_bytes must be positive")

    content_length = request.headers.get("content-length")
    if content_length is not None:
        try:
            declared = int(content_length)
        except ValueError:
            # Enforced while streaming instead.
            declared = None
        if declared is not None and declared > max_body_bytes:
            raise PayloadTooLarge(max_body_bytes, declared)

    body = bytearray()
    async for chunk in request.stream():
        if not chunk:
            continue

        if len(body) + len(chunk) > max_body_bytes:
            raise PayloadTooLarge(max_body_bytes)

        body.extend(chunk)

    return bytes(body)
