"""The seam between the transport and the RPC method logic."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from mcp_httpstream.auth import Identity
from mcp_httpstream.types import JSONRPCMessage, JSONRPCResponse

if TYPE_CHECKING:
    from mcp_httpstream.router import DeliveryRouter, DeliveryStatus


@dataclass
class DispatchContext:
    """Per-message context handed to the dispatcher."""

    session_id: str
    identity: Identity | None
    _router: DeliveryRouter

    async def send(self, message: JSONRPCMessage) -> DeliveryStatus:
        """Push an extra message (e.g. a progress notification) to this session.

        Raises ``Backpressure`` when the session's queue overflowed, so the
        caller decides whether to retry, drop or log.
        """
        return await self._router.deliver(self.session_id, message)


class Dispatcher(Protocol):
    async def handle(self, message: JSONRPCMessage, context: DispatchContext) -> JSONRPCResponse | None:
        """Process one inbound message.

        Requests should return their response; returning ``None`` marks the
        request answered without one. Notifications and client responses to
        server-issued requests return ``None``.
        """
        ...
