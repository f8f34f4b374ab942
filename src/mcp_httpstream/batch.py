"""Batch response collection.

In batch mode each POST carrying requests opens a ``BatchWindow``. The window
collects every outbound message for that request cycle and is flushed exactly
once, as a single JSON array, when either all of its requests are resolved or
``batch_timeout`` has elapsed since its first message.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable

import anyio

from mcp_httpstream.exceptions import Backpressure, LateDelivery, TransportError
from mcp_httpstream.session import Session
from mcp_httpstream.types import RESPONSE_TYPES, JSONRPCMessage, RequestId

logger = logging.getLogger(__name__)


class BatchWindow:
    def __init__(self, session_id: str, request_ids: Iterable[RequestId], timeout: float):
        self.session_id = session_id
        self.timeout = timeout
        self.unresolved: set[RequestId] = set(request_ids)
        self.deadline: float | None = None
        self.flushed = False
        self._messages: list[JSONRPCMessage] = []
        self._first_message = anyio.Event()
        self._complete = anyio.Event()
        self._cancelled: TransportError | None = None
        if not self.unresolved:
            self._complete.set()

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def is_open(self) -> bool:
        return not self.flushed and self._cancelled is None

    def add(self, message: JSONRPCMessage) -> None:
        if not self.is_open:
            raise LateDelivery(self.session_id, message)
        if not self._messages:
            self.deadline = anyio.current_time() + self.timeout
            self._first_message.set()
        self._messages.append(message)

    def carry(self, message: JSONRPCMessage) -> None:
        """Take over a message queued before the window opened. Does not start the deadline."""
        self._messages.append(message)

    def resolve(self, request_id: RequestId) -> None:
        self.unresolved.discard(request_id)
        if not self.unresolved:
            self._complete.set()

    def cancel(self, reason: TransportError) -> None:
        if self.flushed:
            return
        self._cancelled = reason
        self._first_message.set()
        self._complete.set()

    def flush(self) -> list[JSONRPCMessage]:
        """Close the window and hand back its messages. Only the first call returns them."""
        if self.flushed:
            return []
        self.flushed = True
        messages, self._messages = self._messages, []
        return messages

    async def wait_closing(self) -> None:
        """Wait until the window should be flushed."""
        with anyio.CancelScope() as scope:
            # Nothing to wait for once every request is resolved.
            async with anyio.create_task_group() as tg:

                async def _complete() -> None:
                    await self._complete.wait()
                    scope.cancel()

                tg.start_soon(_complete)
                await self._first_message.wait()
                remaining = 0.0 if self.deadline is None else max(0.0, self.deadline - anyio.current_time())
                await anyio.sleep(remaining)
                scope.cancel()
        if self._cancelled is not None:
            raise self._cancelled


class BatchCollector:
    """Routes batch-mode messages into the windows of their sessions.

    ``collect`` and ``resolve`` must be called while holding the session lock.
    """

    def __init__(self, timeout: float = 30.0):
        if timeout < 0 or math.isnan(timeout):
            raise ValueError("batch timeout must be >= 0")
        self.timeout = timeout

    def open_window(self, session: Session, request_ids: Iterable[RequestId]) -> BatchWindow:
        window = BatchWindow(session.session_id, request_ids, self.timeout)
        for request_id in window.unresolved:
            session.windows[request_id] = window
        # Messages queued while no window was open ride out with this one.
        while session.pending:
            window.carry(session.pending.popleft())
        return window

    def collect(self, session: Session, message: JSONRPCMessage) -> None:
        window = None
        if isinstance(message, RESPONSE_TYPES) and message.id is not None:
            window = session.windows.pop(message.id, None)
        if window is None:
            # Notifications, server requests and null-id errors: newest open window or the queue.
            self._collect_unsolicited(session, message)
            return
        window.add(message)
        window.resolve(message.id)

    def resolve(self, session: Session, request_id: RequestId) -> None:
        window = session.windows.pop(request_id, None)
        if window is not None:
            window.resolve(request_id)

    async def wait(self, session: Session, window: BatchWindow) -> list[JSONRPCMessage]:
        """Wait for ``window`` to close and flush it under the session lock."""
        try:
            await window.wait_closing()
        finally:
            with anyio.CancelScope(shield=True):
                async with session.lock:
                    messages = window.flush()
                    # A completed request cycle counts as the client being alive.
                    session.mark_alive()
        logger.debug(f"Flushed batch window for session {session.session_id} with {len(messages)} message(s)")
        return messages

    def _collect_unsolicited(self, session: Session, message: JSONRPCMessage) -> None:
        open_windows = [window for window in session.windows.values() if window.is_open]
        if open_windows:
            open_windows[-1].add(message)
            return
        dropped = None
        if len(session.pending) >= session.max_queue_size:
            dropped = session.pending.popleft()
        session.pending.append(message)
        if dropped is not None:
            raise Backpressure(session.session_id, dropped)
