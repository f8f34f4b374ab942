"""Per-session state owned by the session registry."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcp_httpstream.exceptions import SessionNotFound, TransportError
from mcp_httpstream.types import JSONRPCMessage, RequestId, ResponseMode

if TYPE_CHECKING:
    from mcp_httpstream.auth import Identity
    from mcp_httpstream.batch import BatchWindow


class LivenessState(str, Enum):
    IDLE = "idle"
    PROBE_SENT = "probe_sent"
    ACKED = "acked"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class StreamFrame:
    """A message bound to the SSE event id it is written with."""

    event_id: str
    message: JSONRPCMessage


@dataclass
class PingProbe:
    probe_id: str
    session_id: str
    sent_at: float
    acked: anyio.Event = field(default_factory=anyio.Event)


class StreamHandle:
    """The write side of a live server-push connection.

    Frames go through a zero-buffer memory object stream: ``write`` returns only
    once the SSE writer has taken the frame, so it waits for the client to
    drain. Closing the handle wakes any blocked writer with
    ``anyio.BrokenResourceError`` and ends the reader's iteration.
    """

    def __init__(self) -> None:
        self._send: MemoryObjectSendStream[StreamFrame]
        self._receive: MemoryObjectReceiveStream[StreamFrame]
        self._send, self._receive = anyio.create_memory_object_stream[StreamFrame](0)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, frame: StreamFrame) -> None:
        await self._send.send(frame)

    async def frames(self) -> AsyncIterator[StreamFrame]:
        try:
            async with self._receive:
                async for frame in self._receive:
                    yield frame
        except anyio.ClosedResourceError:
            # Closed by a replacing stream or by session teardown.
            return

    def close(self) -> None:
        self._closed = True
        self._send.close()
        self._receive.close()


class Session:
    """A logical client connection spanning one or more HTTP requests.

    Everything below except the timestamps is mutated only while holding
    ``lock``. The one exception is eviction, which marks ``liveness`` as
    ``TIMED_OUT`` without the lock because a stalled writer may be holding it.
    """

    def __init__(
        self,
        session_id: str,
        mode: ResponseMode,
        identity: Identity | None = None,
        *,
        max_queue_size: int = 1000,
        clock=time.monotonic,
    ):
        self.session_id = session_id
        self.mode: ResponseMode = mode
        self.identity = identity
        self.created_at = clock()
        self.last_activity = self.created_at
        self.lock = anyio.Lock()
        self.closed = False

        self.stream: StreamHandle | None = None
        # request ids received from the client that still await a response
        self.awaited: set[RequestId] = set()
        # request ids the server sent to the client (pings, dispatcher requests)
        self.issued: set[RequestId] = set()
        self.pending: deque[JSONRPCMessage] = deque()
        self.history: deque[StreamFrame] = deque(maxlen=max_queue_size)
        self.max_queue_size = max_queue_size
        self.windows: dict[RequestId, BatchWindow] = {}

        self.liveness = LivenessState.IDLE
        self.liveness_checked_at = self.created_at
        self.probe: PingProbe | None = None

        self._clock = clock
        self._event_counter = 0

    def __repr__(self) -> str:
        return f"Session(id={self.session_id!r}, mode={self.mode!r}, liveness={self.liveness.value})"

    def touch(self) -> None:
        self.last_activity = self._clock()

    def mark_alive(self) -> None:
        """Restart the liveness clock; the client has just shown it is there."""
        self.liveness_checked_at = self._clock()

    @property
    def has_open_window(self) -> bool:
        return any(window.is_open for window in self.windows.values())

    def next_event_id(self) -> str:
        self._event_counter += 1
        return str(self._event_counter)

    async def close(self, reason: TransportError | None = None) -> None:
        """Release the stream handle, discard queued output and cancel batch windows."""
        self.closed = True
        # Closed before taking the lock so a writer stuck on a stalled client lets go.
        if self.stream is not None:
            self.stream.close()
        async with self.lock:
            self.stream = None
            self.pending.clear()
            exc = reason or SessionNotFound(self.session_id)
            for window in set(self.windows.values()):
                window.cancel(exc)
            self.windows.clear()
            self.awaited.clear()
            self.issued.clear()
            if self.probe is not None:
                # Wake the probe waiter; the session is gone either way.
                self.probe.acked.set()
                self.probe = None
