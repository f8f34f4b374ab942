"""Outbound message routing.

The router decides, per message, whether it is written to the session's live
stream, held in the session's queue until a stream attaches, or handed to the
batch collector.
"""

from __future__ import annotations

import logging
from enum import Enum

import anyio

from mcp_httpstream.batch import BatchCollector
from mcp_httpstream.exceptions import Backpressure, ProtocolViolation, SessionNotFound
from mcp_httpstream.registry import SessionRegistry
from mcp_httpstream.session import Session, StreamFrame, StreamHandle
from mcp_httpstream.types import RESPONSE_TYPES, JSONRPCMessage, JSONRPCRequest, RequestId

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    PUSHED = "pushed"
    """Written to the attached stream."""
    QUEUED = "queued"
    """Held until the next stream attaches."""
    BATCHED = "batched"
    """Handed to the batch collector."""


class DeliveryRouter:
    def __init__(self, registry: SessionRegistry, collector: BatchCollector):
        self._registry = registry
        self._collector = collector

    async def deliver(self, session_id: str, message: JSONRPCMessage) -> DeliveryStatus:
        """Deliver one outbound message to a session.

        Messages for the same session are written in the order ``deliver`` is
        called.

        Raises:
            SessionNotFound: the session does not exist or was closed.
            ProtocolViolation: ``message`` is a response to no request the
                session is waiting on.
            Backpressure: the queue was full; ``message`` was queued and the
                oldest queued message dropped.
            LateDelivery: the batch window of the answered request was
                already flushed.
        """
        session = self._registry.get(session_id)
        backpressure: Backpressure | None = None
        async with session.lock:
            if session.closed:
                raise SessionNotFound(session_id)
            self._correlate(session, message)
            if session.mode == "batch":
                try:
                    self._collector.collect(session, message)
                except Backpressure as exc:
                    backpressure = exc
                status = DeliveryStatus.BATCHED
            else:
                status, backpressure = await self._push_or_queue(session, message)
            session.touch()

        if backpressure is not None:
            logger.warning(f"Backpressure on session {session_id}: dropped oldest queued message")
            raise backpressure
        return status

    async def attach(self, session_id: str, handle: StreamHandle, last_event_id: str | None = None) -> list[StreamFrame]:
        """Make ``handle`` the session's live stream.

        Any previously attached handle is closed. Returns the backlog the new
        stream must write before anything else: frames already sent after
        ``last_event_id`` (when the client is resuming), then every queued
        message.
        """
        session = self._registry.get(session_id)
        async with session.lock:
            if session.closed:
                raise SessionNotFound(session_id)
            if session.stream is not None:
                logger.debug(f"Replacing stream handle for session {session_id}")
                session.stream.close()

            backlog: list[StreamFrame] = []
            if last_event_id is not None:
                backlog.extend(self._replay(session, last_event_id))
            while session.pending:
                frame = StreamFrame(session.next_event_id(), session.pending.popleft())
                session.history.append(frame)
                backlog.append(frame)

            session.stream = handle
            session.touch()
        logger.debug(f"Attached stream to session {session_id} with {len(backlog)} backlog frame(s)")
        return backlog

    async def detach(self, session_id: str, handle: StreamHandle) -> None:
        try:
            session = self._registry.get(session_id)
        except SessionNotFound:
            return
        async with session.lock:
            if session.stream is handle:
                session.stream = None
                logger.debug(f"Detached stream from session {session_id}")

    async def resolve(self, session_id: str, request_id: RequestId) -> None:
        """Mark a request answered without a response."""
        session = self._registry.get(session_id)
        async with session.lock:
            session.awaited.discard(request_id)
            if session.mode == "batch":
                self._collector.resolve(session, request_id)

    def _correlate(self, session: Session, message: JSONRPCMessage) -> None:
        if isinstance(message, RESPONSE_TYPES):
            if message.id is None:
                return
            if message.id not in session.awaited:
                raise ProtocolViolation(f"Response id {message.id!r} does not match an awaited request")
            session.awaited.discard(message.id)
        elif isinstance(message, JSONRPCRequest):
            session.issued.add(message.id)

    async def _push_or_queue(self, session: Session, message: JSONRPCMessage) -> tuple[DeliveryStatus, Backpressure | None]:
        handle = session.stream
        if handle is not None and not handle.closed:
            frame = StreamFrame(session.next_event_id(), message)
            try:
                await handle.write(frame)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug(f"Stream for session {session.session_id} went away; queueing message")
                session.stream = None
            else:
                session.history.append(frame)
                return DeliveryStatus.PUSHED, None

        dropped = None
        if len(session.pending) >= session.max_queue_size:
            dropped = session.pending.popleft()
        session.pending.append(message)
        if dropped is not None:
            return DeliveryStatus.QUEUED, Backpressure(session.session_id, dropped)
        return DeliveryStatus.QUEUED, None

    def _replay(self, session: Session, last_event_id: str) -> list[StreamFrame]:
        try:
            last = int(last_event_id)
        except ValueError:
            logger.debug(f"Ignoring unparseable Last-Event-ID {last_event_id!r}")
            return []
        return [frame for frame in session.history if int(frame.event_id) > last]
