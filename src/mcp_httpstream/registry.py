"""Session registry for the HTTP stream transport."""

from __future__ import annotations

import logging
import time
from uuid import uuid4

from mcp_httpstream.auth import Identity
from mcp_httpstream.exceptions import SessionNotFound, TransportError
from mcp_httpstream.session import Session
from mcp_httpstream.types import ResponseMode

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Tracks active sessions keyed by session id.

    The registry map is the only structure shared across sessions. It is never
    held across a suspension point, so operations on one session never wait on
    another; state inside a session is guarded by that session's own lock.

    A registry is created by the transport when it starts and emptied with
    ``aclose()`` when the transport shuts down.
    """

    def __init__(self, *, max_queue_size: int = 1000, clock=time.monotonic):
        self.max_queue_size = max_queue_size
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def create(self, mode: ResponseMode, identity: Identity | None = None) -> Session:
        # No await between the collision check and the insert: creation is atomic.
        session_id = uuid4().hex
        while session_id in self._sessions:
            session_id = uuid4().hex

        session = Session(
            session_id,
            mode,
            identity,
            max_queue_size=self.max_queue_size,
            clock=self._clock,
        )
        self._sessions[session_id] = session
        logger.info(f"Created {mode} session {session_id}")
        return session

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None or session.closed:
            raise SessionNotFound(session_id)
        return session

    def touch(self, session_id: str) -> None:
        self.get(session_id).touch()

    async def remove(self, session_id: str, reason: TransportError | None = None) -> Session:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)
        await session.close(reason)
        logger.info(f"Removed session {session_id}" + (f": {reason.message}" if reason else ""))
        return session

    async def aclose(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.remove(session_id)
            except SessionNotFound:
                # Removed concurrently.
                continue
