"""Ping/ack liveness monitoring.

Each session moves through ``IDLE -> PROBE_SENT -> ACKED -> IDLE`` while it
answers pings, and to ``TIMED_OUT`` (followed by removal from the registry)
when a probe goes unanswered for ``timeout`` seconds.
"""

from __future__ import annotations

import logging
import time
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus

from mcp_httpstream.exceptions import Backpressure, SessionNotFound, TimedOut
from mcp_httpstream.registry import SessionRegistry
from mcp_httpstream.router import DeliveryRouter
from mcp_httpstream.session import LivenessState, PingProbe, Session
from mcp_httpstream.types import JSONRPCRequest, RequestId

logger = logging.getLogger(__name__)

PING_METHOD = "ping"


class PingMonitor:
    """
    Periodically probes every session and evicts the ones that stop answering.

    Args:
        registry: Sessions to watch
        router: Used to deliver probes like any other outbound message
        frequency: Seconds between probes of a session; 0 disables liveness
            enforcement entirely
        timeout: Seconds a probe may stay unanswered
        sweep_interval: Seconds between sweeps; defaults to half of the smaller
            of ``frequency`` and ``timeout``
    """

    def __init__(
        self,
        registry: SessionRegistry,
        router: DeliveryRouter,
        *,
        frequency: float = 30.0,
        timeout: float = 10.0,
        sweep_interval: float | None = None,
        clock=time.monotonic,
    ):
        if frequency < 0:
            raise ValueError("ping frequency must be >= 0")
        if timeout <= 0:
            raise ValueError("ping timeout must be > 0")
        self._registry = registry
        self._router = router
        self.frequency = frequency
        self.timeout = timeout
        self.sweep_interval = sweep_interval or min(frequency, timeout) / 2
        self._clock = clock
        self._probing: set[str] = set()

    @property
    def enabled(self) -> bool:
        return self.frequency > 0

    async def run(self, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
        """Sweep sessions until cancelled. Returns at once when pings are disabled."""
        if not self.enabled:
            logger.debug("Ping monitor disabled")
            task_status.started()
            return

        logger.debug(f"Ping monitor started: frequency={self.frequency}s timeout={self.timeout}s")
        async with anyio.create_task_group() as tg:
            task_status.started()
            while True:
                await anyio.sleep(self.sweep_interval)
                await self.sweep(tg)

    async def sweep(self, tg: TaskGroup) -> int:
        """Start a probe for every idle session that is due; returns how many were started."""
        now = self._clock()
        started = 0
        for session in self._registry.sessions():
            if session.closed or session.session_id in self._probing:
                continue
            if session.liveness is not LivenessState.IDLE:
                continue
            if session.has_open_window:
                # The pending POST is the liveness signal; a ping would only ride out with its reply.
                continue
            if now - session.liveness_checked_at < self.frequency:
                continue
            # One task per probe so a stalled stream never holds up the other sessions.
            self._probing.add(session.session_id)
            tg.start_soon(self._probe, session)
            started += 1
        return started

    def acknowledge(self, session: Session, response_id: RequestId) -> bool:
        """Record the client's answer to a probe.

        Must be called while holding the session lock. Returns ``False`` when
        ``response_id`` is not the session's outstanding probe.
        """
        probe = session.probe
        if probe is None or probe.probe_id != response_id:
            return False
        session.issued.discard(response_id)
        session.probe = None
        session.liveness = LivenessState.ACKED
        session.liveness_checked_at = self._clock()
        probe.acked.set()
        session.liveness = LivenessState.IDLE
        logger.debug(f"Ping {response_id} acknowledged by session {session.session_id}")
        return True

    async def _probe(self, session: Session) -> None:
        probe = PingProbe(probe_id=f"ping-{uuid4().hex}", session_id=session.session_id, sent_at=self._clock())
        try:
            # The timer covers delivery too: a client that never drains its stream times out.
            with anyio.move_on_after(self.timeout):
                async with session.lock:
                    if session.closed:
                        return
                    session.probe = probe
                    session.liveness = LivenessState.PROBE_SENT
                try:
                    await self._router.deliver(session.session_id, JSONRPCRequest(id=probe.probe_id, method=PING_METHOD))
                except SessionNotFound:
                    return
                except Backpressure:
                    # The probe was queued; only an older message was dropped.
                    pass
                logger.debug(f"Sent ping {probe.probe_id} to session {session.session_id}")
                await probe.acked.wait()

            since = probe.sent_at
            while not (probe.acked.is_set() or session.closed) and self._kept_alive(session, since):
                since = self._clock()
                with anyio.move_on_after(self.timeout):
                    await probe.acked.wait()

            if probe.acked.is_set() or session.closed:
                return
            await self._evict(session, probe)
        finally:
            self._probing.discard(session.session_id)

    def _kept_alive(self, session: Session, since: float) -> bool:
        """Whether a batch client was active while its probe was outstanding.

        A batch client only sees the ping once a reply flushes, so an open POST
        cycle or one completed since ``since`` restarts the probe timer.
        """
        if session.mode != "batch":
            return False
        return session.has_open_window or session.liveness_checked_at > since

    async def _evict(self, session: Session, probe: PingProbe) -> None:
        # No session lock here: a writer stuck on a stalled stream may hold it.
        # Removal closes the stream first, which releases that writer.
        session.liveness = LivenessState.TIMED_OUT
        logger.info(f"Session {session.session_id} missed ping {probe.probe_id}; evicting")
        try:
            await self._registry.remove(session.session_id, TimedOut(f"No ping response within {self.timeout}s"))
        except SessionNotFound:
            pass
