"""
agent/orchestrator.py — Local/Remote Mode Orchestrator

The heart of Tether. Owns the Session and alternates between the two
sub-loops until the user exits:

    ┌────────┐  switch / crash   ┌────────┐
    │ local  │ ────────────────▶ │ remote │
    │        │ ◀──────────────── │        │
    └────────┘  switch / crash   └────────┘
         │ exit                       │ exit
         ▼                            ▼
                    run() returns

For every handoff the orchestrator flips the mode, publishes a
ModeChangeEvent on `mode_events`, calls on_mode_change and tells the relay
with a "switch" session event. There is no delay between sub-loops.

Exceptions raised by a sub-loop are not caught here; they propagate to the
caller together with cancellation.

Usage:
    orc = Orchestrator(
        working_dir=cwd, relay=backend, mode_queue=ModeQueue(),
        local_launcher=LocalLauncher(adapter, terminal),
        remote_launcher=RemoteLauncher(adapter),
        on_session_ready=lambda s: console.session_ready(s),
    )
    session = await orc.run()
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

from observability.logger import bind_session, clear_session, get_logger
from relay.backends import SessionBackend

from agent.mode_queue import ModeChangeRequest, ModeQueue
from agent.session import Mode, Session

log = get_logger(__name__)

SubLoop = Callable[[Session], Awaitable[str]]


class LoopExitReason(str, Enum):
    EXIT   = "exit"
    SWITCH = "switch"
    CRASH  = "crash"


_KNOWN_REASONS = {r.value for r in LoopExitReason}


@dataclass(frozen=True)
class ModeChangeEvent:
    previous: Mode
    current: Mode
    reason: str
    session_id: str
    at: float = field(default_factory=time.time)


class Orchestrator:
    """
    Runs the local ↔ remote state machine for one session.

    Inject all dependencies via the constructor. The orchestrator never
    constructs launchers, backends or queues itself.
    """

    def __init__(
        self,
        working_dir: str | Path,
        relay: SessionBackend,
        mode_queue: ModeQueue,
        local_launcher: SubLoop,
        remote_launcher: SubLoop,
        starting_mode: Mode = Mode.LOCAL,
        resume_session_id: Optional[str] = None,
        on_session_ready: Optional[Callable[[Session], None]] = None,
        on_mode_change: Optional[Callable[[Mode], None]] = None,
        mode_events: Optional[asyncio.Queue] = None,
        initial_request: Optional[ModeChangeRequest] = None,
        keep_alive_interval: float = 2.0,
    ):
        self.working_dir = Path(working_dir)
        self.relay = relay
        self._queue = mode_queue
        self._local = local_launcher
        self._remote = remote_launcher
        self._starting_mode = starting_mode
        self._resume_session_id = resume_session_id
        self._on_session_ready = on_session_ready
        self._on_mode_change = on_mode_change
        self._initial_request = initial_request
        self._keep_alive_interval = keep_alive_interval

        self.mode_events: asyncio.Queue[ModeChangeEvent] = (
            mode_events if mode_events is not None else asyncio.Queue()
        )
        self._session: Optional[Session] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    # ─────────────────────────────────────────────────────────────────────────
    # Main loop
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self) -> Session:
        """Run sub-loops until one returns "exit". Returns the finished Session."""
        session = Session(
            relay=self.relay,
            working_dir=self.working_dir,
            mode_queue=self._queue,
            mode=self._starting_mode,
            agent_session_id=self._resume_session_id,
            initial_request=self._initial_request,
        )
        self._session = session
        bind_session(session.id, session.mode.value)
        log.info("orchestrator.session_ready", mode=session.mode.value, working_dir=str(self.working_dir))

        if self._on_session_ready is not None:
            self._on_session_ready(session)

        keep_alive = asyncio.create_task(self._keep_alive_loop(session), name="keep-alive")
        try:
            while True:
                launcher = self._local if session.mode is Mode.LOCAL else self._remote
                log.info("orchestrator.subloop_start", mode=session.mode.value)
                reason = await launcher(session)

                if reason == LoopExitReason.EXIT.value:
                    log.info("orchestrator.exit", mode=session.mode.value)
                    return session
                if reason not in _KNOWN_REASONS:
                    log.warning("orchestrator.unknown_reason", reason=reason)
                self._flip(session, str(reason))
        finally:
            keep_alive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keep_alive
            clear_session()

    def _flip(self, session: Session, reason: str) -> None:
        previous = session.mode
        current = previous.other()
        session.set_mode(current)
        bind_session(session.id, current.value)
        log.info("orchestrator.mode_switch", old=previous.value, new=current.value, reason=reason)

        self.mode_events.put_nowait(ModeChangeEvent(
            previous=previous,
            current=current,
            reason=reason,
            session_id=session.id,
        ))
        if self._on_mode_change is not None:
            self._on_mode_change(current)

        session.relay.send_session_event({"type": "switch", "mode": current.value})
        session.relay.update_agent_state({"controlledByUser": current is Mode.LOCAL})

    async def _keep_alive_loop(self, session: Session) -> None:
        while True:
            session.keep_alive()
            await asyncio.sleep(self._keep_alive_interval)

    # ─────────────────────────────────────────────────────────────────────────
    # Relay swap
    # ─────────────────────────────────────────────────────────────────────────

    def swap_relay(self, backend: SessionBackend) -> None:
        """Replace the relay backend on the orchestrator and the live Session."""
        self.relay = backend
        if self._session is not None:
            self._session.swap_relay(backend)
        log.info("orchestrator.relay_swapped", session_id=backend.session_id)
