"""
agent/session.py — Per-Session State

One Session object exists per CLI run. It is the single continuous
conversation that survives every local ↔ remote handoff:

  - the relay backend (offline stub or live connection; swappable)
  - the current mode and the last applied ModeChangeRequest
  - the agent's own resumable session id, once discovered
  - the switch signal that ends the running sub-loop

Inbound traffic from the mobile client lands here first. A user message is
enqueued on the ModeQueue and, while in local mode, also requests a switch
so the remote sub-loop can pick it up.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from config.settings import VALID_PERMISSION_MODES
from observability.logger import get_logger
from relay.backends import SessionBackend
from relay.protocol import (
    MessageEvent,
    MobileUserMessage,
    PermissionModeChangedEvent,
    ReadyEvent,
    SwitchEvent,
)

from agent.mode_queue import ModeChangeRequest, ModeQueue

log = get_logger(__name__)


class Mode(str, Enum):
    LOCAL  = "local"
    REMOTE = "remote"

    def other(self) -> "Mode":
        return Mode.REMOTE if self is Mode.LOCAL else Mode.LOCAL


class Session:
    """All runtime state for one Tether session."""

    def __init__(
        self,
        relay: SessionBackend,
        working_dir: str | Path,
        mode_queue: ModeQueue,
        mode: Mode = Mode.LOCAL,
        agent_session_id: Optional[str] = None,
        initial_request: Optional[ModeChangeRequest] = None,
    ):
        self.relay = relay
        self.working_dir = Path(working_dir)
        self.queue = mode_queue
        self.mode = mode
        self.agent_session_id = agent_session_id
        self.current_request = initial_request or ModeChangeRequest()
        self.thinking = False

        self._switch_event = asyncio.Event()

        self._attach(relay)
        log.debug("session.created", session_id=self.id, mode=mode.value)

    @property
    def id(self) -> str:
        return self.relay.session_id

    @property
    def is_offline(self) -> bool:
        return self.relay.is_offline

    # ── Relay ─────────────────────────────────────────────────────────────────

    def swap_relay(self, backend: SessionBackend) -> None:
        """Replace the relay backend. One assignment; handlers move with it."""
        old_id = self.relay.session_id
        self.relay = backend
        self._attach(backend)
        log.info("session.relay_swapped", old=old_id, new=backend.session_id)

    def _attach(self, backend: SessionBackend) -> None:
        backend.on_user_message(self._handle_user_message)
        backend.on_session_event(self._handle_session_event)

    # ── Mode ──────────────────────────────────────────────────────────────────

    def set_mode(self, mode: Mode) -> None:
        self.mode = mode
        self._switch_event.clear()

    def request_switch(self) -> None:
        if not self._switch_event.is_set():
            log.info("session.switch_requested", mode=self.mode.value)
        self._switch_event.set()

    @property
    def switch_requested(self) -> bool:
        return self._switch_event.is_set()

    async def wait_for_switch(self) -> None:
        await self._switch_event.wait()

    def apply(self, request: ModeChangeRequest) -> None:
        """Record the configuration the agent is now running with."""
        self.current_request = request

    # ── Agent state ───────────────────────────────────────────────────────────

    def on_session_found(self, agent_session_id: str) -> None:
        """The agent reported (or we discovered) its own resumable session id."""
        if agent_session_id == self.agent_session_id:
            return
        self.agent_session_id = agent_session_id
        log.info("session.agent_session_found", agent_session_id=agent_session_id)
        self.relay.update_metadata({"agentSessionId": agent_session_id})

    def on_thinking_change(self, thinking: bool) -> None:
        self.thinking = thinking

    def keep_alive(self) -> None:
        self.relay.keep_alive(self.thinking, self.mode.value)

    # ── Inbound ───────────────────────────────────────────────────────────────

    def _handle_user_message(self, message: MobileUserMessage) -> None:
        request = self.current_request
        if message.meta is not None:
            if message.meta.permission_mode in VALID_PERMISSION_MODES:
                request = replace(request, permission_mode=message.meta.permission_mode)
            if message.meta.model is not None:
                request = replace(request, model=message.meta.model or None)
        self.queue.enqueue(request.with_prompt(message.content.text))

        if self.mode is Mode.LOCAL:
            self.request_switch()

    def _handle_session_event(self, event: Any) -> None:
        if isinstance(event, SwitchEvent):
            if event.mode != self.mode.value:
                self.request_switch()
        elif isinstance(event, PermissionModeChangedEvent):
            if event.mode not in VALID_PERMISSION_MODES:
                log.warning("session.unknown_permission_mode", mode=event.mode)
                return
            self.queue.enqueue(replace(self.current_request, permission_mode=event.mode, prompt=None))
        elif isinstance(event, MessageEvent):
            log.info("session.mobile_message", message=event.message[:80])
        elif isinstance(event, ReadyEvent):
            log.debug("session.mobile_ready")

    def __repr__(self) -> str:
        return f"<Session id={self.id} mode={self.mode.value}>"
