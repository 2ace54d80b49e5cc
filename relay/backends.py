"""
relay/backends.py — Session Backends (offline stub / live)

A session backend is the CLI's handle on one relay session. The orchestrator
only ever talks to the SessionBackend interface, and there are exactly two
implementations:

  - OfflineSessionBackend: every outbound call is a no-op. Used while the
    relay is unreachable so agent output is dropped instead of raising.
  - LiveSessionBackend: a WebSocket to the relay. Outbound calls are
    fire-and-forget: frames go onto a queue drained by a sender task.

Swapping from offline to live is a plain reference reassignment on the
Session; no backend is ever mutated into the other.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from exceptions import InvalidInboundMessageError
from observability.logger import get_logger
from relay.protocol import (
    FrameType,
    MobileAgentMessage,
    MobileUserMessage,
    RelayFrame,
    make_agent_message,
    make_keep_alive,
    make_session_event,
    parse_session_event,
    parse_user_message,
)

log = get_logger(__name__)

UserMessageHandler = Callable[[MobileUserMessage], None]
SessionEventHandler = Callable[[Any], None]


class SessionBackend(ABC):
    """Interface shared by the offline stub and the live relay connection."""

    session_id: str

    @property
    @abstractmethod
    def is_offline(self) -> bool: ...

    @abstractmethod
    def send_agent_message(self, message: MobileAgentMessage) -> None: ...

    @abstractmethod
    def send_session_event(self, event: dict[str, Any]) -> None: ...

    @abstractmethod
    def send_session_death(self) -> None: ...

    @abstractmethod
    def update_metadata(self, changes: dict[str, Any]) -> None: ...

    @abstractmethod
    def update_agent_state(self, changes: dict[str, Any]) -> None: ...

    @abstractmethod
    def keep_alive(self, thinking: bool, mode: str) -> None: ...

    @abstractmethod
    async def request_control_transfer(self) -> None: ...

    @abstractmethod
    def on_user_message(self, handler: UserMessageHandler) -> None: ...

    @abstractmethod
    def on_session_event(self, handler: SessionEventHandler) -> None: ...

    @abstractmethod
    async def flush(self, timeout: float = 5.0) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# Offline stub
# ─────────────────────────────────────────────────────────────────────────────

class OfflineSessionBackend(SessionBackend):
    """No-op backend used until the relay becomes reachable."""

    def __init__(self, session_tag: str) -> None:
        self.session_id = f"offline-{session_tag}"

    @property
    def is_offline(self) -> bool:
        return True

    def send_agent_message(self, message: MobileAgentMessage) -> None:
        pass

    def send_session_event(self, event: dict[str, Any]) -> None:
        pass

    def send_session_death(self) -> None:
        pass

    def update_metadata(self, changes: dict[str, Any]) -> None:
        pass

    def update_agent_state(self, changes: dict[str, Any]) -> None:
        pass

    def keep_alive(self, thinking: bool, mode: str) -> None:
        pass

    async def request_control_transfer(self) -> None:
        pass

    def on_user_message(self, handler: UserMessageHandler) -> None:
        pass

    def on_session_event(self, handler: SessionEventHandler) -> None:
        pass

    async def flush(self, timeout: float = 5.0) -> None:
        pass

    async def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<OfflineSessionBackend {self.session_id}>"


# ─────────────────────────────────────────────────────────────────────────────
# Live relay connection
# ─────────────────────────────────────────────────────────────────────────────

class LiveSessionBackend(SessionBackend):
    """
    WebSocket-backed relay session.

    start() schedules the connection task; frames sent before the socket
    opens wait on the outbound queue. When the socket drops, wait_closed()
    returns and the caller decides whether to start a new reconnection cycle.
    """

    def __init__(
        self,
        session_id: str,
        stream_url: str,
        auth_token: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        agent_state: Optional[dict[str, Any]] = None,
    ) -> None:
        self.session_id = session_id
        self._url = stream_url
        self._auth_token = auth_token
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.agent_state: dict[str, Any] = dict(agent_state or {})

        self._outbound: asyncio.Queue[RelayFrame] = asyncio.Queue()
        self._user_handler: Optional[UserMessageHandler] = None
        self._event_handler: Optional[SessionEventHandler] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._closed = asyncio.Event()

    @property
    def is_offline(self) -> bool:
        return False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> "LiveSessionBackend":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"relay-{self.session_id}")
        return self

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def flush(self, timeout: float = 5.0) -> None:
        """Wait until every queued frame was handed to the socket."""
        if self._closed.is_set():
            return
        try:
            await asyncio.wait_for(self._outbound.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("relay.flush_timeout", pending=self._outbound.qsize())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._closed.set()
        log.info("relay.closed", session_id=self.session_id)

    async def _run(self) -> None:
        headers = {}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        try:
            async with websockets.connect(
                self._url, additional_headers=headers, max_size=2**20
            ) as ws:
                log.info("relay.connected", session_id=self.session_id)
                sender = asyncio.create_task(self._sender_loop(ws))
                try:
                    await self._reader_loop(ws)
                finally:
                    sender.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await sender
        except (OSError, WebSocketException) as e:
            log.warning("relay.connection_failed", session_id=self.session_id, error=str(e))
        finally:
            self._closed.set()

    # ── Loops ─────────────────────────────────────────────────────────────────

    async def _sender_loop(self, ws: Any) -> None:
        while True:
            frame = await self._outbound.get()
            try:
                await ws.send(frame.to_json())
            finally:
                self._outbound.task_done()

    async def _reader_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    frame = RelayFrame.from_json(raw)
                except InvalidInboundMessageError as e:
                    log.warning("relay.invalid_frame", session_id=self.session_id, error=str(e))
                    continue
                self._dispatch(frame)
        except ConnectionClosed:
            log.warning("relay.connection_lost", session_id=self.session_id)

    def _dispatch(self, frame: RelayFrame) -> None:
        try:
            if frame.type == FrameType.USER_MESSAGE.value:
                message = parse_user_message(frame.data)
                if self._user_handler is not None:
                    self._user_handler(message)
            elif frame.type == FrameType.MOBILE_EVENT.value:
                event = parse_session_event(frame.data)
                if self._event_handler is not None:
                    self._event_handler(event)
            elif frame.type == FrameType.ERROR.value:
                log.warning("relay.server_error", data=frame.data)
            else:
                log.debug("relay.frame_ignored", type=frame.type)
        except InvalidInboundMessageError as e:
            log.warning("relay.invalid_inbound", type=frame.type, error=str(e))

    # ── Outbound (fire-and-forget) ────────────────────────────────────────────

    def _send(self, frame: RelayFrame) -> None:
        if self._closed.is_set():
            log.debug("relay.send_after_close", type=frame.type)
            return
        self._outbound.put_nowait(frame)

    def send_agent_message(self, message: MobileAgentMessage) -> None:
        self._send(make_agent_message(self.session_id, message))

    def send_session_event(self, event: dict[str, Any]) -> None:
        self._send(make_session_event(self.session_id, event))

    def send_session_death(self) -> None:
        self._send(RelayFrame(type=FrameType.SESSION_DEATH.value, session_id=self.session_id))

    def update_metadata(self, changes: dict[str, Any]) -> None:
        self.metadata.update(changes)
        self._send(RelayFrame(
            type=FrameType.UPDATE_METADATA.value,
            session_id=self.session_id,
            data=dict(self.metadata),
        ))

    def update_agent_state(self, changes: dict[str, Any]) -> None:
        self.agent_state.update(changes)
        self._send(RelayFrame(
            type=FrameType.UPDATE_STATE.value,
            session_id=self.session_id,
            data=dict(self.agent_state),
        ))

    def keep_alive(self, thinking: bool, mode: str) -> None:
        self._send(make_keep_alive(self.session_id, thinking, mode))

    async def request_control_transfer(self) -> None:
        self._send(RelayFrame(type=FrameType.CONTROL_TRANSFER.value, session_id=self.session_id))

    def on_user_message(self, handler: UserMessageHandler) -> None:
        self._user_handler = handler

    def on_session_event(self, handler: SessionEventHandler) -> None:
        self._event_handler = handler

    def __repr__(self) -> str:
        return f"<LiveSessionBackend {self.session_id}>"
