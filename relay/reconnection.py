"""
relay/reconnection.py — Offline Mode + Background Reconnection

When the relay cannot be reached at startup the CLI keeps running on an
OfflineSessionBackend and a ReconnectionManager retries in the background:

    disconnected → retrying → connected
                       └────→ stopped      (cancelled before success)

The first successful attempt hands the live backend to on_session_swap and
the manager retires. A retired manager is never reused: if the live
connection drops later, the caller starts a fresh manager.

Usage:
    result = setup_offline_reconnection(
        api=api, tag=tag, metadata=metadata, state=None,
        response=await api.get_or_create_session(tag, metadata, None),
        on_session_swap=orchestrator.swap_relay,
        notify=console.notify,
    )
    ...
    if result.handle:
        await result.handle.aclose()
"""

from __future__ import annotations

import asyncio
import contextlib
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from config.settings import ReconnectConfig
from exceptions import ReconnectionRetiredError, RelayUnavailableError
from observability.logger import get_logger
from relay.api import RelayApiClient, RelaySessionRecord
from relay.backends import OfflineSessionBackend, SessionBackend

log = get_logger(__name__)

SessionFactory = Callable[[], Awaitable[Optional[SessionBackend]]]
ConnectivityProbe = Callable[[], Awaitable[bool]]
SwapCallback = Callable[[SessionBackend], None]
Notify = Callable[[str], None]


class ReconnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    RETRYING     = "retrying"
    CONNECTED    = "connected"
    STOPPED      = "stopped"


class ReconnectionManager:
    """
    Background retry loop that produces a live session once the relay is back.

    Attributes:
        endpoint:         Relay URL being retried (for display/logging).
        attempts:         Number of attempts made so far.
        last_attempt_at:  time.time() of the most recent attempt, or None.
        on_session_swap:  Outcome callback, invoked exactly once on success.
    """

    def __init__(
        self,
        endpoint: str,
        factory: SessionFactory,
        on_session_swap: SwapCallback,
        notify: Notify,
        probe: Optional[ConnectivityProbe] = None,
        config: Optional[ReconnectConfig] = None,
    ) -> None:
        self.endpoint = endpoint
        self.on_session_swap = on_session_swap
        self.attempts = 0
        self.last_attempt_at: Optional[float] = None
        self.state = ReconnectionState.DISCONNECTED

        self._factory = factory
        self._notify = notify
        self._probe = probe
        self._config = config or ReconnectConfig()
        self._task: Optional[asyncio.Task[Optional[SessionBackend]]] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> "ReconnectionManager":
        if self.state is not ReconnectionState.DISCONNECTED:
            raise ReconnectionRetiredError(
                f"Reconnection manager is {self.state.value}; create a new one"
            )
        self.state = ReconnectionState.RETRYING
        self._notify(
            f"📴 Relay {self.endpoint} unreachable. Working offline; "
            f"will reconnect in the background."
        )
        log.info("reconnection.started", endpoint=self.endpoint)
        self._task = asyncio.create_task(self._run(), name="relay-reconnection")
        self._task.add_done_callback(self._on_task_done)
        return self

    def cancel(self) -> None:
        """Stop retrying immediately. No-op once connected."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self.state is ReconnectionState.RETRYING:
            self.state = ReconnectionState.STOPPED
            log.info("reconnection.cancelled", attempts=self.attempts)

    async def aclose(self) -> None:
        """Cancel and wait until the background task has fully exited."""
        self.cancel()
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(self._task, return_exceptions=True)

    async def wait(self) -> Optional[SessionBackend]:
        """Wait for the outcome: the live backend, or None if cancelled."""
        if self._task is None:
            return None
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return None
            raise

    # ── Retry loop ────────────────────────────────────────────────────────────

    def next_delay(self) -> float:
        """Backoff: min(base_delay * 2^attempts + jitter, max_delay)."""
        cfg = self._config
        jitter = random.uniform(0, cfg.jitter) if cfg.jitter else 0.0
        exponent = min(self.attempts, 16)
        return min(cfg.base_delay * (2 ** exponent) + jitter, cfg.max_delay)

    async def _run(self) -> Optional[SessionBackend]:
        while True:
            delay = self.next_delay()
            await asyncio.sleep(delay)

            self.attempts += 1
            self.last_attempt_at = time.time()
            log.debug("reconnection.attempt", attempt=self.attempts, delay_s=round(delay, 2))
            self._notify(f"🔄 Reconnecting to relay (attempt {self.attempts})...")

            if self._probe is not None and not await self._probe():
                continue

            try:
                backend = await self._factory()
            except RelayUnavailableError as e:
                log.debug("reconnection.still_unavailable", attempt=self.attempts, error=str(e))
                continue
            if backend is None:
                continue

            self.state = ReconnectionState.CONNECTED
            log.info(
                "reconnection.connected",
                attempts=self.attempts,
                session_id=backend.session_id,
            )
            self.on_session_swap(backend)
            self._notify("✅ Reconnected to relay; session is live again.")
            return backend

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.state = ReconnectionState.STOPPED
            log.error(
                "reconnection.failed",
                error=str(exc),
                error_type=type(exc).__name__,
                attempts=self.attempts,
            )


# ─────────────────────────────────────────────────────────────────────────────
# Offline setup helper
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class OfflineSetupResult:
    backend: SessionBackend
    handle: Optional[ReconnectionManager]
    is_offline: bool


def setup_offline_reconnection(
    api: RelayApiClient,
    tag: str,
    metadata: dict[str, Any],
    state: Optional[dict[str, Any]],
    response: Optional[RelaySessionRecord],
    on_session_swap: SwapCallback,
    notify: Notify,
    config: Optional[ReconnectConfig] = None,
) -> OfflineSetupResult:
    """
    Pick the backend for a freshly created session.

    response is the result of the initial get_or_create_session(); None means
    the relay was unreachable, so an offline stub is returned at once and a
    reconnection manager is started.
    """
    if response is not None:
        return OfflineSetupResult(
            backend=api.session_sync_client(response),
            handle=None,
            is_offline=False,
        )

    async def factory() -> SessionBackend:
        record = await api.get_or_create_session(tag, metadata, state)
        if record is None:
            raise RelayUnavailableError("Relay unavailable")
        return api.session_sync_client(record)

    cfg = config or ReconnectConfig()

    async def probe() -> bool:
        return await api.probe(timeout=cfg.probe_timeout_seconds)

    handle = ReconnectionManager(
        endpoint=api.server_url,
        factory=factory,
        on_session_swap=on_session_swap,
        notify=notify,
        probe=probe,
        config=cfg,
    ).start()
    return OfflineSetupResult(
        backend=OfflineSessionBackend(tag),
        handle=handle,
        is_offline=True,
    )
