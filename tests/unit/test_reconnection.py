"""
tests/unit/test_reconnection.py — ReconnectionManager + setup_offline_reconnection

Covers:
  - success swaps the session exactly once and moves to CONNECTED
  - None / RelayUnavailableError results keep retrying
  - a failed probe skips the factory for that attempt
  - unexpected factory errors stop the manager
  - cancel()/aclose() stop it; a retired manager refuses to restart
  - backoff delay bounds
  - setup_offline_reconnection() in both branches
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config.settings import ReconnectConfig
from exceptions import ReconnectionRetiredError, RelayUnavailableError
from relay.api import RelaySessionRecord
from relay.backends import OfflineSessionBackend
from relay.reconnection import (
    ReconnectionManager,
    ReconnectionState,
    setup_offline_reconnection,
)


FAST = ReconnectConfig(base_delay=0.001, max_delay=0.005, jitter=0)


def _backend(session_id="live-1"):
    backend = MagicMock()
    backend.session_id = session_id
    return backend


def _manager(factory, probe=None, config=FAST):
    swap = MagicMock()
    notify = MagicMock()
    mgr = ReconnectionManager(
        endpoint="https://relay.test",
        factory=factory,
        on_session_swap=swap,
        notify=notify,
        probe=probe,
        config=config,
    )
    return mgr, swap, notify


# ── Retry loop ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestReconnectionLoop:
    async def test_success_swaps_once(self):
        live = _backend()
        mgr, swap, notify = _manager(AsyncMock(return_value=live))
        mgr.start()
        result = await asyncio.wait_for(mgr.wait(), timeout=1)

        assert result is live
        swap.assert_called_once_with(live)
        assert mgr.state is ReconnectionState.CONNECTED
        assert mgr.attempts == 1
        assert mgr.last_attempt_at is not None
        messages = [c.args[0] for c in notify.call_args_list]
        assert "unreachable" in messages[0]
        assert "attempt 1" in messages[1]
        assert "Reconnected" in messages[-1]

    async def test_retries_until_available(self):
        live = _backend()
        factory = AsyncMock(side_effect=[None, RelayUnavailableError("down"), live])
        mgr, swap, _ = _manager(factory)
        mgr.start()

        assert await asyncio.wait_for(mgr.wait(), timeout=1) is live
        assert factory.await_count == 3
        assert mgr.attempts == 3
        swap.assert_called_once_with(live)

    async def test_failed_probe_skips_factory(self):
        live = _backend()
        factory = AsyncMock(return_value=live)
        probe = AsyncMock(side_effect=[False, False, True])
        mgr, _, _ = _manager(factory, probe=probe)
        mgr.start()

        await asyncio.wait_for(mgr.wait(), timeout=1)
        assert probe.await_count == 3
        assert factory.await_count == 1

    async def test_unexpected_error_stops_manager(self):
        mgr, swap, _ = _manager(AsyncMock(side_effect=ValueError("bad config")))
        mgr.start()

        with pytest.raises(ValueError):
            await asyncio.wait_for(mgr.wait(), timeout=1)
        await asyncio.sleep(0)
        assert mgr.state is ReconnectionState.STOPPED
        swap.assert_not_called()

    async def test_cancel_stops(self):
        mgr, swap, _ = _manager(
            AsyncMock(return_value=None),
            config=ReconnectConfig(base_delay=10, max_delay=10, jitter=0),
        )
        mgr.start()
        assert mgr.state is ReconnectionState.RETRYING
        await mgr.aclose()

        assert mgr.state is ReconnectionState.STOPPED
        assert await mgr.wait() is None
        swap.assert_not_called()

    async def test_retired_manager_cannot_restart(self):
        mgr, _, _ = _manager(AsyncMock(return_value=_backend()))
        mgr.start()
        await asyncio.wait_for(mgr.wait(), timeout=1)
        with pytest.raises(ReconnectionRetiredError):
            mgr.start()

    async def test_cancel_after_connect_keeps_connected(self):
        mgr, _, _ = _manager(AsyncMock(return_value=_backend()))
        mgr.start()
        await asyncio.wait_for(mgr.wait(), timeout=1)
        mgr.cancel()
        assert mgr.state is ReconnectionState.CONNECTED


class TestBackoff:
    def test_first_delay_is_base(self):
        cfg = ReconnectConfig(base_delay=1.0, max_delay=30.0, jitter=0)
        mgr, _, _ = _manager(AsyncMock(), config=cfg)
        assert mgr.next_delay() == 1.0

    def test_grows_and_caps(self):
        cfg = ReconnectConfig(base_delay=1.0, max_delay=30.0, jitter=0)
        mgr, _, _ = _manager(AsyncMock(), config=cfg)
        mgr.attempts = 3
        assert mgr.next_delay() == 8.0
        mgr.attempts = 100
        assert mgr.next_delay() == 30.0

    def test_jitter_bounded(self):
        cfg = ReconnectConfig(base_delay=1.0, max_delay=30.0, jitter=0.5)
        mgr, _, _ = _manager(AsyncMock(), config=cfg)
        for _ in range(20):
            assert 1.0 <= mgr.next_delay() <= 1.5

    def test_not_started_wait_is_none(self):
        mgr, _, _ = _manager(AsyncMock())
        assert mgr.state is ReconnectionState.DISCONNECTED
        assert asyncio.run(mgr.wait()) is None


# ── setup_offline_reconnection ────────────────────────────────────────────────

@pytest.mark.asyncio
class TestSetupOfflineReconnection:
    async def test_live_response_returns_live_backend(self):
        api = MagicMock()
        live = _backend("s1")
        api.session_sync_client.return_value = live
        record = RelaySessionRecord(id="s1", tag="t")

        result = setup_offline_reconnection(
            api=api, tag="t", metadata={}, state=None, response=record,
            on_session_swap=MagicMock(), notify=MagicMock(),
        )

        assert result.backend is live
        assert result.handle is None
        assert result.is_offline is False

    async def test_no_response_goes_offline_then_reconnects(self):
        live = _backend("s2")
        record = RelaySessionRecord(id="s2", tag="t")
        api = MagicMock()
        api.server_url = "https://relay.test"
        api.probe = AsyncMock(return_value=True)
        api.get_or_create_session = AsyncMock(side_effect=[None, record])
        api.session_sync_client.return_value = live
        swap = MagicMock()

        result = setup_offline_reconnection(
            api=api, tag="t", metadata={"path": "/p"}, state=None, response=None,
            on_session_swap=swap, notify=MagicMock(), config=FAST,
        )

        assert isinstance(result.backend, OfflineSessionBackend)
        assert result.backend.session_id == "offline-t"
        assert result.is_offline is True
        assert await asyncio.wait_for(result.handle.wait(), timeout=1) is live
        swap.assert_called_once_with(live)
        api.get_or_create_session.assert_awaited_with("t", {"path": "/p"}, None)
        api.probe.assert_awaited_with(timeout=FAST.probe_timeout_seconds)

    async def test_handle_can_be_closed(self):
        api = MagicMock()
        api.server_url = "https://relay.test"
        api.probe = AsyncMock(return_value=False)
        with patch("relay.reconnection.log"):
            result = setup_offline_reconnection(
                api=api, tag="t", metadata={}, state=None, response=None,
                on_session_swap=MagicMock(), notify=MagicMock(), config=FAST,
            )
            await asyncio.sleep(0.02)
            await result.handle.aclose()
        assert result.handle.state is ReconnectionState.STOPPED
