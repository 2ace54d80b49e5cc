"""
relay/api.py — Relay HTTP API Client

Creates (or resumes) a relay session over HTTP and turns the response into a
LiveSessionBackend.

get_or_create_session() distinguishes two failure classes:
  - relay unreachable (connection refused, DNS failure, timeout, HTTP 404,
    HTTP 5xx) → returns None. The caller enters offline mode; this is
    recoverable and is not an exception.
  - anything else (401, 403, malformed request) → raises RelayApiError.

Usage:
    async with RelayApiClient(settings.server_url, token) as api:
        record = await api.get_or_create_session(tag, metadata, state)
        backend = api.session_sync_client(record) if record else None
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from exceptions import RelayApiError
from observability.logger import get_logger
from relay.backends import LiveSessionBackend

log = get_logger(__name__)

Notify = Callable[[str], None]


@dataclass
class RelaySessionRecord:
    """Session row returned by the relay."""
    id: str
    tag: str
    metadata: dict[str, Any] = field(default_factory=dict)
    agent_state: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> "RelaySessionRecord":
        session = body.get("session", body)
        return cls(
            id=session["id"],
            tag=session.get("tag", ""),
            metadata=session.get("metadata") or {},
            agent_state=session.get("agentState") or {},
        )


def _is_unreachable_status(status: int) -> bool:
    return status == 404 or status >= 500


class RelayApiClient:
    """Thin async HTTP client for the relay's session endpoints."""

    def __init__(
        self,
        server_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        notify: Optional[Notify] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self._auth_token = auth_token
        self._notify = notify
        self._reported_offline = False
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self._client = httpx.AsyncClient(
            base_url=self.server_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "RelayApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ─────────────────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────────────────

    async def get_or_create_session(
        self,
        tag: str,
        metadata: dict[str, Any],
        state: Optional[dict[str, Any]],
    ) -> Optional[RelaySessionRecord]:
        """Create or resume the session for `tag`. None means the relay is unreachable."""
        try:
            resp = await self._client.post(
                "/v1/sessions",
                json={"tag": tag, "metadata": metadata, "agentState": state},
            )
            resp.raise_for_status()
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as e:
            self._offline(f"{type(e).__name__}: {e}")
            return None
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if _is_unreachable_status(status):
                self._offline(f"Session creation failed: {status}")
                return None
            raise RelayApiError(
                f"Failed to get or create session: HTTP {status}", status_code=status
            ) from e
        except httpx.HTTPError as e:
            raise RelayApiError(f"Failed to get or create session: {e}") from e

        record = RelaySessionRecord.from_response(resp.json())
        self._reported_offline = False
        log.info("relay_api.session_ready", session_id=record.id, tag=tag)
        return record

    def session_sync_client(self, record: RelaySessionRecord) -> LiveSessionBackend:
        """Open the live WebSocket backend for a session record."""
        backend = LiveSessionBackend(
            session_id=record.id,
            stream_url=self.stream_url(record.id),
            auth_token=self._auth_token,
            metadata=record.metadata,
            agent_state=record.agent_state,
        )
        return backend.start()

    def stream_url(self, session_id: str) -> str:
        base = self.server_url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/v1/sessions/{session_id}/stream"

    # ─────────────────────────────────────────────────────────────────────────
    # Connectivity
    # ─────────────────────────────────────────────────────────────────────────

    async def probe(self, timeout: float = 5.0) -> bool:
        """Return True if the relay answers at all (any HTTP status)."""
        try:
            await self._client.get("/health", timeout=timeout)
            return True
        except httpx.HTTPError:
            return False

    def _offline(self, detail: str) -> None:
        log.warning("relay_api.unreachable", server_url=self.server_url, detail=detail)
        # notify once per offline period; reconnection attempts reuse this client
        if self._notify is not None and not self._reported_offline:
            self._reported_offline = True
            self._notify(f"⚠️  Relay server unreachable ({detail}); continuing offline.")
