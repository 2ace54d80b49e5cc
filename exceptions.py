"""
exceptions.py — Tether Unified Error Hierarchy

All Tether-specific exceptions live here. Every layer of the stack
raises typed subclasses of TetherError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import AgentBinaryNotFoundError, RelayApiError

Hierarchy:
    TetherError
    ├── AgentError
    │   ├── AgentBinaryNotFoundError
    │   └── AgentSpawnError
    ├── RelayError
    │   ├── RelayApiError
    │   └── RelayUnavailableError
    ├── ReconnectionError
    │   └── ReconnectionRetiredError
    └── ProtocolError
        └── InvalidInboundMessageError

Note: a relay that cannot be reached at session creation is NOT an
exception. RelayApiClient.get_or_create_session() returns None for that
case and the caller enters offline mode.
"""

from __future__ import annotations


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TetherError(Exception):
    """Base class for all Tether exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent process layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(TetherError):
    """Base for agent subprocess errors."""


class AgentBinaryNotFoundError(AgentError):
    """The agent CLI binary could not be found on PATH."""

    def __init__(self, binary: str, message: str = "") -> None:
        self.binary = binary
        super().__init__(
            message or f"Agent binary '{binary}' not found. Is it installed and on your PATH?"
        )


class AgentSpawnError(AgentError):
    """The agent subprocess could not be started."""


# ─────────────────────────────────────────────────────────────────────────────
# Relay layer
# ─────────────────────────────────────────────────────────────────────────────

class RelayError(TetherError):
    """Base for relay server errors."""


class RelayApiError(RelayError):
    """The relay rejected a request for a reason other than being unreachable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RelayUnavailableError(RelayError):
    """The relay is still unreachable; raised inside reconnection attempts."""


# ─────────────────────────────────────────────────────────────────────────────
# Reconnection
# ─────────────────────────────────────────────────────────────────────────────

class ReconnectionError(TetherError):
    """Base for reconnection manager errors."""


class ReconnectionRetiredError(ReconnectionError):
    """start() was called on a manager that already swapped or was cancelled."""


# ─────────────────────────────────────────────────────────────────────────────
# Wire protocol
# ─────────────────────────────────────────────────────────────────────────────

class ProtocolError(TetherError):
    """Base for relay wire-protocol errors."""


class InvalidInboundMessageError(ProtocolError):
    """An inbound message from the mobile client failed validation."""


__all__ = [
    "TetherError",
    # Agent
    "AgentError",
    "AgentBinaryNotFoundError",
    "AgentSpawnError",
    # Relay
    "RelayError",
    "RelayApiError",
    "RelayUnavailableError",
    # Reconnection
    "ReconnectionError",
    "ReconnectionRetiredError",
    # Protocol
    "ProtocolError",
    "InvalidInboundMessageError",
]
