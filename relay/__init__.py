"""
relay/ — Relay Server Connectivity

Everything between the CLI and the session-sync relay: the HTTP API client,
the WebSocket session backends (live and offline), the wire protocol, the
agent-event normalizer and background reconnection.
"""

from relay.protocol import FrameType, NormalizedPayload, RelayFrame
from relay.normalizer import MessageAdapter
from relay.backends import LiveSessionBackend, OfflineSessionBackend, SessionBackend
from relay.api import RelayApiClient, RelaySessionRecord
from relay.reconnection import ReconnectionManager, ReconnectionState, setup_offline_reconnection

__all__ = [
    "FrameType",
    "RelayFrame",
    "NormalizedPayload",
    "MessageAdapter",
    "SessionBackend",
    "LiveSessionBackend",
    "OfflineSessionBackend",
    "RelayApiClient",
    "RelaySessionRecord",
    "ReconnectionManager",
    "ReconnectionState",
    "setup_offline_reconnection",
]
