"""
relay/protocol.py — Relay Wire Protocol

Typed message schema for everything that crosses the relay boundary:

  - RelayFrame: the WebSocket envelope between the CLI and the relay server.
    JSON with a `type` field, a short unique `id`, the session id and a
    free-form `data` payload.
  - NormalizedPayload: the one canonical shape every agent event takes
    before it leaves the process. The mobile client never sees
    agent-specific shapes.
  - Mobile messages: the agent→mobile envelope and the mobile→CLI user
    message and session-event shapes.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from exceptions import InvalidInboundMessageError


# ─────────────────────────────────────────────────────────────────────────────
# Frame types
# ─────────────────────────────────────────────────────────────────────────────

class FrameType(str, Enum):
    """All supported frame types on the relay WebSocket."""

    # CLI → Relay
    AGENT_MESSAGE     = "agent-message"
    SESSION_EVENT     = "session-event"
    SESSION_DEATH     = "session-death"
    UPDATE_METADATA   = "update-metadata"
    UPDATE_STATE      = "update-state"
    KEEP_ALIVE        = "keep-alive"
    CONTROL_TRANSFER  = "control-transfer"

    # Relay → CLI
    USER_MESSAGE      = "user-message"
    MOBILE_EVENT      = "mobile-event"
    ERROR             = "error"


@dataclass
class RelayFrame:
    """
    Universal envelope on the relay WebSocket.

    All fields are optional except `type`. Extra payload goes in `data`.
    """
    type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    session_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize to JSON string, dropping None fields."""
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "RelayFrame":
        """Parse a JSON string into a RelayFrame. Raises InvalidInboundMessageError."""
        try:
            d = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
            raise InvalidInboundMessageError(f"Frame is not valid JSON: {exc}") from exc
        if not isinstance(d, dict):
            raise InvalidInboundMessageError(f"Frame must be a JSON object, got {type(d).__name__}")
        data = d.get("data")
        return cls(
            type=str(d.get("type", FrameType.ERROR.value)),
            id=str(d.get("id") or str(uuid.uuid4())[:8]),
            session_id=d.get("session_id"),
            data=data if isinstance(data, dict) else {},
        )


# ─────────────────────────────────────────────────────────────────────────────
# Outbound: normalized agent payload
# ─────────────────────────────────────────────────────────────────────────────

AgentType = Literal["claude", "codex", "gemini", "opencode"]


class NormalizedPayload(BaseModel):
    """
    Canonical outbound message, discriminated by `type`.

    Exactly one group of fields is populated per message type; the rest
    stay None and are omitted on the wire by to_wire().
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str

    text: Optional[str] = None

    status: Optional[str] = None
    status_detail: Optional[str] = Field(default=None, alias="statusDetail")

    tool_name: Optional[str] = Field(default=None, alias="toolName")
    tool_args: Optional[Any] = Field(default=None, alias="toolArgs")
    tool_call_id: Optional[str] = Field(default=None, alias="toolCallId")
    tool_result: Optional[Any] = Field(default=None, alias="toolResult")

    permission_id: Optional[str] = Field(default=None, alias="permissionId")
    permission_reason: Optional[str] = Field(default=None, alias="permissionReason")
    permission_payload: Optional[Any] = Field(default=None, alias="permissionPayload")
    permission_approved: Optional[bool] = Field(default=None, alias="permissionApproved")

    edit_description: Optional[str] = Field(default=None, alias="editDescription")
    edit_diff: Optional[str] = Field(default=None, alias="editDiff")
    edit_path: Optional[str] = Field(default=None, alias="editPath")

    terminal_data: Optional[str] = Field(default=None, alias="terminalData")

    event_name: Optional[str] = Field(default=None, alias="eventName")
    event_payload: Optional[Any] = Field(default=None, alias="eventPayload")

    token_count: Optional[dict[str, Any]] = Field(default=None, alias="tokenCount")

    raw: Optional[Any] = Field(default=None, alias="_raw")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class MobileMessageMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sent_from: str = Field(default="cli", alias="sentFrom")
    permission_mode: Optional[str] = Field(default=None, alias="permissionMode")
    model: Optional[str] = None


class MobileAgentContent(BaseModel):
    type: AgentType
    data: dict[str, Any]


class MobileAgentMessage(BaseModel):
    """Agent → mobile envelope."""
    role: Literal["agent"] = "agent"
    content: MobileAgentContent
    meta: MobileMessageMeta = Field(default_factory=MobileMessageMeta)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ─────────────────────────────────────────────────────────────────────────────
# Inbound: mobile → CLI
# ─────────────────────────────────────────────────────────────────────────────

class MobileUserContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class MobileUserMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["user"] = "user"
    content: MobileUserContent
    local_key: Optional[str] = Field(default=None, alias="localKey")
    meta: Optional[MobileMessageMeta] = None


class SwitchEvent(BaseModel):
    type: Literal["switch"]
    mode: Literal["local", "remote"]


class MessageEvent(BaseModel):
    type: Literal["message"]
    message: str


class PermissionModeChangedEvent(BaseModel):
    type: Literal["permission-mode-changed"]
    mode: str


class ReadyEvent(BaseModel):
    type: Literal["ready"]


MobileSessionEvent = Annotated[
    Union[SwitchEvent, MessageEvent, PermissionModeChangedEvent, ReadyEvent],
    Field(discriminator="type"),
]

_session_event_adapter: TypeAdapter[Any] = TypeAdapter(MobileSessionEvent)


def parse_user_message(raw: dict[str, Any]) -> MobileUserMessage:
    """Validate an inbound user message. Raises InvalidInboundMessageError."""
    try:
        return MobileUserMessage.model_validate(raw)
    except ValidationError as exc:
        raise InvalidInboundMessageError(f"Invalid user message: {exc}") from exc


def parse_session_event(
    raw: dict[str, Any],
) -> SwitchEvent | MessageEvent | PermissionModeChangedEvent | ReadyEvent:
    """Validate an inbound session event. Raises InvalidInboundMessageError."""
    try:
        return _session_event_adapter.validate_python(raw)
    except ValidationError as exc:
        raise InvalidInboundMessageError(f"Invalid session event: {exc}") from exc


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers: CLI → relay frames
# ─────────────────────────────────────────────────────────────────────────────

def make_agent_message(session_id: str, message: MobileAgentMessage) -> RelayFrame:
    return RelayFrame(
        type=FrameType.AGENT_MESSAGE.value,
        session_id=session_id,
        data=message.to_wire(),
    )


def make_session_event(session_id: str, event: dict[str, Any]) -> RelayFrame:
    """Build a SESSION_EVENT frame; event is one of the MobileSessionEvent shapes."""
    return RelayFrame(
        type=FrameType.SESSION_EVENT.value,
        session_id=session_id,
        data={"id": str(uuid.uuid4()), "type": "event", "data": event},
    )


def make_keep_alive(session_id: str, thinking: bool, mode: str) -> RelayFrame:
    return RelayFrame(
        type=FrameType.KEEP_ALIVE.value,
        session_id=session_id,
        data={"thinking": thinking, "mode": mode},
    )
