"""
relay/normalizer.py — Agent Event → NormalizedPayload

Every agent-specific event is mapped to exactly one NormalizedPayload
before it leaves the process. The mapping table is closed: a kind without
an entry, or a mapped kind whose fields have the wrong types, still
normalizes, to a generic "event" payload carrying the original kind and
message, so nothing is dropped and nothing raises.

Usage:
    adapter = MessageAdapter(agent_type="codex")
    mobile = adapter.to_mobile({"type": "model-output", "textDelta": "hi"})
    relay.send_agent_message(mobile)
"""

from __future__ import annotations

from typing import Any, Callable

from pydantic import ValidationError

from observability.logger import get_logger
from relay.protocol import (
    AgentType,
    MobileAgentContent,
    MobileAgentMessage,
    MobileMessageMeta,
    NormalizedPayload,
)

log = get_logger(__name__)

AgentMessage = dict[str, Any]
_Normalizer = Callable[[AgentMessage], dict[str, Any]]


def _model_output(msg: AgentMessage) -> dict[str, Any]:
    text = msg.get("textDelta")
    if text is None:
        text = msg.get("fullText")
    return {"text": text}


def _status(msg: AgentMessage) -> dict[str, Any]:
    return {"status": msg.get("status"), "status_detail": msg.get("detail")}


def _tool_call(msg: AgentMessage) -> dict[str, Any]:
    return {
        "tool_name": msg.get("toolName"),
        "tool_args": msg.get("args"),
        "tool_call_id": msg.get("callId"),
    }


def _tool_result(msg: AgentMessage) -> dict[str, Any]:
    return {
        "tool_name": msg.get("toolName"),
        "tool_result": msg.get("result"),
        "tool_call_id": msg.get("callId"),
    }


def _permission_request(msg: AgentMessage) -> dict[str, Any]:
    return {
        "permission_id": msg.get("id"),
        "permission_reason": msg.get("reason"),
        "permission_payload": msg.get("payload"),
    }


def _permission_response(msg: AgentMessage) -> dict[str, Any]:
    return {"permission_id": msg.get("id"), "permission_approved": msg.get("approved")}


def _fs_edit(msg: AgentMessage) -> dict[str, Any]:
    return {
        "edit_description": msg.get("description"),
        "edit_diff": msg.get("diff"),
        "edit_path": msg.get("path"),
    }


def _terminal_output(msg: AgentMessage) -> dict[str, Any]:
    return {"terminal_data": msg.get("data")}


def _event(msg: AgentMessage) -> dict[str, Any]:
    return {"event_name": msg.get("name"), "event_payload": msg.get("payload")}


def _token_count(msg: AgentMessage) -> dict[str, Any]:
    return {"token_count": {k: v for k, v in msg.items() if k != "type"}}


def _exec_approval_request(msg: AgentMessage) -> dict[str, Any]:
    return {"tool_call_id": msg.get("call_id"), "tool_name": "exec", "tool_args": dict(msg)}


def _patch_apply_begin(msg: AgentMessage) -> dict[str, Any]:
    return {
        "tool_call_id": msg.get("call_id"),
        "tool_name": "patch",
        "tool_args": {"changes": msg.get("changes"), "autoApproved": msg.get("auto_approved")},
    }


def _patch_apply_end(msg: AgentMessage) -> dict[str, Any]:
    return {
        "tool_call_id": msg.get("call_id"),
        "tool_result": {
            "success": msg.get("success"),
            "stdout": msg.get("stdout"),
            "stderr": msg.get("stderr"),
        },
    }


def _reasoning(msg: AgentMessage) -> dict[str, Any]:
    return {"text": msg.get("text")}


# kind → field mapper. Closed table; see MessageAdapter.normalize for the fallback.
MAPPING_TABLE: dict[str, _Normalizer] = {
    "model-output":          _model_output,
    "status":                _status,
    "tool-call":             _tool_call,
    "tool-result":           _tool_result,
    "permission-request":    _permission_request,
    "permission-response":   _permission_response,
    "fs-edit":               _fs_edit,
    "terminal-output":       _terminal_output,
    "event":                 _event,
    "token-count":           _token_count,
    "exec-approval-request": _exec_approval_request,
    "patch-apply-begin":     _patch_apply_begin,
    "patch-apply-end":       _patch_apply_end,
    "reasoning":             _reasoning,
}


class MessageAdapter:
    """Transforms agent messages into the mobile wire format."""

    def __init__(self, agent_type: AgentType, include_raw: bool = False) -> None:
        self.agent_type = agent_type
        self.include_raw = include_raw

    def normalize(self, msg: AgentMessage) -> NormalizedPayload:
        kind = msg.get("type")
        mapper = MAPPING_TABLE.get(kind) if isinstance(kind, str) else None

        if mapper is not None:
            fields = {"type": kind, **mapper(msg)}
            try:
                return self._payload(fields, msg)
            except ValidationError as e:
                log.warning(
                    "normalizer.malformed_fields",
                    kind=kind,
                    agent_type=self.agent_type,
                    errors=e.error_count(),
                )
        else:
            log.debug("normalizer.unmapped_kind", kind=kind, agent_type=self.agent_type)

        return self._payload(
            {
                "type": "event",
                "event_name": kind if isinstance(kind, str) else "unknown",
                "event_payload": msg,
            },
            msg,
        )

    def _payload(self, fields: dict[str, Any], msg: AgentMessage) -> NormalizedPayload:
        if self.include_raw:
            fields["raw"] = msg
        return NormalizedPayload.model_validate(fields)

    def to_mobile(
        self,
        msg: AgentMessage,
        permission_mode: str | None = None,
        model: str | None = None,
    ) -> MobileAgentMessage:
        payload = self.normalize(msg)
        return MobileAgentMessage(
            content=MobileAgentContent(type=self.agent_type, data=payload.to_wire()),
            meta=MobileMessageMeta(sent_from="cli", permission_mode=permission_mode, model=model),
        )
