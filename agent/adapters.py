"""
agent/adapters.py — Agent CLI Adapters

One adapter per supported agent family. An adapter knows how to:

  - build the argv for local (interactive) and remote (headless) runs
  - translate one decoded stdout event into AgentMessage dicts
  - extract the agent's own resumable session id from an event
  - find the most recent resumable session for a working directory

AgentMessage dicts use the kinds understood by relay.normalizer plus three
internal kinds the remote launcher routes to the ReasoningProcessor instead
of the relay:

    reasoning-delta          {"text"}   incremental thinking text
    reasoning-complete       {"text"?}  end of the current thinking block
    reasoning-section-break  {}         a new thinking block is starting

Usage:
    adapter = create_adapter("claude", extra_args=["--continue"])
    argv = adapter.build_local_args(session)
"""

from __future__ import annotations

import json
import os
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from observability.logger import get_logger
from relay.protocol import AgentType

from agent.mode_queue import ModeChangeRequest
from agent.reasoning import CODEX_REASONING, GEMINI_REASONING, ReasoningProfile
from agent.session import Session

log = get_logger(__name__)

AgentMessage = dict[str, Any]

REASONING_DELTA = "reasoning-delta"
REASONING_COMPLETE = "reasoning-complete"
REASONING_SECTION_BREAK = "reasoning-section-break"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def decode_event(line: str) -> Optional[dict[str, Any]]:
    """Parse one stdout line as a JSON object. None for anything else."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def _extract_flag(
    args: list[str], flags: list[str], with_value: bool = False
) -> tuple[bool, Optional[str], list[str]]:
    """
    Find the first of `flags` in args and remove it.

    With with_value=True the flag is only extracted when followed by a value
    (an argument not starting with "-"); a bare flag is left in place.
    Returns (found, value, remaining_args).
    """
    for flag in flags:
        if flag not in args:
            continue
        index = args.index(flag)
        if with_value:
            if index + 1 < len(args) and not args[index + 1].startswith("-"):
                value = args[index + 1]
                return True, value, args[:index] + args[index + 2:]
            return False, None, args
        return True, None, args[:index] + args[index + 1:]
    return False, None, args


class AgentAdapter(ABC):
    """Base class for agent CLI adapters."""

    family: str = ""
    agent_type: AgentType = "claude"
    default_binary: str = ""
    reasoning_profile: Optional[ReasoningProfile] = None

    def __init__(self, binary: Optional[str] = None, extra_args: Optional[list[str]] = None):
        self.binary = binary or self.default_binary
        self.extra_args = list(extra_args or [])

    @abstractmethod
    def build_local_args(self, session: Session) -> list[str]:
        """argv for the interactive agent; may report a session id to the Session."""

    @abstractmethod
    def build_remote_args(self, session: Session, request: ModeChangeRequest) -> list[str]:
        """argv for one headless turn driven by `request`."""

    @abstractmethod
    def translate(self, event: dict[str, Any]) -> list[AgentMessage]:
        """Map one decoded stdout event to zero or more AgentMessages."""

    def parse_line(self, line: str) -> list[AgentMessage]:
        """Translate one raw stdout line. Non-JSON output becomes terminal-output."""
        event = decode_event(line)
        if event is None:
            return [{"type": "terminal-output", "data": line}] if line.strip() else []
        return self.translate(event)

    def extract_session_id(self, event: dict[str, Any]) -> Optional[str]:
        value = event.get("session_id")
        return value if isinstance(value, str) and value else None

    def find_last_session(self, working_dir: str | Path) -> Optional[str]:
        return None

    def env(self) -> dict[str, str]:
        return {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} binary={self.binary}>"


# ─────────────────────────────────────────────────────────────────────────────
# Claude Code
# ─────────────────────────────────────────────────────────────────────────────

# Claude understands four permission modes; the rest map onto them.
_CLAUDE_PERMISSION_MAP = {
    "yolo":      "bypassPermissions",
    "safe-yolo": "default",
    "read-only": "default",
}


def map_to_claude_mode(mode: str) -> str:
    return _CLAUDE_PERMISSION_MAP.get(mode, mode)


def claude_config_dir() -> Path:
    configured = os.environ.get("CLAUDE_CONFIG_DIR")
    if configured:
        return Path(configured)
    return Path.home() / ".claude"


def claude_project_dir(working_dir: str | Path) -> Path:
    """Claude stores transcripts under projects/<abs path with non-alnum → '-'>."""
    resolved = str(Path(working_dir or ".").resolve())
    return claude_config_dir() / "projects" / re.sub(r"[^a-zA-Z0-9]", "-", resolved)


def check_session(session_id: str, working_dir: str | Path) -> bool:
    """True when the transcript exists and has at least one identified message."""
    session_file = claude_project_dir(working_dir) / f"{session_id}.jsonl"
    if not session_file.exists():
        log.debug("claude.session_missing", path=str(session_file))
        return False

    with session_file.open("r", encoding="utf-8", errors="replace") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                log.debug("claude.session_malformed_line", session_id=session_id, line=lineno)
                continue
            if not isinstance(entry, dict):
                continue
            for key in ("uuid", "messageId", "leafUuid"):
                value = entry.get(key)
                if isinstance(value, str) and value:
                    return True
    return False


def find_last_claude_session(working_dir: str | Path) -> Optional[str]:
    """Most recently modified valid UUID-named session, or None."""
    project_dir = claude_project_dir(working_dir)
    try:
        candidates = []
        for path in project_dir.glob("*.jsonl"):
            session_id = path.stem
            if not _UUID_RE.match(session_id):
                continue
            if check_session(session_id, working_dir):
                candidates.append((path.stat().st_mtime, session_id))
    except OSError as e:
        log.debug("claude.find_last_session_failed", error=str(e))
        return None
    if not candidates:
        return None
    return max(candidates)[1]


class ClaudeAdapter(AgentAdapter):
    family = "claude"
    agent_type = "claude"
    default_binary = "claude"

    def find_last_session(self, working_dir: str | Path) -> Optional[str]:
        return find_last_claude_session(working_dir)

    def build_local_args(self, session: Session) -> list[str]:
        """
        Interactive argv. Resume flags in the user's args are replaced by the
        tracked session id:

            --session-id <id>     start a new session with this id
            --resume/-r <id>      resume that session
            --continue/-c         resume the most recent valid session
            --resume/-r (bare)    left for Claude's own picker

        Once the session knows its id, that id wins over every flag.
        """
        args = list(self.extra_args)
        _, explicit_id, args = _extract_flag(args, ["--session-id"], with_value=True)
        _, resume_id, args = _extract_flag(args, ["--resume", "-r"], with_value=True)
        wants_continue, _, args = _extract_flag(args, ["--continue", "-c"])

        start_from = session.agent_session_id
        if start_from is None and not explicit_id:
            if resume_id:
                start_from = resume_id
            elif wants_continue:
                start_from = self.find_last_session(session.working_dir)
                log.debug("claude.continue_resolved", session_id=start_from)

        head: list[str] = []
        if start_from:
            args = [a for a in args if a not in ("--resume", "-r")]
            head = ["--resume", start_from]
            session.on_session_found(start_from)
        elif "--resume" not in args and "-r" not in args:
            new_id = explicit_id or str(uuid.uuid4())
            head = ["--session-id", new_id]
            session.on_session_found(new_id)

        return [self.binary, *head, *self._config_args(session.current_request), *args]

    def build_remote_args(self, session: Session, request: ModeChangeRequest) -> list[str]:
        args = [
            self.binary,
            "-p", request.prompt or "",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if session.agent_session_id:
            args += ["--resume", session.agent_session_id]
        args += self._config_args(request)
        if request.fallback_model:
            args += ["--fallback-model", request.fallback_model]
        if request.custom_system_prompt:
            args += ["--system-prompt", request.custom_system_prompt]
        if request.disallowed_tools:
            args += ["--disallowedTools", ",".join(request.disallowed_tools)]
        return args

    def _config_args(self, request: ModeChangeRequest) -> list[str]:
        args: list[str] = []
        mode = map_to_claude_mode(request.permission_mode)
        if mode != "default":
            args += ["--permission-mode", mode]
        if request.model:
            args += ["--model", request.model]
        if request.append_system_prompt:
            args += ["--append-system-prompt", request.append_system_prompt]
        if request.allowed_tools:
            args += ["--allowedTools", ",".join(request.allowed_tools)]
        return args

    def translate(self, event: dict[str, Any]) -> list[AgentMessage]:
        kind = event.get("type")

        if kind == "system":
            if event.get("subtype") == "init":
                return [{"type": "status", "status": "running"}]
            return [{"type": "event", "name": f"system.{event.get('subtype')}", "payload": event}]

        if kind == "assistant":
            out: list[AgentMessage] = []
            for block in (event.get("message") or {}).get("content") or []:
                btype = block.get("type")
                if btype == "text":
                    out.append({"type": "model-output", "fullText": block.get("text", "")})
                elif btype == "thinking":
                    out.append({"type": "reasoning", "text": block.get("thinking", "")})
                elif btype == "tool_use":
                    out.append({
                        "type": "tool-call",
                        "toolName": block.get("name"),
                        "args": block.get("input"),
                        "callId": block.get("id"),
                    })
            return out

        if kind == "user":
            out = []
            for block in (event.get("message") or {}).get("content") or []:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    out.append({
                        "type": "tool-result",
                        "result": {
                            "content": block.get("content"),
                            "isError": bool(block.get("is_error")),
                        },
                        "callId": block.get("tool_use_id"),
                    })
            return out

        if kind == "result":
            out = []
            if event.get("usage"):
                out.append({"type": "token-count", **event["usage"]})
            if event.get("is_error"):
                out.append({"type": "status", "status": "error", "detail": event.get("result")})
            out.append({"type": "status", "status": "idle"})
            return out

        return [event]


# ─────────────────────────────────────────────────────────────────────────────
# Codex
# ─────────────────────────────────────────────────────────────────────────────

_CODEX_PERMISSION_ARGS = {
    "read-only":         ["--sandbox", "read-only"],
    "safe-yolo":         ["--full-auto"],
    "acceptEdits":       ["--full-auto"],
    "yolo":              ["--dangerously-bypass-approvals-and-sandbox"],
    "bypassPermissions": ["--dangerously-bypass-approvals-and-sandbox"],
}


class CodexAdapter(AgentAdapter):
    family = "codex"
    agent_type = "codex"
    default_binary = "codex"
    reasoning_profile = CODEX_REASONING

    def build_local_args(self, session: Session) -> list[str]:
        args = [self.binary, *self._config_args(session.current_request), *self.extra_args]
        if session.agent_session_id:
            args += ["resume", session.agent_session_id]
        return args

    def build_remote_args(self, session: Session, request: ModeChangeRequest) -> list[str]:
        args = [self.binary, "exec", "--json", "--skip-git-repo-check", *self._config_args(request)]
        if session.agent_session_id:
            args += ["resume", session.agent_session_id]
        args.append(request.prompt or "")
        return args

    def _config_args(self, request: ModeChangeRequest) -> list[str]:
        args = list(_CODEX_PERMISSION_ARGS.get(request.permission_mode, []))
        if request.model:
            args += ["--model", request.model]
        return args

    def extract_session_id(self, event: dict[str, Any]) -> Optional[str]:
        if event.get("type") == "thread.started":
            value = event.get("thread_id")
            return value if isinstance(value, str) and value else None
        return None

    def translate(self, event: dict[str, Any]) -> list[AgentMessage]:
        kind = event.get("type")

        if kind == "thread.started":
            return []
        if kind == "turn.started":
            return [{"type": "status", "status": "running"}]
        if kind == "turn.completed":
            out: list[AgentMessage] = []
            if event.get("usage"):
                out.append({"type": "token-count", **event["usage"]})
            out.append({"type": "status", "status": "idle"})
            return out
        if kind == "turn.failed":
            detail = (event.get("error") or {}).get("message")
            return [{"type": "status", "status": "error", "detail": detail}]
        if kind == "error":
            return [{"type": "status", "status": "error", "detail": event.get("message")}]
        if kind in ("item.started", "item.updated", "item.completed"):
            return self._translate_item(kind, event.get("item") or {})
        return [event]

    def _translate_item(self, phase: str, item: dict[str, Any]) -> list[AgentMessage]:
        itype = item.get("type")
        item_id = item.get("id")
        done = phase == "item.completed"

        if itype == "reasoning":
            if phase == "item.started":
                return [{"type": REASONING_SECTION_BREAK}]
            if done:
                return [{"type": REASONING_COMPLETE, "text": item.get("text", "")}]
            return []
        if itype == "agent_message":
            return [{"type": "model-output", "fullText": item.get("text", "")}] if done else []
        if itype == "command_execution":
            if phase == "item.started":
                return [{
                    "type": "tool-call",
                    "toolName": "exec",
                    "args": {"command": item.get("command")},
                    "callId": item_id,
                }]
            if done:
                return [{
                    "type": "tool-result",
                    "toolName": "exec",
                    "result": {
                        "output": item.get("aggregated_output"),
                        "exitCode": item.get("exit_code"),
                        "status": item.get("status"),
                    },
                    "callId": item_id,
                }]
            return []
        if itype == "file_change":
            if phase == "item.started":
                return [{
                    "type": "patch-apply-begin",
                    "call_id": item_id,
                    "changes": item.get("changes"),
                    "auto_approved": True,
                }]
            if done:
                return [{
                    "type": "patch-apply-end",
                    "call_id": item_id,
                    "success": item.get("status") == "completed",
                }]
            return []
        if itype == "mcp_tool_call":
            if phase == "item.started":
                return [{
                    "type": "tool-call",
                    "toolName": f"{item.get('server')}.{item.get('tool')}",
                    "args": item.get("arguments"),
                    "callId": item_id,
                }]
            if done:
                return [{
                    "type": "tool-result",
                    "toolName": f"{item.get('server')}.{item.get('tool')}",
                    "result": item.get("result") or item.get("error"),
                    "callId": item_id,
                }]
            return []
        if done:
            return [{"type": "event", "name": f"codex.{itype}", "payload": item}]
        return []


# ─────────────────────────────────────────────────────────────────────────────
# Gemini CLI
# ─────────────────────────────────────────────────────────────────────────────

_GEMINI_APPROVAL_MODES = {
    "yolo":              "yolo",
    "bypassPermissions": "yolo",
    "acceptEdits":       "auto_edit",
    "safe-yolo":         "auto_edit",
}


class GeminiAdapter(AgentAdapter):
    family = "gemini"
    agent_type = "gemini"
    default_binary = "gemini"
    reasoning_profile = GEMINI_REASONING

    def build_local_args(self, session: Session) -> list[str]:
        args = [self.binary, *self._config_args(session.current_request)]
        if session.agent_session_id:
            args += ["--resume", session.agent_session_id]
        return args + self.extra_args

    def build_remote_args(self, session: Session, request: ModeChangeRequest) -> list[str]:
        args = [
            self.binary,
            "--prompt", request.prompt or "",
            "--output-format", "stream-json",
            *self._config_args(request),
        ]
        if session.agent_session_id:
            args += ["--resume", session.agent_session_id]
        return args

    def _config_args(self, request: ModeChangeRequest) -> list[str]:
        args: list[str] = []
        approval = _GEMINI_APPROVAL_MODES.get(request.permission_mode)
        if approval:
            args += ["--approval-mode", approval]
        if request.model:
            args += ["--model", request.model]
        return args

    def extract_session_id(self, event: dict[str, Any]) -> Optional[str]:
        if event.get("type") == "init":
            return super().extract_session_id(event)
        return None

    def translate(self, event: dict[str, Any]) -> list[AgentMessage]:
        kind = event.get("type")

        if kind == "init":
            return [{"type": "status", "status": "running"}]
        if kind == "message":
            if event.get("role") != "assistant":
                return []
            text = event.get("content", "")
            if event.get("delta"):
                return [{"type": "model-output", "textDelta": text}]
            return [{"type": "model-output", "fullText": text}]
        if kind == "thought":
            if event.get("delta", True):
                return [{"type": REASONING_DELTA, "text": event.get("content", "")}]
            return [{"type": REASONING_COMPLETE, "text": event.get("content")}]
        if kind == "tool_use":
            return [
                {"type": REASONING_COMPLETE},
                {
                    "type": "tool-call",
                    "toolName": event.get("tool_name"),
                    "args": event.get("parameters"),
                    "callId": event.get("tool_id"),
                },
            ]
        if kind == "tool_result":
            return [{
                "type": "tool-result",
                "result": {"status": event.get("status"), "output": event.get("output")},
                "callId": event.get("tool_id"),
            }]
        if kind == "error":
            return [{"type": "status", "status": "error", "detail": event.get("message")}]
        if kind == "result":
            out: list[AgentMessage] = []
            if event.get("stats"):
                out.append({"type": "token-count", **event["stats"]})
            if event.get("status") not in (None, "success"):
                detail = (event.get("error") or {}).get("message")
                out.append({"type": "status", "status": "error", "detail": detail})
            out.append({"type": "status", "status": "idle"})
            return out
        return [event]


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

_ADAPTERS: dict[str, type[AgentAdapter]] = {
    "claude": ClaudeAdapter,
    "codex":  CodexAdapter,
    "gemini": GeminiAdapter,
}


def create_adapter(
    family: str,
    binary: Optional[str] = None,
    extra_args: Optional[list[str]] = None,
) -> AgentAdapter:
    try:
        cls = _ADAPTERS[family]
    except KeyError:
        raise ValueError(
            f"Unknown agent family '{family}'. Supported: {sorted(_ADAPTERS)}"
        ) from None
    return cls(binary=binary, extra_args=extra_args)
