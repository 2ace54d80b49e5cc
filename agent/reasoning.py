"""
agent/reasoning.py — Reasoning Stream Accumulator

Turns incremental "thinking" fragments streamed by an agent into discrete
reasoning segments.

A segment whose text starts with **Title** is surfaced to the mobile client
as a reasoning tool call: a tool-call message is emitted as soon as the
closing ** arrives, and a tool-result message carries the body when the
segment completes. Untitled segments become a single reasoning message.

One algorithm serves every agent family. The family only changes the tool
name and log prefix, supplied as a ReasoningProfile:

    processor = ReasoningProcessor(CODEX_REASONING, on_message=relay_send)
    processor.process_input("**Plan")
    processor.process_input("ning** read the tests first")
    processor.complete_reasoning()
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

from observability.logger import get_logger

log = get_logger(__name__)

_TITLE_MARK = "**"

ReasoningCallback = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class ReasoningProfile:
    """Per-agent labels for the shared reasoning algorithm."""
    tool_name: str
    log_prefix: str


CODEX_REASONING = ReasoningProfile(tool_name="CodexReasoning", log_prefix="[CodexReasoning]")
GEMINI_REASONING = ReasoningProfile(tool_name="GeminiReasoning", log_prefix="[GeminiReasoning]")


@dataclass
class ReasoningSegment:
    """One contiguous block of reasoning text."""
    text: str = ""
    completed: bool = False
    title: Optional[str] = None
    tool_name: Optional[str] = None
    call_id: Optional[str] = None
    tool_call_started: bool = False
    status: Optional[str] = None     # "completed" | "canceled" once sealed

    def append(self, fragment: str) -> None:
        if self.completed:
            raise RuntimeError("cannot append to a finalized reasoning segment")
        self.text += fragment

    @property
    def content(self) -> str:
        """Body text, without the **Title** prefix when one was captured."""
        if self.title is None:
            return self.text
        return self.text[len(_TITLE_MARK) * 2 + len(self.title):]

    def seal(self, status: str) -> None:
        self.completed = True
        self.status = status


def _split_title(text: str) -> tuple[Optional[str], str]:
    """Return (title, body) for text of the form **Title**body."""
    if text.startswith(_TITLE_MARK):
        end = text.find(_TITLE_MARK, len(_TITLE_MARK))
        if end != -1:
            return text[len(_TITLE_MARK):end], text[end + len(_TITLE_MARK):]
    return None, text


class ReasoningProcessor:
    """
    Accumulates reasoning fragments for one agent turn at a time.

    Callers must deliver fragments in arrival order; the processor does not
    reorder. Outputs are AgentMessage-shaped dicts (tool-call, tool-result,
    reasoning) handed to on_message so they pass through the normal
    message normalizer like any other agent event.
    """

    def __init__(
        self,
        profile: ReasoningProfile,
        on_message: Optional[ReasoningCallback] = None,
        history_size: int = 50,
    ) -> None:
        self.profile = profile
        self._on_message = on_message
        self._segment: Optional[ReasoningSegment] = None
        self._history: deque[ReasoningSegment] = deque(maxlen=history_size)
        self._log = get_logger(__name__, prefix=profile.log_prefix)

    # ── State accessors ───────────────────────────────────────────────────────

    @property
    def current_segment(self) -> Optional[ReasoningSegment]:
        return self._segment

    @property
    def history(self) -> tuple[ReasoningSegment, ...]:
        """Most recent finalized segments, oldest first."""
        return tuple(self._history)

    # ── Input ─────────────────────────────────────────────────────────────────

    def process_input(self, fragment: str) -> None:
        """Append a fragment to the open segment, opening one if needed."""
        if self._segment is None:
            self._segment = ReasoningSegment()
            self._log.debug("reasoning.segment_opened")

        segment = self._segment
        segment.append(fragment)

        if segment.title is None:
            title, _ = _split_title(segment.text)
            if title is not None:
                segment.title = title
                segment.call_id = str(uuid.uuid4())
                self._log.debug("reasoning.title_captured", title=title)
                self._send_tool_call_start(segment)

    def complete_reasoning(self, final_text: Optional[str] = None) -> bool:
        """
        Finalize the open segment.

        final_text, when given, replaces the accumulated buffer (agents that
        deliver the full text on completion). Returns False when there was
        nothing to complete.
        """
        segment = self._segment
        if segment is None:
            if final_text is None:
                self._log.debug("reasoning.complete_skipped", reason="no open segment")
                return False
            segment = ReasoningSegment()

        text = final_text if final_text is not None else segment.text
        if not text.strip() and not segment.tool_call_started:
            self._log.debug("reasoning.complete_skipped", reason="empty segment")
            self._segment = None
            return False

        title, body = _split_title(text)
        content = body.strip() if title is not None else text
        segment.text = text
        if title is not None and segment.title is None:
            segment.title = title

        self._log.debug(
            "reasoning.complete",
            title=segment.title,
            has_content=bool(content),
        )

        if segment.title is not None and not segment.tool_call_started:
            segment.call_id = segment.call_id or str(uuid.uuid4())
            self._send_tool_call_start(segment)

        if segment.tool_call_started:
            self._send_tool_result(segment, content, "completed")
        elif content.strip():
            self._emit({
                "type": "reasoning",
                "text": content,
                "id": str(uuid.uuid4()),
            })

        self._close(segment, "completed")
        return True

    # ── Interruptions ─────────────────────────────────────────────────────────

    def handle_section_break(self) -> None:
        """A new reasoning section is starting; cancel the current one."""
        self._cancel_current()
        self._log.debug("reasoning.section_break")

    def abort(self) -> None:
        self._log.debug("reasoning.abort")
        self._cancel_current()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _cancel_current(self) -> None:
        segment = self._segment
        if segment is None:
            return
        if segment.tool_call_started:
            self._send_tool_result(segment, segment.content, "canceled")
        self._close(segment, "canceled")

    def _close(self, segment: ReasoningSegment, status: str) -> None:
        segment.seal(status)
        self._history.append(segment)
        self._segment = None

    def _send_tool_call_start(self, segment: ReasoningSegment) -> None:
        if segment.tool_call_started or segment.call_id is None:
            return
        segment.tool_name = self.profile.tool_name
        segment.tool_call_started = True
        self._log.debug("reasoning.tool_call_start", title=segment.title)
        self._emit({
            "type": "tool-call",
            "toolName": self.profile.tool_name,
            "callId": segment.call_id,
            "args": {"title": segment.title},
            "id": str(uuid.uuid4()),
        })

    def _send_tool_result(self, segment: ReasoningSegment, content: str, status: str) -> None:
        self._log.debug("reasoning.tool_result", status=status)
        self._emit({
            "type": "tool-result",
            "toolName": self.profile.tool_name,
            "callId": segment.call_id,
            "result": {"content": content, "status": status},
            "id": str(uuid.uuid4()),
        })

    def _emit(self, message: dict[str, Any]) -> None:
        if self._on_message is not None:
            self._on_message(message)
