"""
agent/ — Tether Agent Core

Public API:
    from agent import Orchestrator, Session, ModeQueue

Component overview:
    ModeQueue           FIFO of ModeChangeRequest; dequeue() suspends while empty
    ReasoningProcessor  Turns streamed thinking fragments into discrete segments
    Session             Per-run state (relay backend, mode, agent session id)
    AgentAdapter        Per-family argv building and stdout translation
    LocalLauncher       Interactive sub-loop (agent owns the terminal)
    RemoteLauncher      Headless sub-loop driven by the mobile client
    KeyboardSwitch      Double space on the local keyboard takes control back
    Orchestrator        Local ↔ remote state machine
"""

from agent.mode_queue import ModeChangeRequest, ModeQueue
from agent.reasoning import (
    CODEX_REASONING,
    GEMINI_REASONING,
    ReasoningProcessor,
    ReasoningProfile,
    ReasoningSegment,
)
from agent.session import Mode, Session
from agent.orchestrator import LoopExitReason, ModeChangeEvent, Orchestrator
from agent.adapters import AgentAdapter, ClaudeAdapter, CodexAdapter, GeminiAdapter, create_adapter
from agent.keyboard import KeyboardSwitch
from agent.launchers import LocalLauncher, RemoteLauncher

__all__ = [
    "Orchestrator",
    "Session",
    "Mode",
    "ModeQueue",
    "ModeChangeRequest",
    "ModeChangeEvent",
    "LoopExitReason",
    "ReasoningProcessor",
    "ReasoningProfile",
    "ReasoningSegment",
    "CODEX_REASONING",
    "GEMINI_REASONING",
    "AgentAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "GeminiAdapter",
    "create_adapter",
    "LocalLauncher",
    "RemoteLauncher",
    "KeyboardSwitch",
]
