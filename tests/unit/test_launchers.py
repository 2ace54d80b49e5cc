"""
tests/unit/test_launchers.py — Local and remote sub-loops

Covers:
  - LocalLauncher: no terminal / pending work → switch without spawning;
    exit code 0 → exit, non-zero → crash, switch request or a newly queued
    request → switch + terminate; a session picked in the agent UI is adopted
  - RemoteLauncher: one turn per prompted request, config-only requests,
    stdout relayed through the normalizer, agent session id discovery,
    reasoning routed through the processor, switch mid-turn, crash,
    cancellation clears the queue
  - the local keyboard watcher runs only while the remote sub-loop does
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agent.adapters import ClaudeAdapter, CodexAdapter, claude_project_dir
from agent.launchers import LocalLauncher, RemoteLauncher
from agent.mode_queue import ModeChangeRequest, ModeQueue
from agent.runtime import TerminalCapabilities
from agent.session import Mode, Session
from conftest import RecordingBackend

TTY = TerminalCapabilities(stdin_tty=True, stdout_tty=True)
NO_TTY = TerminalCapabilities(stdin_tty=False, stdout_tty=True)
PICKED_SID = "0f0e0d0c-0b0a-0908-0706-050403020100"


class FakeProcess:
    """AgentProcess double. Emits scripted lines, then exits with `code`."""

    def __init__(self, lines=(), code=0, hang=False):
        self._lines = [json.dumps(l) if isinstance(l, dict) else l for l in lines]
        self._code = code
        self._hang = hang
        self._exited = asyncio.Event()
        self.pid = 4242
        self.terminated = False

    async def lines(self):
        for line in self._lines:
            yield line
            await asyncio.sleep(0)
        if self._hang:
            await self._exited.wait()

    async def wait(self):
        if self._hang:
            await self._exited.wait()
        return self._code

    async def terminate(self, grace=5.0):
        self.terminated = True
        self._exited.set()


class FakeSpawn:
    def __init__(self, *procs):
        self.procs = list(procs)
        self.calls: list[dict] = []

    async def __call__(self, args, env=None, working_dir=None, interactive=True):
        self.calls.append({"args": args, "interactive": interactive, "working_dir": working_dir})
        return self.procs.pop(0)


def _session(relay=None, mode=Mode.REMOTE, agent_session_id="sid-1") -> Session:
    return Session(
        relay=relay or RecordingBackend(),
        working_dir="/work",
        mode_queue=ModeQueue(),
        mode=mode,
        agent_session_id=agent_session_id,
    )


def _agent_payloads(relay: RecordingBackend) -> list[dict]:
    return [m.to_wire()["content"]["data"] for m in relay.sent("agent_message")]


# ── Local ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestLocalLauncher:
    async def test_no_terminal_switches_without_spawning(self):
        spawn = FakeSpawn()
        reason = await LocalLauncher(ClaudeAdapter(), NO_TTY, spawn=spawn)(_session(mode=Mode.LOCAL))
        assert reason == "switch"
        assert spawn.calls == []

    async def test_pending_queue_switches_immediately(self):
        spawn = FakeSpawn()
        session = _session(mode=Mode.LOCAL)
        session.queue.enqueue(ModeChangeRequest(prompt="queued while remote"))
        assert await LocalLauncher(ClaudeAdapter(), TTY, spawn=spawn)(session) == "switch"
        assert spawn.calls == []

    async def test_clean_exit(self):
        proc = FakeProcess(code=0)
        spawn = FakeSpawn(proc)
        reason = await LocalLauncher(ClaudeAdapter(), TTY, spawn=spawn)(_session(mode=Mode.LOCAL))

        assert reason == "exit"
        assert spawn.calls[0]["interactive"] is True
        assert spawn.calls[0]["args"][:3] == ["claude", "--resume", "sid-1"]

    async def test_nonzero_exit_is_crash(self):
        spawn = FakeSpawn(FakeProcess(code=1))
        assert await LocalLauncher(ClaudeAdapter(), TTY, spawn=spawn)(_session(mode=Mode.LOCAL)) == "crash"

    async def test_switch_terminates_agent(self):
        proc = FakeProcess(hang=True)
        session = _session(mode=Mode.LOCAL)
        task = asyncio.create_task(LocalLauncher(ClaudeAdapter(), TTY, spawn=FakeSpawn(proc))(session))
        await asyncio.sleep(0.01)
        assert not task.done()

        session.request_switch()
        assert await asyncio.wait_for(task, timeout=1) == "switch"
        assert proc.terminated

    async def test_cancel_terminates_agent(self):
        proc = FakeProcess(hang=True)
        task = asyncio.create_task(
            LocalLauncher(ClaudeAdapter(), TTY, spawn=FakeSpawn(proc))(_session(mode=Mode.LOCAL))
        )
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert proc.terminated

    async def test_request_queued_mid_run_switches(self):
        proc = FakeProcess(hang=True)
        session = _session(mode=Mode.LOCAL)
        task = asyncio.create_task(LocalLauncher(ClaudeAdapter(), TTY, spawn=FakeSpawn(proc))(session))
        await asyncio.sleep(0.01)

        session.queue.enqueue(ModeChangeRequest(permission_mode="plan"))
        assert await asyncio.wait_for(task, timeout=1) == "switch"
        assert proc.terminated
        # the request is left for the remote sub-loop
        assert session.queue.size() == 1

    async def test_session_picked_in_agent_ui_is_adopted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLAUDE_CONFIG_DIR", str(tmp_path / "claude-home"))
        work = tmp_path / "proj"
        work.mkdir()
        project = claude_project_dir(work)
        project.mkdir(parents=True)
        (project / f"{PICKED_SID}.jsonl").write_text(json.dumps({"uuid": "m1"}))

        relay = RecordingBackend()
        session = Session(relay=relay, working_dir=work, mode_queue=ModeQueue(), mode=Mode.LOCAL)
        spawn = FakeSpawn(FakeProcess(code=0))
        reason = await LocalLauncher(ClaudeAdapter(extra_args=["--resume"]), TTY, spawn=spawn)(session)

        assert reason == "exit"
        assert spawn.calls[0]["args"] == ["claude", "--resume"]
        assert session.agent_session_id == PICKED_SID
        assert relay.sent("metadata") == [{"agentSessionId": PICKED_SID}]

    async def test_known_session_is_not_replaced(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLAUDE_CONFIG_DIR", str(tmp_path / "claude-home"))
        session = _session(mode=Mode.LOCAL, agent_session_id="sid-1")
        await LocalLauncher(ClaudeAdapter(), TTY, spawn=FakeSpawn(FakeProcess(code=0)))(session)
        assert session.agent_session_id == "sid-1"


# ── Remote ────────────────────────────────────────────────────────────────────

CLAUDE_TURN = [
    {"type": "system", "subtype": "init", "session_id": "sid-2"},
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "Fixed it."}]}},
    {"type": "result", "usage": {"output_tokens": 3}},
]


@pytest.mark.asyncio
class TestRemoteLauncher:
    async def test_turn_then_switch(self):
        relay = RecordingBackend()
        session = _session(relay)
        spawn = FakeSpawn(FakeProcess(CLAUDE_TURN, code=0))
        launcher = RemoteLauncher(ClaudeAdapter(), spawn=spawn)

        session.queue.enqueue(ModeChangeRequest(permission_mode="plan", prompt="fix"))
        task = asyncio.create_task(launcher(session))
        await asyncio.sleep(0.02)
        session.request_switch()
        assert await asyncio.wait_for(task, timeout=1) == "switch"

        assert spawn.calls[0]["interactive"] is False
        assert spawn.calls[0]["args"][:3] == ["claude", "-p", "fix"]
        payloads = _agent_payloads(relay)
        assert payloads[0] == {"type": "status", "status": "running"}
        assert {"type": "model-output", "text": "Fixed it."} in payloads
        assert payloads[-1] == {"type": "status", "status": "idle"}
        assert relay.sent("control_transfer") == [()]
        assert session.agent_session_id == "sid-2"
        assert relay.sent("metadata") == [{"agentSessionId": "sid-2"}]
        assert session.current_request.permission_mode == "plan"
        assert session.thinking is False

    async def test_meta_carries_permission_mode_and_model(self):
        relay = RecordingBackend()
        session = _session(relay)
        launcher = RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(FakeProcess(CLAUDE_TURN)))
        session.queue.enqueue(ModeChangeRequest(permission_mode="yolo", model="opus", prompt="x"))
        task = asyncio.create_task(launcher(session))
        await asyncio.sleep(0.02)
        session.request_switch()
        await asyncio.wait_for(task, timeout=1)

        meta = relay.sent("agent_message")[0].to_wire()["meta"]
        assert meta["permissionMode"] == "yolo"
        assert meta["model"] == "opus"

    async def test_config_only_request_does_not_spawn(self):
        session = _session()
        spawn = FakeSpawn()
        session.queue.enqueue(ModeChangeRequest(permission_mode="plan"))
        task = asyncio.create_task(RemoteLauncher(ClaudeAdapter(), spawn=spawn)(session))
        await asyncio.sleep(0.01)
        session.request_switch()
        assert await asyncio.wait_for(task, timeout=1) == "switch"
        assert spawn.calls == []
        assert session.current_request.permission_mode == "plan"

    async def test_switch_already_requested(self):
        session = _session()
        session.request_switch()
        assert await RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn())(session) == "switch"

    async def test_crash(self):
        session = _session()
        session.queue.enqueue(ModeChangeRequest(prompt="x"))
        launcher = RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(FakeProcess(["boom"], code=2)))
        assert await asyncio.wait_for(launcher(session), timeout=1) == "crash"

    async def test_switch_mid_turn_terminates(self):
        relay = RecordingBackend()
        session = _session(relay)
        proc = FakeProcess(hang=True)
        session.queue.enqueue(ModeChangeRequest(prompt="long job"))
        task = asyncio.create_task(RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(proc))(session))
        await asyncio.sleep(0.01)
        assert session.thinking is True

        session.request_switch()
        assert await asyncio.wait_for(task, timeout=1) == "switch"
        assert proc.terminated
        assert session.thinking is False
        assert relay.sent("control_transfer") == [()]

    async def test_cancel_clears_queue_and_terminates(self):
        session = _session()
        proc = FakeProcess(hang=True)
        session.queue.enqueue(ModeChangeRequest(prompt="first"))
        session.queue.enqueue(ModeChangeRequest(prompt="second"))
        task = asyncio.create_task(RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(proc))(session))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert proc.terminated
        assert session.queue.empty()

    async def test_swapped_relay_receives_later_output(self):
        offline = RecordingBackend(session_id="offline-t", offline=True)
        live = RecordingBackend(session_id="live-1")
        session = _session(offline)
        proc = FakeProcess(CLAUDE_TURN)
        session.queue.enqueue(ModeChangeRequest(prompt="x"))
        session.swap_relay(live)
        task = asyncio.create_task(RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(proc))(session))
        await asyncio.sleep(0.02)
        session.request_switch()
        await asyncio.wait_for(task, timeout=1)

        assert offline.sent("agent_message") == []
        assert live.sent("agent_message")

    async def test_codex_reasoning_becomes_tool_call_and_result(self):
        relay = RecordingBackend()
        session = _session(relay, agent_session_id=None)
        lines = [
            {"type": "thread.started", "thread_id": "th-1"},
            {"type": "turn.started"},
            {"type": "item.started", "item": {"id": "r1", "type": "reasoning"}},
            {"type": "item.completed", "item": {"id": "r1", "type": "reasoning", "text": "**Plan** read files"}},
            {"type": "turn.completed"},
        ]
        session.queue.enqueue(ModeChangeRequest(prompt="x"))
        task = asyncio.create_task(
            RemoteLauncher(CodexAdapter(), spawn=FakeSpawn(FakeProcess(lines)))(session)
        )
        await asyncio.sleep(0.02)
        session.request_switch()
        await asyncio.wait_for(task, timeout=1)

        assert session.agent_session_id == "th-1"
        kinds = [p["type"] for p in _agent_payloads(relay)]
        assert kinds == ["status", "tool-call", "tool-result", "status"]
        call = _agent_payloads(relay)[1]
        assert call["toolArgs"] == {"title": "Plan"}


class FakeKeyboard:
    """KeyboardSwitch double: optionally presses the switch keys at once."""

    def __init__(self, press: bool = False):
        self.press = press
        self.cancelled = False

    async def watch(self, session):
        try:
            if self.press:
                session.request_switch()
                return
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


@pytest.mark.asyncio
class TestRemoteLauncherKeyboard:
    async def test_local_keys_take_control_back(self):
        relay = RecordingBackend()
        session = _session(relay)
        launcher = RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(), keyboard=FakeKeyboard(press=True))

        assert await asyncio.wait_for(launcher(session), timeout=1) == "switch"
        assert relay.sent("control_transfer") == [()]

    async def test_keyboard_released_when_mobile_switches(self):
        keyboard = FakeKeyboard()
        session = _session()
        task = asyncio.create_task(RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(), keyboard=keyboard)(session))
        await asyncio.sleep(0.01)

        session.request_switch()
        assert await asyncio.wait_for(task, timeout=1) == "switch"
        assert keyboard.cancelled

    async def test_keyboard_released_on_cancel(self):
        keyboard = FakeKeyboard()
        task = asyncio.create_task(
            RemoteLauncher(ClaudeAdapter(), spawn=FakeSpawn(), keyboard=keyboard)(_session())
        )
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert keyboard.cancelled
