"""
agent/launchers.py — Local and Remote Sub-loops

Each launcher is an async callable `launcher(session) -> reason` that runs
one mode until it has a reason to stop:

    "exit"    the user is done; the orchestrator returns
    "switch"  control moves to the other mode
    "crash"   the agent exited abnormally; control moves to the other mode

LocalLauncher gives the terminal to the agent's own UI and waits for the
agent to exit, a switch request, or a request queued by the mobile client.
When the agent leaves without a known session id (the user picked one in its
own resume menu), the most recent transcript is adopted.

RemoteLauncher consumes the ModeQueue: each request with a prompt becomes
one headless agent turn whose stdout is normalized and relayed. It returns
when the mobile client asks for control back, or when the local user presses
space twice (KeyboardSwitch).

Cancellation terminates any running agent process and propagates.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from observability.logger import get_logger
from relay.normalizer import MessageAdapter

from agent.adapters import (
    REASONING_COMPLETE,
    REASONING_DELTA,
    REASONING_SECTION_BREAK,
    AgentAdapter,
    AgentMessage,
    decode_event,
)
from agent.keyboard import KeyboardSwitch
from agent.mode_queue import ModeChangeRequest
from agent.orchestrator import LoopExitReason
from agent.process import AgentProcess, spawn_agent
from agent.reasoning import ReasoningProcessor
from agent.runtime import TerminalCapabilities
from agent.session import Session

log = get_logger(__name__)

SpawnFn = Callable[..., Awaitable[AgentProcess]]


async def _cancel_all(*tasks: asyncio.Task) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# ─────────────────────────────────────────────────────────────────────────────
# Local
# ─────────────────────────────────────────────────────────────────────────────

class LocalLauncher:
    """Runs the agent interactively in the user's terminal."""

    def __init__(
        self,
        adapter: AgentAdapter,
        terminal: TerminalCapabilities,
        spawn: SpawnFn = spawn_agent,
        terminate_grace: float = 5.0,
    ):
        self._adapter = adapter
        self._terminal = terminal
        self._spawn = spawn
        self._grace = terminate_grace

    async def __call__(self, session: Session) -> str:
        if not self._terminal.interactive:
            log.info("local.no_terminal")
            return LoopExitReason.SWITCH.value
        if session.switch_requested or not session.queue.empty():
            return LoopExitReason.SWITCH.value

        args = self._adapter.build_local_args(session)
        proc = await self._spawn(
            args,
            env=self._adapter.env(),
            working_dir=session.working_dir,
            interactive=True,
        )

        exit_task = asyncio.create_task(proc.wait())
        switch_task = asyncio.create_task(session.wait_for_switch())
        pending_task = asyncio.create_task(session.queue.wait_nonempty())
        try:
            done, _ = await asyncio.wait(
                {exit_task, switch_task, pending_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if exit_task in done:
                code = exit_task.result()
                log.info("local.agent_exited", code=code)
                if code == 0:
                    return LoopExitReason.EXIT.value
                return LoopExitReason.CRASH.value
            log.info("local.switch_requested", queued=session.queue.size())
            return LoopExitReason.SWITCH.value
        finally:
            await _cancel_all(exit_task, switch_task, pending_task)
            await proc.terminate(self._grace)
            self._adopt_last_session(session)

    def _adopt_last_session(self, session: Session) -> None:
        """Pick up the id of a conversation the user chose inside the agent's own UI."""
        if session.agent_session_id is not None:
            return
        found = self._adapter.find_last_session(session.working_dir)
        if found:
            log.info("local.session_adopted", agent_session_id=found)
            session.on_session_found(found)


# ─────────────────────────────────────────────────────────────────────────────
# Remote
# ─────────────────────────────────────────────────────────────────────────────

class RemoteLauncher:
    """Drives headless agent turns from the ModeQueue and relays their output."""

    def __init__(
        self,
        adapter: AgentAdapter,
        spawn: SpawnFn = spawn_agent,
        terminate_grace: float = 5.0,
        history_size: int = 50,
        include_raw: bool = False,
        keyboard: Optional[KeyboardSwitch] = None,
    ):
        self._adapter = adapter
        self._spawn = spawn
        self._grace = terminate_grace
        self._history_size = history_size
        self._keyboard = keyboard
        self._normalizer = MessageAdapter(adapter.agent_type, include_raw=include_raw)

    async def __call__(self, session: Session) -> str:
        def send(message: AgentMessage) -> None:
            request = session.current_request
            # session.relay is read per message so a swapped backend takes effect at once
            session.relay.send_agent_message(self._normalizer.to_mobile(
                message,
                permission_mode=request.permission_mode,
                model=request.model,
            ))

        processor: Optional[ReasoningProcessor] = None
        if self._adapter.reasoning_profile is not None:
            processor = ReasoningProcessor(
                self._adapter.reasoning_profile,
                on_message=send,
                history_size=self._history_size,
            )

        keyboard_task: Optional[asyncio.Task] = None
        if self._keyboard is not None:
            keyboard_task = asyncio.create_task(self._keyboard.watch(session))

        try:
            while True:
                request = await self._next_request(session)
                if request is None:
                    log.info("remote.switch_requested")
                    await session.relay.request_control_transfer()
                    return LoopExitReason.SWITCH.value

                session.apply(request)
                if request.prompt is None:
                    log.info("remote.config_applied", permission_mode=request.permission_mode)
                    continue

                code = await self._run_turn(session, request, send, processor)
                if code is None:
                    await session.relay.request_control_transfer()
                    return LoopExitReason.SWITCH.value
                if code != 0:
                    log.warning("remote.agent_crashed", code=code)
                    return LoopExitReason.CRASH.value
        except asyncio.CancelledError:
            session.queue.clear()
            raise
        finally:
            if keyboard_task is not None:
                if keyboard_task.done() and not keyboard_task.cancelled() and keyboard_task.exception():
                    log.warning("remote.keyboard_failed", error=str(keyboard_task.exception()))
                await _cancel_all(keyboard_task)

    async def _next_request(self, session: Session) -> Optional[ModeChangeRequest]:
        """Next queued request, or None once a switch is requested."""
        if session.switch_requested:
            return None
        queued = session.queue.dequeue_nowait()
        if queued is not None:
            return queued
        get_task = asyncio.create_task(session.queue.dequeue())
        switch_task = asyncio.create_task(session.wait_for_switch())
        try:
            done, _ = await asyncio.wait(
                {get_task, switch_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if get_task in done:
                return get_task.result()
            return None
        finally:
            await _cancel_all(get_task, switch_task)

    async def _run_turn(
        self,
        session: Session,
        request: ModeChangeRequest,
        send: Callable[[AgentMessage], None],
        processor: Optional[ReasoningProcessor],
    ) -> Optional[int]:
        """Run one headless turn. Returns the exit code, or None if a switch cut it short."""
        args = self._adapter.build_remote_args(session, request)
        proc = await self._spawn(
            args,
            env=self._adapter.env(),
            working_dir=session.working_dir,
            interactive=False,
        )
        log.info("remote.turn_started", pid=proc.pid, model=request.model)
        session.on_thinking_change(True)

        pump_task = asyncio.create_task(self._pump(proc, session, send, processor))
        switch_task = asyncio.create_task(session.wait_for_switch())
        try:
            done, _ = await asyncio.wait(
                {pump_task, switch_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if pump_task in done:
                return pump_task.result()
            return None
        finally:
            await _cancel_all(pump_task, switch_task)
            await proc.terminate(self._grace)
            if processor is not None:
                processor.abort()
            session.on_thinking_change(False)

    async def _pump(
        self,
        proc: AgentProcess,
        session: Session,
        send: Callable[[AgentMessage], None],
        processor: Optional[ReasoningProcessor],
    ) -> int:
        async for line in proc.lines():
            event = decode_event(line)
            if event is not None:
                agent_session_id = self._adapter.extract_session_id(event)
                if agent_session_id:
                    session.on_session_found(agent_session_id)
            for message in self._adapter.parse_line(line):
                self._route(message, session, send, processor)
        return await proc.wait()

    def _route(
        self,
        message: AgentMessage,
        session: Session,
        send: Callable[[AgentMessage], None],
        processor: Optional[ReasoningProcessor],
    ) -> None:
        kind = message.get("type")

        if kind == REASONING_DELTA:
            if processor is not None:
                processor.process_input(message.get("text", ""))
            else:
                send({"type": "reasoning", "text": message.get("text", "")})
            return
        if kind == REASONING_COMPLETE:
            if processor is not None:
                processor.complete_reasoning(message.get("text"))
            elif message.get("text"):
                send({"type": "reasoning", "text": message["text"]})
            return
        if kind == REASONING_SECTION_BREAK:
            if processor is not None:
                processor.handle_section_break()
            return

        if kind == "status":
            status = message.get("status")
            if status == "idle" and processor is not None:
                processor.complete_reasoning()
            session.on_thinking_change(status == "running")
        send(message)
