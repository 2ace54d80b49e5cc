"""
agent/keyboard.py — Local keyboard handoff during remote mode

While the mobile client drives the agent, the local terminal is idle.
Pressing space twice in quick succession asks for control back; the remote
sub-loop then returns "switch" exactly as it does for a mobile switch event.

The terminal is in raw mode for as long as watch() runs, so Ctrl+C arrives
as a key rather than a signal and is forwarded to on_interrupt.
"""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Callable, Optional

from prompt_toolkit.input import Input, create_input
from prompt_toolkit.keys import Keys

from observability.logger import get_logger

from agent.session import Session

log = get_logger(__name__)

SWITCH_KEY = " "


def _raise_sigint() -> None:
    signal.raise_signal(signal.SIGINT)


class KeyboardSwitch:
    """Turns a double space press on the local keyboard into a switch request."""

    def __init__(
        self,
        window: float = 2.0,
        input_factory: Callable[[], Input] = create_input,
        on_interrupt: Callable[[], None] = _raise_sigint,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window = window
        self._input_factory = input_factory
        self._on_interrupt = on_interrupt
        self._clock = clock

    async def watch(self, session: Session) -> None:
        """Read keys until a switch is requested. Cancel to stop early."""
        inp = self._input_factory()
        keys: asyncio.Queue = asyncio.Queue()

        def _on_ready() -> None:
            for key_press in inp.read_keys():
                keys.put_nowait(key_press)

        last_press: Optional[float] = None
        with inp.raw_mode(), inp.attach(_on_ready):
            log.debug("keyboard.watching")
            while True:
                key_press = await keys.get()
                if key_press.key == Keys.ControlC:
                    log.info("keyboard.interrupt")
                    self._on_interrupt()
                    continue
                if key_press.data != SWITCH_KEY:
                    last_press = None
                    continue

                now = self._clock()
                if last_press is not None and now - last_press <= self._window:
                    log.info("keyboard.switch_requested")
                    session.request_switch()
                    return
                last_press = now
