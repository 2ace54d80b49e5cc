"""
main.py — Tether Entry Point

Usage:
    python main.py                              # agent from config (default: claude), local mode
    python main.py codex                        # run Codex
    python main.py --remote claude              # start with the mobile app in control
    python main.py --permission-mode plan claude --continue
    python main.py --log-level DEBUG gemini
    python main.py --config path/to/config.yaml

Everything after the agent family is passed to the agent CLI unchanged.
"""

from __future__ import annotations
# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables first so settings see them
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import signal
import socket
import sys
import uuid
from typing import Optional

__version__ = "0.1.0"

_PERMISSION_CHOICES = [
    "default", "acceptEdits", "bypassPermissions", "plan",
    "read-only", "safe-yolo", "yolo",
]


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tether",
        description="Tether — run an AI coding agent locally and hand control to your phone",
    )
    parser.add_argument(
        "family",
        nargs="?",
        choices=["claude", "codex", "gemini"],
        default=None,
        help="Agent CLI to run (default: agent.family from config, normally 'claude')",
    )
    parser.add_argument(
        "--remote",
        action="store_true",
        default=False,
        help="Start in remote mode (mobile app in control)",
    )
    parser.add_argument(
        "--permission-mode",
        choices=_PERMISSION_CHOICES,
        default=None,
        help="Initial permission mode for the agent",
    )
    parser.add_argument("--model", default=None, help="Initial model for the agent")
    parser.add_argument(
        "--server-url",
        default=None,
        help="Relay server URL (overrides relay.server_url)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $TETHER_CONFIG, ~/.tether/config.yaml or the bundled one)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "agent_args",
        nargs=argparse.REMAINDER,
        help="Arguments passed through to the agent CLI",
    )
    args = parser.parse_args(argv)
    if args.agent_args and args.agent_args[0] == "--":
        args.agent_args = args.agent_args[1:]
    return args


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log, log_file) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from config.settings import load_settings, ConfigError
    from observability.logger import setup_logging, get_logger
    from pydantic import ValidationError

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(
            args.config,
            relay={"server_url": args.server_url},
            agent={
                "family": args.family,
                "permission_mode": args.permission_mode,
                "model": args.model,
                "starting_mode": "remote" if args.remote else None,
                "extra_args": args.agent_args or None,
            },
        )
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix your config.yaml, your .env file or the command line and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except OSError as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    # CLI --log-level flag overrides config.yaml
    log_level = args.log_level or settings.log_level

    log_file = setup_logging(
        level=log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("tether.main")
    return settings, log, log_file


async def run_session(settings, log, console) -> int:
    """
    Create the relay session (or an offline stand-in), run the orchestrator
    until the user exits, then tear everything down.
    """
    from agent.adapters import create_adapter
    from agent.keyboard import KeyboardSwitch
    from agent.launchers import LocalLauncher, RemoteLauncher
    from agent.mode_queue import ModeChangeRequest, ModeQueue
    from agent.orchestrator import Orchestrator
    from agent.runtime import TerminalCapabilities
    from agent.session import Mode
    from relay.api import RelayApiClient
    from relay.backends import LiveSessionBackend, SessionBackend
    from relay.reconnection import ReconnectionManager, setup_offline_reconnection

    agent_cfg = settings.agent
    terminal = TerminalCapabilities.detect()
    adapter = create_adapter(agent_cfg.family, agent_cfg.binary, agent_cfg.extra_args)
    working_dir = Path.cwd()
    starting_mode = Mode(agent_cfg.starting_mode)

    tag = str(uuid.uuid4())
    metadata = {
        "path": str(working_dir),
        "host": socket.gethostname(),
        "flavor": agent_cfg.family,
        "version": __version__,
    }
    state = {"controlledByUser": starting_mode is Mode.LOCAL}

    orchestrator: Optional[Orchestrator] = None
    handles: list[ReconnectionManager] = []
    watchers: list[asyncio.Task] = []
    stopping = asyncio.Event()

    async with RelayApiClient(
        settings.server_url,
        auth_token=settings.relay_token,
        timeout=settings.relay.request_timeout_seconds,
        notify=console.notify,
    ) as api:

        def on_session_swap(backend: SessionBackend) -> None:
            orchestrator.swap_relay(backend)
            watch(backend)

        def watch(backend: SessionBackend) -> None:
            if isinstance(backend, LiveSessionBackend):
                watchers.append(asyncio.create_task(_watch_connection(backend)))

        async def _watch_connection(backend: LiveSessionBackend) -> None:
            await backend.wait_closed()
            if stopping.is_set() or orchestrator.relay is not backend:
                return
            log.warning("tether.relay_dropped", session_id=backend.session_id)
            retry = setup_offline_reconnection(
                api=api, tag=tag, metadata=metadata, state=None, response=None,
                on_session_swap=on_session_swap,
                notify=console.notify,
                config=settings.reconnect,
            )
            orchestrator.swap_relay(retry.backend)
            handles.append(retry.handle)

        response = await api.get_or_create_session(tag, metadata, state)
        setup = setup_offline_reconnection(
            api=api,
            tag=tag,
            metadata=metadata,
            state=state,
            response=response,
            on_session_swap=on_session_swap,
            notify=console.notify,
            config=settings.reconnect,
        )
        if setup.handle is not None:
            handles.append(setup.handle)

        grace = agent_cfg.terminate_grace_seconds
        orchestrator = Orchestrator(
            working_dir=working_dir,
            relay=setup.backend,
            mode_queue=ModeQueue(),
            local_launcher=LocalLauncher(adapter, terminal, terminate_grace=grace),
            remote_launcher=RemoteLauncher(
                adapter,
                terminate_grace=grace,
                history_size=settings.reasoning.history_size,
                keyboard=KeyboardSwitch() if terminal.interactive else None,
            ),
            starting_mode=starting_mode,
            on_session_ready=console.session_ready,
            on_mode_change=console.mode_changed,
            initial_request=ModeChangeRequest(
                permission_mode=agent_cfg.permission_mode,
                model=agent_cfg.model,
            ),
            keep_alive_interval=settings.relay.keep_alive_seconds,
        )
        watch(setup.backend)
        _install_signal_handlers(orchestrator, log)

        try:
            await orchestrator.run()
        finally:
            stopping.set()
            for handle in handles:
                await handle.aclose()
            for task in watchers:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

            relay = orchestrator.relay
            relay.send_session_death()
            await relay.flush(timeout=settings.relay.request_timeout_seconds)
            await relay.close()
            log.info("tether.shutdown", session_id=relay.session_id)

    return 0


def _install_signal_handlers(orchestrator, log) -> None:
    """
    SIGINT stops Tether only outside local mode; in local mode Ctrl+C
    belongs to the agent's own UI. SIGTERM always stops.
    """
    if sys.platform == "win32":
        return
    from agent.session import Mode

    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    def _on_sigint() -> None:
        session = orchestrator.session
        if session is not None and session.mode is Mode.LOCAL:
            return
        log.info("tether.interrupted")
        main_task.cancel()

    loop.add_signal_handler(signal.SIGINT, _on_sigint)
    loop.add_signal_handler(signal.SIGTERM, main_task.cancel)


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings, log, log_file = bootstrap(args)

    from exceptions import AgentError, RelayApiError, TetherError
    from interfaces.console import TetherConsole

    console = TetherConsole()
    console.banner(settings, log_file)

    log.info(
        "tether.starting",
        version=__version__,
        family=settings.agent.family,
        starting_mode=settings.agent.starting_mode,
        server_url=settings.server_url,
    )

    try:
        code = await run_session(settings, log, console)
    except asyncio.CancelledError:
        console.goodbye()
        return 130
    except AgentError as e:
        log.error("tether.agent_failed", error=str(e), error_type=type(e).__name__)
        console.error("Agent failed", str(e))
        return 1
    except RelayApiError as e:
        log.error("tether.relay_failed", error=str(e), status_code=e.status_code)
        console.error("Relay rejected the session", f"{e}\n\nCheck TETHER_RELAY_TOKEN and relay.server_url.")
        return 1
    except TetherError as e:
        log.error("tether.failed", error=str(e), error_type=type(e).__name__)
        console.error("Tether failed", str(e))
        return 1

    console.goodbye()
    return code


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
