"""
interfaces/console.py — Terminal output for the Tether CLI

Everything Tether itself prints goes through TetherConsole. The agent owns
stdout in local mode, so output goes to stderr and stays short.

Usage:
    console = TetherConsole()
    console.banner(settings, log_file)
    console.notify("📴 Relay unreachable")      # also the notify() sink for reconnection
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from agent.session import Mode, Session
from config.settings import Settings

_MODE_STYLES = {
    Mode.LOCAL:  ("💻", "green"),
    Mode.REMOTE: ("📱", "magenta"),
}


class TetherConsole:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True, highlight=False)

    def banner(self, settings: Settings, log_file: Optional[Path] = None) -> None:
        agent = settings.agent
        model = agent.model or "default"
        log_line = f"\n[dim]Logs: {log_file}[/]" if log_file else ""
        self.console.print(
            Panel(
                f"Agent: [cyan]{agent.family}[/] ([dim]{agent.resolved_binary}[/])  ·  "
                f"Model: [cyan]{model}[/]  ·  "
                f"Permissions: [yellow]{agent.permission_mode}[/]\n"
                f"Relay: [dim]{settings.server_url}[/]"
                f"{log_line}",
                title="[bold cyan]Tether[/]",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    def notify(self, message: str) -> None:
        self.console.print(Text(message, style="dim"))

    def session_ready(self, session: Session) -> None:
        state = "[yellow]offline[/]" if session.is_offline else "[green]live[/]"
        self.console.print(
            f"[dim]Session[/] [bold]{session.id}[/] ({state}) in [dim]{session.working_dir}[/]"
        )

    def mode_changed(self, mode: Mode) -> None:
        icon, colour = _MODE_STYLES[mode]
        if mode is Mode.LOCAL:
            detail = "You have the keyboard."
        else:
            detail = "The mobile app is in control. Press space twice to take it back, Ctrl+C to quit."
        self.console.print(f"\n{icon} [bold {colour}]{mode.value} mode[/]  [dim]{detail}[/]")

    def error(self, title: str, detail: str) -> None:
        self.console.print(
            Panel(
                detail,
                title=f"[bold red]❌ {title}[/]",
                border_style="red",
                padding=(0, 2),
            )
        )

    def goodbye(self) -> None:
        self.console.print("[dim]Goodbye.[/]")
