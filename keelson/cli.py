"""Terminal UI for Keelson."""

import asyncio
import json
import os
import sys
import termios
import tty
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from keelson.session import SessionMetadata

MAX_TOOL_OUTPUT_LINES = 20

HELP_TEXT = """\
Commands:
  /help           Show this help
  /clear          Start a fresh session
  /resume         Resume a previous session
  /think on|off   Toggle extended thinking (/think shows the current state)
  /s              Safe mode: read-only tools only
  /n              Normal mode: all tools
  /exit, /quit    Exit (also /q)

Press ESC while waiting for a response to interrupt after it arrives."""


class TerminalUI:
    """Rich-based console UI."""

    def __init__(self, console: Console | None = None, show_thinking: bool = True):
        self.console = console or Console()
        self.show_thinking = show_thinking

    def print_welcome(self, workspace: str, model: str, safe_mode: bool = False) -> None:
        mode = "safe (read-only)" if safe_mode else "normal"
        self.console.print(
            Panel.fit(
                f"[bold]Keelson[/bold]\nWorkspace: {workspace}\nModel: {model}\nMode: {mode}\n\n"
                "Type /help for commands.",
                border_style="cyan",
            )
        )

    def print_help(self) -> None:
        self.console.print(HELP_TEXT)

    def print_assistant(self, text: str) -> None:
        self.console.print(Markdown(text))

    def print_thinking(self, text: str) -> None:
        if not self.show_thinking or not text.strip():
            return
        self.console.print(f"[dim italic]{escape(text)}[/dim italic]", highlight=False)

    def print_tool_call(self, tool_name: str, arguments: dict[str, Any]) -> None:
        if tool_name == "execute_bash" and "command" in arguments:
            detail = arguments["command"]
        else:
            detail = json.dumps(arguments, ensure_ascii=False)
            if len(detail) > 200:
                detail = detail[:200] + "..."
        self.console.print(f"[bold yellow]> {tool_name}[/bold yellow] {escape(detail)}", highlight=False)

    def print_tool_output(self, tool_name: str, output: str, is_error: bool = False) -> None:
        lines = output.splitlines()
        shown = "\n".join(lines[:MAX_TOOL_OUTPUT_LINES])
        if len(lines) > MAX_TOOL_OUTPUT_LINES:
            shown += f"\n... ({len(lines) - MAX_TOOL_OUTPUT_LINES} more lines)"
        style = "red" if is_error else "dim"
        self.console.print(shown, style=style, highlight=False, markup=False)

    def print_error(self, error: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {escape(error)}", highlight=False)

    def print_warning(self, warning: str) -> None:
        self.console.print(f"[yellow]{escape(warning)}[/yellow]", highlight=False)

    def print_info(self, message: str) -> None:
        self.console.print(f"[cyan]{escape(message)}[/cyan]", highlight=False)

    def print_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self.console.print(
            f"[dim]tokens: {input_tokens:,} in / {output_tokens:,} out "
            f"(total {input_tokens + output_tokens:,})[/dim]"
        )

    def prompt(self, prompt_text: str = "> ") -> str:
        """Prompt for input."""
        return self.console.input(f"[bold green]{prompt_text}[/bold green]")

    def confirm(self, message: str) -> bool:
        """Ask a yes/no question; anything but yes declines."""
        return Confirm.ask(message, console=self.console, default=False)

    def choose_session(self, sessions: list[SessionMetadata]) -> str | None:
        """Show recent sessions and return the chosen id (None to cancel)."""
        if not sessions:
            self.print_info("No saved sessions.")
            return None
        table = Table(title="Saved sessions")
        table.add_column("#", justify="right")
        table.add_column("Updated")
        table.add_column("Messages", justify="right")
        table.add_column("Preview")
        for index, meta in enumerate(sessions, start=1):
            table.add_row(str(index), meta.updated_at[:19].replace("T", " "), str(meta.message_count), meta.preview)
        self.console.print(table)

        choice = Prompt.ask("Session number (empty to cancel)", console=self.console, default="")
        choice = choice.strip()
        if not choice:
            return None
        if not choice.isdigit() or not 1 <= int(choice) <= len(sessions):
            self.print_error(f"Invalid selection: {choice}")
            return None
        return sessions[int(choice) - 1].id

    def render_spinner(self, frame: str, message: str) -> None:
        self.console.file.write(f"\r\033[2K{frame} {message} (Press ESC to interrupt)")
        self.console.file.flush()

    def clear_spinner(self) -> None:
        self.console.file.write("\r\033[2K")
        self.console.file.flush()

    def can_capture_escape(self) -> bool:
        """Whether ESC key capture is available on this terminal."""
        return os.name == "posix" and sys.stdin.isatty()

    async def wait_for_escape(self) -> bool:
        """Wait asynchronously for ESC key press."""
        if not self.can_capture_escape():
            await asyncio.Event().wait()
            return False

        fd = sys.stdin.fileno()
        loop = asyncio.get_running_loop()
        old = termios.tcgetattr(fd)
        fut: asyncio.Future[bool] = loop.create_future()

        def _on_stdin_ready() -> None:
            try:
                ch = os.read(fd, 1)
            except OSError:
                ch = b""
            if ch == b"\x1b" and not fut.done():
                fut.set_result(True)

        try:
            tty.setcbreak(fd)
            loop.add_reader(fd, _on_stdin_ready)
            return await fut
        finally:
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSADRAIN, old)

    def handle_special_command(self, cmd: str) -> tuple[str, str] | None:
        """Parse a slash command into ``(action, argument)``.

        Returns None for plain input. Unknown commands and usage errors are
        reported here and come back as ``("NOOP", "")``.
        """
        cmd = cmd.strip()
        if not cmd.startswith("/"):
            return None

        parts = cmd.split(None, 1)
        command = parts[0].lower()
        args = parts[1].strip().lower() if len(parts) > 1 else ""

        if command in ("/help", "/h", "/?"):
            self.print_help()
            return "NOOP", ""
        if command in ("/exit", "/quit", "/q"):
            return "EXIT", ""
        if command == "/clear":
            return "CLEAR", ""
        if command == "/resume":
            return "RESUME", ""
        if command == "/think":
            if args in ("on", "off"):
                return "THINK", args
            if not args:
                return "THINK_STATUS", ""
            self.print_error("Usage: /think on|off")
            return "NOOP", ""
        if command == "/s":
            return "SAFE_MODE", ""
        if command == "/n":
            return "NORMAL_MODE", ""

        self.print_error(f"Unknown command: {command}")
        return "NOOP", ""
