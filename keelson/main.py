"""Main entry point for Keelson."""

import asyncio
import sys
from pathlib import Path

import typer

from keelson.agent import AgentLoop, SessionState, TurnResult
from keelson.cli import TerminalUI
from keelson.config import STATE_DIR_NAME, Config, set_config
from keelson.conversation import ConversationStore
from keelson.exceptions import ConfigurationError, SessionNotFoundError, TransportError
from keelson.instructions import build_system_prompt
from keelson.interrupt import InterruptSignal
from keelson.llm import create_provider
from keelson.llm.request import RequestBuilder
from keelson.llm.transport import RetryingTransport
from keelson.logging import configure_logging, get_logger
from keelson.session import SessionManager
from keelson.tools import build_tool_registry
from keelson.tools.permissions import PERMISSIONS_FILENAME, PermissionEngine

log = get_logger(__name__)

LOG_FILENAME = "keelson.log"
SESSION_CLEARED_MESSAGE = "The session history has been cleared"

app = typer.Typer(help="Keelson - a terminal coding agent confined to one workspace", add_completion=False)


def _load_config(
    config: str,
    model: str,
    max_tokens: int | None,
    enable_thinking: bool,
    thinking_budget: int | None,
    safe_mode: bool,
) -> Config:
    cfg = Config.load(Path(config) if config else None)
    if model:
        cfg.model.model = model
    if max_tokens is not None:
        cfg.model.max_tokens = max_tokens
    if enable_thinking:
        cfg.model.enable_thinking = True
    if thinking_budget is not None:
        cfg.model.thinking_budget = thinking_budget
    if safe_mode:
        cfg.tools.safe_mode = True
    cfg.model.validate_reasoning()
    return cfg


def main(
    config: str = "",
    model: str = "",
    prompt: str = "",
    resume: bool = False,
    max_tokens: int | None = None,
    enable_thinking: bool = False,
    thinking_budget: int | None = None,
    safe_mode: bool = False,
    verbose: bool = False,
) -> None:
    """Start a Keelson session."""
    ui = TerminalUI()
    try:
        cfg = _load_config(config, model, max_tokens, enable_thinking, thinking_budget, safe_mode)
    except ConfigurationError as e:
        ui.print_error(str(e))
        sys.exit(1)
    set_config(cfg)

    workspace = cfg.resolved_workspace_path(Path.cwd())
    if not workspace.is_dir():
        ui.print_error(f"Workspace does not exist: {workspace}")
        sys.exit(1)

    log_file = cfg.logging.file or str(workspace / STATE_DIR_NAME / LOG_FILENAME)
    configure_logging(level="DEBUG" if verbose else None, file=log_file)
    ui.show_thinking = cfg.ui.show_thinking

    try:
        exit_code = asyncio.run(run_interactive(cfg, ui, workspace, prompt=prompt, resume=resume))
    except ConfigurationError as e:
        ui.print_error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    sys.exit(exit_code)


def _report_turn(ui: TerminalUI, cfg: Config, result: TurnResult) -> None:
    if cfg.ui.show_tokens:
        ui.print_tokens(result.state.total_input_tokens, result.state.total_output_tokens)


async def run_interactive(
    cfg: Config,
    ui: TerminalUI,
    workspace: Path,
    prompt: str = "",
    resume: bool = False,
) -> int:
    """Run the REPL (or a single prompt) until the user exits.

    Returns:
        Process exit code
    """
    permissions = PermissionEngine.load(workspace / STATE_DIR_NAME / PERMISSIONS_FILENAME)
    tools = build_tool_registry(workspace, permissions, cfg, confirm=ui.confirm)
    request_builder = RequestBuilder.from_config(cfg)
    session_manager = SessionManager(cfg.resolved_state_path(cfg.session.path, workspace))
    system_prompt = build_system_prompt(workspace)

    def _interrupt_signal(message: str) -> InterruptSignal:
        return InterruptSignal(
            ui.wait_for_escape if ui.can_capture_escape() else None,
            ui.render_spinner,
            ui.clear_spinner,
            message,
            cfg.ui.spinner_interval,
        )

    def _new_state() -> SessionState:
        return SessionState.new(ConversationStore.from_config(cfg, system_prompt=system_prompt))

    async def _pick_session() -> SessionState | None:
        sessions = await session_manager.list_sessions(limit=20)
        selected = ui.choose_session(sessions)
        if selected is None:
            return None
        try:
            session = await session_manager.load_session(selected)
        except SessionNotFoundError as e:
            ui.print_error(str(e))
            return None
        ui.print_info(f"Resumed session with {len(session.messages)} messages")
        return SessionState.from_session(
            session,
            ConversationStore.from_config(cfg, system_prompt=system_prompt),
        )

    async def _run_turn(state: SessionState, text: str) -> bool:
        try:
            result = await agent.run_turn(state, text)
        except TransportError as e:
            ui.print_error(str(e))
            log.error("Provider call failed", error=str(e), session_id=state.id)
            return False
        _report_turn(ui, cfg, result)
        return True

    state = _new_state()
    provider = create_provider(
        provider=cfg.model.provider,
        api_key=cfg.model.resolved_api_key(),
        base_url=cfg.model.base_url or None,
        timeout=cfg.model.request_timeout,
    )
    try:
        agent = AgentLoop(
            provider=provider,
            tools=tools,
            request_builder=request_builder,
            transport=RetryingTransport.from_config(cfg),
            session_manager=session_manager if cfg.session.auto_save else None,
            max_iterations=cfg.agent.max_iterations,
            interrupt_factory=_interrupt_signal,
            text_callback=ui.print_assistant,
            thinking_callback=ui.print_thinking,
            tool_call_callback=ui.print_tool_call,
            tool_output_callback=ui.print_tool_output,
            warning_callback=ui.print_warning,
        )

        if prompt:
            ok = await _run_turn(state, prompt)
            return 0 if ok else 1

        ui.print_welcome(str(workspace), cfg.model.model, safe_mode=tools.read_only)
        if resume:
            state = await _pick_session() or state

        while True:
            try:
                user_input = await asyncio.to_thread(ui.prompt)
            except (KeyboardInterrupt, EOFError):
                log.info("Input closed")
                break

            result = ui.handle_special_command(user_input)
            if result is not None:
                action, arg = result
                if action == "EXIT":
                    log.info("User requested exit")
                    break
                elif action == "CLEAR":
                    state.reset()
                    ui.print_info(SESSION_CLEARED_MESSAGE)
                elif action == "RESUME":
                    state = await _pick_session() or state
                elif action == "THINK":
                    try:
                        request_builder.set_thinking(arg == "on")
                    except ConfigurationError as e:
                        ui.print_error(str(e))
                        continue
                    ui.print_info(f"Extended thinking {'enabled' if arg == 'on' else 'disabled'}")
                elif action == "THINK_STATUS":
                    reasoning = request_builder.reasoning
                    status = f"on (budget {reasoning.budget_tokens} tokens)" if reasoning.enabled else "off"
                    ui.print_info(f"Extended thinking is {status}")
                elif action == "SAFE_MODE":
                    agent.set_safe_mode(state, True)
                    ui.print_info("Safe mode enabled: read-only tools only")
                elif action == "NORMAL_MODE":
                    agent.set_safe_mode(state, False)
                    ui.print_info("Normal mode enabled: all tools available")
                continue

            if not user_input.strip():
                continue
            await _run_turn(state, user_input)
    finally:
        await provider.close()
        await session_manager.close()
    return 0


@app.command()
def run(
    prompt: str = typer.Option("", "-p", "--prompt", help="Run a single prompt and exit"),
    resume: bool = typer.Option(False, "-r", "--resume", help="Pick a saved session to resume"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    max_tokens: int | None = typer.Option(None, "--max-tokens", help="Override max output tokens"),
    enable_thinking: bool = typer.Option(False, "--enable-thinking", help="Enable extended thinking"),
    thinking_budget: int | None = typer.Option(None, "--thinking-budget", help="Thinking budget in tokens"),
    safe_mode: bool = typer.Option(False, "--safe-mode", help="Start with read-only tools only"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    main(
        config=config,
        model=model,
        prompt=prompt,
        resume=resume,
        max_tokens=max_tokens,
        enable_thinking=enable_thinking,
        thinking_budget=thinking_budget,
        safe_mode=safe_mode,
        verbose=verbose,
    )


if __name__ == "__main__":
    app()
