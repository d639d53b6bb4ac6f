"""Agent run-loop: completions, sequential tool dispatch, iteration ceiling."""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from keelson.conversation import ConversationStore
from keelson.exceptions import ToolError
from keelson.instructions import NORMAL_MODE_MESSAGE, SAFE_MODE_MESSAGE
from keelson.interrupt import InterruptSignal
from keelson.llm import (
    CompletionResponse,
    LLMProvider,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from keelson.llm.request import RequestBuilder
from keelson.llm.transport import RetryingTransport
from keelson.logging import get_logger
from keelson.session import DisplayEntry, Session, SessionManager, new_session_id
from keelson.tools.registry import ToolRegistry

log = get_logger(__name__)

INITIAL_INTERRUPT_MESSAGE = (
    "INTERRUPT: The user pressed ESC to interrupt the request before receiving a response. "
    "They want to provide additional guidance or clarification. Wait for their next message."
)

FOLLOWUP_INTERRUPT_MESSAGE = (
    "INTERRUPT: The user pressed ESC while waiting for your response after tool execution. "
    "Tools that were executed: {tools}. The user wants to provide additional guidance before "
    "you continue. Wait for their next message."
)

MAX_ITERATIONS_MESSAGE = (
    "SYSTEM INTERRUPTION: You have reached the maximum number of tool iterations ({limit}). "
    "This limit prevents infinite loops. Please provide a summary of what you've accomplished "
    "so far and suggest how the user should proceed. Consider breaking down the task into "
    "smaller steps or asking the user for clarification."
)

SKIPPED_AFTER_CANCEL_MESSAGE = (
    "Not executed: the user cancelled an earlier operation in this turn."
)

EMPTY_RESPONSE_MESSAGE = (
    "I've completed the tool operations but didn't generate a response. "
    "Ask me to summarize or continue if needed."
)


class LoopOutcome(str, Enum):
    """How a turn ended."""

    DONE = "done"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"
    ITERATION_LIMIT = "iteration_limit"


@dataclass
class SessionState:
    """Everything a session carries between turns."""

    id: str
    conversation: ConversationStore
    display_log: list[DisplayEntry] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    created_at: str | None = None

    @classmethod
    def new(cls, conversation: ConversationStore) -> "SessionState":
        return cls(id=new_session_id(), conversation=conversation)

    @classmethod
    def from_session(cls, session: Session, conversation: ConversationStore) -> "SessionState":
        """Rebuild runtime state from a stored session.

        The conversation keeps its current system prompt; the stored one is
        informational.
        """
        conversation.restore(session.messages)
        return cls(
            id=session.id,
            conversation=conversation,
            display_log=list(session.display_log),
            total_input_tokens=session.input_tokens,
            total_output_tokens=session.output_tokens,
            created_at=session.created_at,
        )

    def reset(self) -> None:
        """Start over under a new session id with an empty history."""
        self.id = new_session_id()
        self.conversation.clear()
        self.display_log = []
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.created_at = None

    def add_usage(self, usage: Usage) -> None:
        self.total_input_tokens += usage.input_tokens
        self.total_output_tokens += usage.output_tokens

    def to_session(self) -> Session:
        session = Session(
            id=self.id,
            messages=self.conversation.messages,
            display_log=list(self.display_log),
            system_prompt=self.conversation.system_prompt,
            input_tokens=self.total_input_tokens,
            output_tokens=self.total_output_tokens,
        )
        if self.created_at:
            session.created_at = self.created_at
        else:
            self.created_at = session.created_at
        return session


@dataclass
class TurnResult:
    """Returned by ``AgentLoop.run_turn``."""

    state: SessionState
    outcome: LoopOutcome
    text: str = ""
    completion_calls: int = 0
    usage: Usage = field(default_factory=Usage)


def _noop(*args: Any) -> None:
    return None


class AgentLoop:
    """Drive one user turn to completion.

    A turn alternates between a completion call and sequential execution of the
    tool calls it requested, until the model answers without tools, the user
    interrupts or declines a destructive operation, or ``max_iterations``
    completion calls have been made. At the ceiling the model is asked for a
    summary with one last call, and the turn ends whatever that call returns.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        request_builder: RequestBuilder,
        transport: RetryingTransport | None = None,
        session_manager: SessionManager | None = None,
        max_iterations: int = 200,
        interrupt_factory: Callable[[str], InterruptSignal] | None = None,
        text_callback: Callable[[str], None] | None = None,
        thinking_callback: Callable[[str], None] | None = None,
        tool_call_callback: Callable[[str, dict[str, Any]], None] | None = None,
        tool_output_callback: Callable[[str, str, bool], None] | None = None,
        warning_callback: Callable[[str], None] | None = None,
    ):
        """Initialize the loop.

        Args:
            provider: Completion provider
            tools: Tool registry used as the executor
            request_builder: Builds each completion request
            transport: Retry wrapper around provider calls
            session_manager: Optional persistence; the session is saved after every turn
            max_iterations: Completion calls allowed before the summary call
            interrupt_factory: Builds the spinner/ESC listener for one provider call
        """
        self.provider = provider
        self.tools = tools
        self.request_builder = request_builder
        self.transport = transport or RetryingTransport()
        self.session_manager = session_manager
        self.max_iterations = max(1, int(max_iterations))
        self.interrupt_factory = interrupt_factory or (lambda message: InterruptSignal(message=message))
        self.text_callback = text_callback or _noop
        self.thinking_callback = thinking_callback or _noop
        self.tool_call_callback = tool_call_callback or _noop
        self.tool_output_callback = tool_output_callback or _noop
        self.warning_callback = warning_callback or _noop

    async def run_turn(self, state: SessionState, user_text: str) -> TurnResult:
        """Append the user's message and run the loop until the turn ends.

        Raises:
            TransportError: the provider could not be reached after retries. The
                user's message stays in the conversation.
        """
        state.conversation.add_user(user_text)
        state.display_log.append(DisplayEntry(kind="user", content=user_text))
        try:
            return await self._run(state)
        finally:
            await self._persist(state)

    async def _run(self, state: SessionState) -> TurnResult:
        turn = TurnResult(state=state, outcome=LoopOutcome.DONE)

        response, interrupted = await self._complete(state, turn, "Processing...")
        if interrupted:
            self._record_interrupt(state, INITIAL_INTERRUPT_MESSAGE)
            turn.outcome = LoopOutcome.INTERRUPTED
            return turn

        while True:
            blocks = list(response.content)
            self._check_stop_reason(response)
            turn.text = self._render(state, blocks) or turn.text

            if not blocks:
                if turn.completion_calls > 1:
                    self.warning_callback(EMPTY_RESPONSE_MESSAGE)
                return turn

            state.conversation.add_assistant(blocks)
            tool_uses = [block for block in blocks if isinstance(block, ToolUseBlock)]
            if not tool_uses:
                return turn

            results, executed, cancelled = await self._dispatch(state, tool_uses)
            state.conversation.add_tool_results(results)
            if cancelled:
                log.info("Turn cancelled by user", executed=executed)
                turn.outcome = LoopOutcome.CANCELLED
                return turn

            if turn.completion_calls >= self.max_iterations:
                return await self._summarize_at_ceiling(state, turn)

            response, interrupted = await self._complete(state, turn, "Awaiting response...")
            if interrupted:
                self._record_interrupt(
                    state,
                    FOLLOWUP_INTERRUPT_MESSAGE.format(tools=", ".join(executed) or "none"),
                )
                turn.outcome = LoopOutcome.INTERRUPTED
                return turn

    async def _complete(
        self,
        state: SessionState,
        turn: TurnResult,
        message: str,
    ) -> tuple[CompletionResponse, bool]:
        """One provider call under the spinner/ESC listener. Never cancelled mid-flight."""
        request = self.request_builder.build(state.conversation, self.tools.get_definitions())
        log.info(
            "Calling provider",
            session_id=state.id,
            call=turn.completion_calls + 1,
            messages=len(request.messages),
        )
        turn.completion_calls += 1
        async with self.interrupt_factory(message) as signal:
            response = await self.transport.call(lambda: self.provider.complete(request))

        state.add_usage(response.usage)
        turn.usage.input_tokens += response.usage.input_tokens
        turn.usage.output_tokens += response.usage.output_tokens
        if signal.interrupted:
            log.info("Discarding response after interrupt", session_id=state.id)
        return response, signal.interrupted

    async def _dispatch(
        self,
        state: SessionState,
        tool_uses: list[ToolUseBlock],
    ) -> tuple[list[ToolResultBlock], list[str], bool]:
        """Run tool calls one at a time, in the order the model emitted them."""
        results: list[ToolResultBlock] = []
        executed: list[str] = []
        cancelled = False

        for tool_use in tool_uses:
            if cancelled:
                results.append(
                    ToolResultBlock(
                        tool_use_id=tool_use.id,
                        content=SKIPPED_AFTER_CANCEL_MESSAGE,
                        is_error=True,
                    )
                )
                continue

            self.tool_call_callback(tool_use.name, tool_use.input)
            try:
                result = await self.tools.execute(tool_use.name, tool_use.input)
                output = result.to_text()
                is_error = not result.success
                cancelled = result.cancelled
            except ToolError as e:
                log.warning("Tool call failed", tool=tool_use.name, error=str(e))
                output = f"Error: {e}"
                is_error = True

            executed.append(tool_use.name)
            state.display_log.append(
                DisplayEntry(
                    kind="tool",
                    content=output,
                    tool_name=tool_use.name,
                    tool_input=tool_use.input,
                )
            )
            self.tool_output_callback(tool_use.name, output, is_error)
            results.append(ToolResultBlock(tool_use_id=tool_use.id, content=output, is_error=is_error))

        return results, executed, cancelled

    async def _summarize_at_ceiling(self, state: SessionState, turn: TurnResult) -> TurnResult:
        log.warning("Reached maximum tool iterations", limit=self.max_iterations, session_id=state.id)
        state.conversation.add_user(MAX_ITERATIONS_MESSAGE.format(limit=self.max_iterations))

        response, interrupted = await self._complete(state, turn, "Summarizing...")
        if interrupted:
            self._record_interrupt(state, INITIAL_INTERRUPT_MESSAGE)
            turn.outcome = LoopOutcome.INTERRUPTED
            return turn

        # Tool calls in the summary response are never executed, so they are not stored.
        blocks = [block for block in response.content if isinstance(block, (TextBlock, ThinkingBlock))]
        turn.text = self._render(state, blocks) or turn.text
        if blocks:
            state.conversation.add_assistant(blocks)
        turn.outcome = LoopOutcome.ITERATION_LIMIT
        return turn

    def _render(self, state: SessionState, blocks: list[Any]) -> str:
        """Show text and thinking blocks; return the concatenated text."""
        texts: list[str] = []
        for block in blocks:
            if isinstance(block, ThinkingBlock):
                self.thinking_callback(block.thinking)
            elif isinstance(block, TextBlock) and block.text.strip():
                self.text_callback(block.text)
                texts.append(block.text)
        text = "\n\n".join(texts)
        if text:
            state.display_log.append(DisplayEntry(kind="assistant", content=text))
        return text

    def _check_stop_reason(self, response: CompletionResponse) -> None:
        if response.stop_reason == "max_tokens":
            log.warning("Response hit max_tokens", max_tokens=self.request_builder.max_tokens)
            self.warning_callback(
                f"The response reached the max_tokens limit ({self.request_builder.max_tokens}) "
                "and may be truncated. Increase max_tokens to allow longer responses."
            )

    def _record_interrupt(self, state: SessionState, message: str) -> None:
        state.conversation.add_user(message)
        self.warning_callback("Interrupted. Waiting for your guidance.")

    async def _persist(self, state: SessionState) -> None:
        if self.session_manager is None:
            return
        await self.session_manager.save_session(state.to_session())

    def set_safe_mode(self, state: SessionState, enabled: bool) -> SessionState:
        """Switch between read-only and normal tool sets, telling the model."""
        self.tools.set_read_only(enabled)
        if enabled:
            note = SAFE_MODE_MESSAGE.format(tools=", ".join(self.tools.list_tools()))
        else:
            note = NORMAL_MODE_MESSAGE
        state.conversation.add_user(note)
        log.info("Tool mode changed", safe_mode=enabled, session_id=state.id)
        return state
