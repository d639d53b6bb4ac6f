"""Ordered conversation log with token-budgeted eviction."""

import json
import math
from typing import Any

from keelson.llm import (
    Message,
    ServerToolUseBlock,
    SummaryBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    WebSearchResultBlock,
)
from keelson.logging import get_logger

log = get_logger(__name__)

CHARS_PER_TOKEN = 3.5
MIN_MESSAGES = 10

# Structural overhead per block: ids, signatures, type tags.
_BLOCK_OVERHEAD: dict[type, int] = {
    TextBlock: 10,
    SummaryBlock: 10,
    ThinkingBlock: 20,
    ToolUseBlock: 20,
    ToolResultBlock: 15,
    ServerToolUseBlock: 20,
    WebSearchResultBlock: 20,
}


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per 3.5 characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def estimate_block_tokens(block: Any) -> int:
    """Estimate one content block including its structural overhead."""
    overhead = _BLOCK_OVERHEAD.get(type(block), 10)
    if isinstance(block, TextBlock):
        return estimate_tokens(block.text) + overhead
    if isinstance(block, ThinkingBlock):
        return estimate_tokens(block.thinking) + overhead
    if isinstance(block, SummaryBlock):
        return estimate_tokens(block.summary) + overhead
    if isinstance(block, (ToolUseBlock, ServerToolUseBlock)):
        return estimate_tokens(block.name) + estimate_tokens(_dump(block.input)) + overhead
    if isinstance(block, ToolResultBlock):
        return estimate_tokens(block.content) + overhead
    if isinstance(block, WebSearchResultBlock):
        content = block.content
        if isinstance(content, list):
            content = [item.model_dump(exclude_none=True) for item in content]
        return estimate_tokens(_dump(content)) + overhead
    return overhead


def estimate_message_tokens(message: Message) -> int:
    if isinstance(message.content, str):
        return estimate_tokens(message.content) + _BLOCK_OVERHEAD[TextBlock]
    return sum(estimate_block_tokens(block) for block in message.content)


class ConversationStore:
    """Message history kept within a message-count cap and a token budget.

    Every mutation trims: first the oldest messages beyond ``max_messages`` are
    dropped unconditionally, then the oldest messages are evicted while the
    estimated total (system prompt included) exceeds ``max_context_tokens``.
    Eviction never goes below ``MIN_MESSAGES``; a warning is logged instead.
    """

    def __init__(
        self,
        system_prompt: str = "",
        max_messages: int = 500,
        max_context_tokens: int = 150000,
    ):
        self.system_prompt = system_prompt
        self.max_messages = max_messages
        self.max_context_tokens = max_context_tokens
        self._messages: list[Message] = []

    @classmethod
    def from_config(cls, config, system_prompt: str = "") -> "ConversationStore":
        return cls(
            system_prompt=system_prompt,
            max_messages=config.context.max_messages,
            max_context_tokens=config.context.max_context_tokens,
        )

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def estimated_tokens(self) -> int:
        return estimate_tokens(self.system_prompt) + sum(
            estimate_message_tokens(message) for message in self._messages
        )

    def add_user(self, text: str) -> None:
        self._messages.append(Message(role="user", content=text))
        self._trim()

    def add_assistant(self, blocks: list[Any]) -> None:
        self._messages.append(Message(role="assistant", content=list(blocks)))
        self._trim()

    def add_tool_results(self, results: list[ToolResultBlock]) -> None:
        self._messages.append(Message(role="user", content=list(results)))
        self._trim()

    def restore(self, messages: list[Message]) -> None:
        """Replace the history wholesale (session resume)."""
        self._messages = list(messages)
        self._trim()

    def clear(self) -> None:
        self._messages = []

    def _trim(self) -> None:
        overflow = len(self._messages) - self.max_messages
        if overflow > 0:
            del self._messages[:overflow]
            log.debug("Dropped messages over cap", dropped=overflow, max_messages=self.max_messages)

        total = self.estimated_tokens()
        evicted = 0
        while total > self.max_context_tokens and len(self._messages) > MIN_MESSAGES:
            total -= estimate_message_tokens(self._messages.pop(0))
            evicted += 1

        # A tool-result message whose tool-use partner was evicted cannot lead the history.
        while len(self._messages) > MIN_MESSAGES and self._is_orphaned_result(self._messages[0]):
            total -= estimate_message_tokens(self._messages.pop(0))
            evicted += 1

        if evicted:
            log.debug("Evicted messages over token budget", evicted=evicted, estimated_tokens=total)
        if total > self.max_context_tokens:
            log.warning(
                "Conversation exceeds token budget at eviction floor",
                estimated_tokens=total,
                max_context_tokens=self.max_context_tokens,
                messages=len(self._messages),
            )

    @staticmethod
    def _is_orphaned_result(message: Message) -> bool:
        return message.role == "user" and bool(message.tool_results())
