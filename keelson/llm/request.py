"""Assemble provider-agnostic completion requests."""

from dataclasses import dataclass

from keelson.config import MIN_THINKING_BUDGET
from keelson.conversation import ConversationStore
from keelson.exceptions import ConfigurationError
from keelson.llm import CompletionRequest, ThinkingConfig, ToolSpec


@dataclass
class ReasoningSettings:
    """Extended-thinking switch and budget for one session."""

    enabled: bool = False
    budget_tokens: int = 5000


class RequestBuilder:
    """Build a CompletionRequest from conversation, tool catalog and reasoning config."""

    def __init__(
        self,
        model: str,
        max_tokens: int,
        reasoning: ReasoningSettings | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.reasoning = reasoning or ReasoningSettings()
        self.validate()

    @classmethod
    def from_config(cls, config) -> "RequestBuilder":
        config.model.validate_reasoning()
        return cls(
            model=config.model.model,
            max_tokens=config.model.max_tokens,
            reasoning=ReasoningSettings(
                enabled=config.model.enable_thinking,
                budget_tokens=config.model.thinking_budget,
            ),
        )

    def validate(self) -> None:
        if not self.reasoning.enabled:
            return
        if self.reasoning.budget_tokens < MIN_THINKING_BUDGET:
            raise ConfigurationError(
                f"thinking_budget ({self.reasoning.budget_tokens}) must be at least {MIN_THINKING_BUDGET}"
            )
        if self.reasoning.budget_tokens >= self.max_tokens:
            raise ConfigurationError(
                f"thinking_budget ({self.reasoning.budget_tokens}) must be less than max_tokens ({self.max_tokens})"
            )

    def set_thinking(self, enabled: bool) -> None:
        """Toggle extended thinking for subsequent requests."""
        previous = self.reasoning.enabled
        self.reasoning.enabled = enabled
        try:
            self.validate()
        except ConfigurationError:
            self.reasoning.enabled = previous
            raise

    def build(
        self,
        conversation: ConversationStore,
        tools: list[ToolSpec],
    ) -> CompletionRequest:
        thinking = None
        if self.reasoning.enabled:
            thinking = ThinkingConfig(budget_tokens=self.reasoning.budget_tokens)
        return CompletionRequest(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=list(conversation.messages),
            system=conversation.system_prompt,
            tools=list(tools),
            thinking=thinking,
        )
