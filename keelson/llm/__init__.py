"""Provider-agnostic completion types and the Anthropic Messages provider."""

from abc import ABC, abstractmethod
from typing import Annotated, Any, Literal, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from keelson.exceptions import ConfigurationError, TransportError
from keelson.logging import get_logger

log = get_logger(__name__)


ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseModel):
    """Reasoning text plus the opaque signature the provider needs echoed back."""

    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str = ""


class SummaryBlock(BaseModel):
    type: Literal["summary"] = "summary"
    summary: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


class ServerToolUseBlock(BaseModel):
    """Tool call executed on the provider side (e.g. hosted web search)."""

    type: Literal["server_tool_use"] = "server_tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class WebSearchResult(BaseModel):
    type: str = "web_search_result"
    title: str = ""
    url: str = ""
    page_age: str | None = None
    encrypted_content: str | None = None


class WebSearchResultBlock(BaseModel):
    type: Literal["web_search_tool_result"] = "web_search_tool_result"
    tool_use_id: str
    content: list[WebSearchResult] | dict[str, Any] = Field(default_factory=list)


ContentBlock = Annotated[
    Union[
        TextBlock,
        ThinkingBlock,
        SummaryBlock,
        ToolUseBlock,
        ToolResultBlock,
        ServerToolUseBlock,
        WebSearchResultBlock,
    ],
    Field(discriminator="type"),
]

_content_block_adapter: TypeAdapter[Any] = TypeAdapter(ContentBlock)


class Message(BaseModel):
    """A message in the conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def blocks(self) -> list[Any]:
        """Content as a block list; plain text becomes a single TextBlock."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return list(self.content)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.blocks() if isinstance(block, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.blocks() if isinstance(block, ToolResultBlock)]


class ToolSpec(BaseModel):
    """Definition of a tool advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


class ThinkingConfig(BaseModel):
    type: Literal["enabled"] = "enabled"
    budget_tokens: int


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionRequest(BaseModel):
    model: str
    max_tokens: int
    messages: list[Message]
    system: str = ""
    tools: list[ToolSpec] = Field(default_factory=list)
    thinking: ThinkingConfig | None = None


class CompletionResponse(BaseModel):
    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)
    model: str = ""


def parse_content_blocks(raw_blocks: list[dict[str, Any]]) -> list[Any]:
    """Validate raw content blocks, skipping kinds this client does not model."""
    blocks: list[Any] = []
    for raw in raw_blocks or []:
        try:
            blocks.append(_content_block_adapter.validate_python(raw))
        except ValidationError:
            log.debug("Skipping unsupported content block", block_type=raw.get("type"))
    return blocks


class LLMProvider(ABC):
    """Abstract base class for completion providers."""

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one completion; raises TransportError on failure."""
        pass

    async def close(self) -> None:
        """Release provider resources."""
        return None


class AnthropicProvider(LLMProvider):
    """Direct Anthropic Messages API provider."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_BASE_URL,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Anthropic provider.

        Args:
            api_key: Anthropic API key
            base_url: API base URL (without the ``/messages`` suffix)
            timeout: Request timeout in seconds; expiry is a retryable error
            client: Optional preconfigured HTTP client (tests inject a mock transport)
        """
        self.api_key = api_key
        self.base_url = (base_url or ANTHROPIC_BASE_URL).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @staticmethod
    def _convert_message(message: Message) -> dict[str, Any]:
        if isinstance(message.content, str):
            return {"role": message.role, "content": message.content}
        content = [
            block.model_dump(exclude_none=True)
            for block in message.content
            if not isinstance(block, SummaryBlock)
        ]
        return {"role": message.role, "content": content}

    def _build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [self._convert_message(message) for message in request.messages],
        }
        if request.system:
            payload["system"] = request.system
        if request.tools:
            payload["tools"] = [tool.model_dump() for tool in request.tools]
        if request.thinking is not None:
            payload["thinking"] = request.thinking.model_dump()
        return payload

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send one Messages API request and normalize the response."""
        url = f"{self.base_url}/messages"
        try:
            response = await self.client.post(
                url,
                headers=self._headers(),
                json=self._build_payload(request),
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}", kind="timeout") from e
        except httpx.ConnectError as e:
            raise TransportError(f"Connection failed: {e}", kind="connect") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}", kind="protocol") from e

        if response.status_code >= 400:
            raise TransportError(
                f"API error {response.status_code}: {response.text}",
                kind="status",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON response: {e}", kind="protocol") from e

        usage = data.get("usage") or {}
        return CompletionResponse(
            content=parse_content_blocks(data.get("content") or []),
            stop_reason=data.get("stop_reason"),
            usage=Usage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
            ),
            model=str(data.get("model") or request.model),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "anthropic",
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 300.0,
) -> LLMProvider:
    """Create a completion provider.

    Args:
        provider: Provider name (only ``anthropic`` ships with Keelson)
        api_key: API key
        base_url: Optional base URL
        timeout: Request timeout in seconds

    Returns:
        Configured LLMProvider instance

    Raises:
        ConfigurationError: for any provider other than ``anthropic``
    """
    if provider == "anthropic":
        return AnthropicProvider(
            api_key=api_key or "",
            base_url=base_url or ANTHROPIC_BASE_URL,
            timeout=timeout,
        )
    raise ConfigurationError(f"Provider '{provider}' not supported. Use 'anthropic'.")

