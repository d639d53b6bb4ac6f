import json

import httpx
import pytest

from keelson.exceptions import ConfigurationError, TransportError
from keelson.llm import (
    AnthropicProvider,
    CompletionRequest,
    Message,
    SummaryBlock,
    TextBlock,
    ThinkingBlock,
    ThinkingConfig,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    create_provider,
)


def _provider(handler) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicProvider(api_key="sk-test", base_url="https://api.test/v1", client=client)


def _request(**overrides) -> CompletionRequest:
    data = {
        "model": "claude-test",
        "max_tokens": 1024,
        "messages": [Message(role="user", content="hi")],
    }
    data.update(overrides)
    return CompletionRequest(**data)


@pytest.mark.asyncio
async def test_complete_normalizes_response_and_sends_headers():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "claude-test",
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 12, "output_tokens": 7},
                "content": [
                    {"type": "thinking", "thinking": "plan", "signature": "sig"},
                    {"type": "text", "text": "Listing."},
                    {"type": "tool_use", "id": "tu_1", "name": "list_directory", "input": {"path": "."}},
                    {"type": "mystery_block", "payload": 1},
                ],
            },
        )

    provider = _provider(handler)
    request = _request(
        system="be brief",
        tools=[ToolSpec(name="list_directory", description="ls", input_schema={"type": "object"})],
        thinking=ThinkingConfig(budget_tokens=2048),
    )

    response = await provider.complete(request)
    await provider.close()

    assert seen["url"] == "https://api.test/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["system"] == "be brief"
    assert seen["body"]["thinking"] == {"type": "enabled", "budget_tokens": 2048}
    assert seen["body"]["tools"][0]["name"] == "list_directory"

    assert response.stop_reason == "tool_use"
    assert response.usage.input_tokens == 12
    assert response.usage.output_tokens == 7
    assert [type(block) for block in response.content] == [ThinkingBlock, TextBlock, ToolUseBlock]
    assert response.content[2].input == {"path": "."}


@pytest.mark.asyncio
async def test_summary_blocks_are_not_sent():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"content": [], "usage": {}})

    provider = _provider(handler)
    messages = [
        Message(role="user", content="go"),
        Message(
            role="assistant",
            content=[SummaryBlock(summary="earlier work"), ToolUseBlock(id="t1", name="x", input={})],
        ),
        Message(role="user", content=[ToolResultBlock(tool_use_id="t1", content="ok")]),
    ]

    await provider.complete(_request(messages=messages))

    assistant = bodies[0]["messages"][1]["content"]
    assert [block["type"] for block in assistant] == ["tool_use"]
    assert bodies[0]["messages"][2]["content"][0]["is_error"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "retryable"),
    [(500, True), (529, True), (400, False), (401, False)],
)
async def test_http_errors_map_to_status_kind(status: int, retryable: bool):
    provider = _provider(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(TransportError) as exc_info:
        await provider.complete(_request())

    assert exc_info.value.kind == "status"
    assert exc_info.value.status_code == status
    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_timeouts_and_connect_failures_are_retryable():
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError) as timed_out:
        await _provider(timeout).complete(_request())
    with pytest.raises(TransportError) as connect:
        await _provider(refused).complete(_request())

    assert timed_out.value.kind == "timeout"
    assert connect.value.kind == "connect"
    assert timed_out.value.retryable and connect.value.retryable


@pytest.mark.asyncio
async def test_invalid_json_is_a_protocol_error():
    provider = _provider(lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(TransportError) as exc_info:
        await provider.complete(_request())

    assert exc_info.value.kind == "protocol"
    assert exc_info.value.retryable is False


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ConfigurationError, match="Provider 'openai' not supported"):
        create_provider(provider="openai")


def test_create_provider_builds_anthropic():
    provider = create_provider(provider="anthropic", api_key="k", base_url="https://proxy.example/v1/")

    assert isinstance(provider, AnthropicProvider)
    assert provider.base_url == "https://proxy.example/v1"
