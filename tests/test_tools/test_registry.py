import asyncio

import pytest

from keelson.exceptions import ToolBlockedError, ToolExecutionError, ToolNotFoundError
from keelson.tools.registry import Tool, ToolArguments, ToolPolicy, ToolRegistry, ToolResult


class EchoArguments(ToolArguments):
    text: str
    repeat: int = 1


class EchoTool(Tool):
    name = "echo"
    description = "Echo text"
    args_model = EchoArguments
    read_only = True

    def __init__(self):
        self.calls: list[dict] = []

    async def execute(self, text: str, repeat: int = 1, **kwargs):
        self.calls.append({"text": text, "repeat": repeat, "confirm": kwargs.get("_confirm")})
        return ToolResult(success=True, content=text * repeat)


class WriterTool(Tool):
    name = "writer"
    description = "Writes things"

    async def execute(self, **kwargs):
        return ToolResult(success=True, content="written")


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class BrokenTool(Tool):
    name = "broken"
    description = "Raises"

    async def execute(self, **kwargs):
        raise RuntimeError("boom")


def test_definitions_use_argument_model_schema():
    registry = ToolRegistry()
    registry.register(EchoTool())

    [spec] = registry.get_definitions()

    assert spec.name == "echo"
    assert spec.input_schema["type"] == "object"
    assert spec.input_schema["required"] == ["text"]
    assert set(spec.input_schema["properties"]) == {"text", "repeat"}
    assert "title" not in spec.input_schema


@pytest.mark.asyncio
async def test_execute_validates_and_passes_confirm_callback():
    registry = ToolRegistry()
    tool = EchoTool()
    registry.register(tool)

    def approve(question: str) -> bool:
        return True

    registry.set_approval_callback(approve)

    result = await registry.execute("echo", {"text": "ab", "repeat": 2, "extra": "ignored"})

    assert result.content == "abab"
    assert tool.calls == [{"text": "ab", "repeat": 2, "confirm": approve}]


@pytest.mark.asyncio
async def test_invalid_arguments_raise_execution_error():
    registry = ToolRegistry()
    registry.register(EchoTool())

    with pytest.raises(ToolExecutionError, match="Invalid arguments: text"):
        await registry.execute("echo", {"repeat": 3})


@pytest.mark.asyncio
async def test_unknown_tool():
    registry = ToolRegistry()

    with pytest.raises(ToolNotFoundError, match="Unknown tool: nope"):
        await registry.execute("nope", {})


@pytest.mark.asyncio
async def test_safe_mode_restricts_catalog_and_dispatch():
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(WriterTool())

    registry.set_read_only(True)

    assert registry.read_only is True
    assert registry.list_tools() == ["echo"]
    with pytest.raises(ToolBlockedError):
        await registry.execute("writer", {})

    registry.set_read_only(False)

    assert registry.read_only is False
    assert registry.list_tools() == ["echo", "writer"]
    assert (await registry.execute("writer", {})).content == "written"


@pytest.mark.asyncio
async def test_timeout_is_reported_as_execution_error():
    registry = ToolRegistry()
    registry.register(SlowTool())

    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_unexpected_handler_errors_are_wrapped():
    registry = ToolRegistry()
    registry.register(BrokenTool())

    with pytest.raises(ToolExecutionError, match="Tool 'broken' failed: boom"):
        await registry.execute("broken", {})


def test_failed_result_always_has_error_text():
    result = ToolResult(success=False, content="exit 2")

    assert result.error == "exit 2"
    assert result.to_text() == "Error: exit 2"


def test_policy_permits_case_insensitively():
    policy = ToolPolicy(allow=["READ_FILE"])

    assert policy.permits("read_file") is True
    assert policy.permits("write_file") is False
    assert ToolPolicy().permits("write_file") is True
