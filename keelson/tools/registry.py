"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from keelson.exceptions import (
    ToolBlockedError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
)
from keelson.llm import ToolSpec
from keelson.logging import get_logger

log = get_logger(__name__)

ConfirmCallback = Callable[[str], bool]


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for policy comparisons."""
    return str(value or "").strip().lower()


class ToolArguments(BaseModel):
    """Base model for per-tool input validation."""

    model_config = ConfigDict(extra="ignore")


class ToolResult(BaseModel):
    """Result from tool execution.

    ``cancelled`` marks a destructive operation the user declined; the agent
    loop stops dispatching the rest of the turn when it sees one.
    """

    success: bool = True
    content: str = ""
    error: str | None = None
    cancelled: bool = False

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def to_text(self) -> str:
        """Text handed back to the model."""
        if self.success:
            return self.content
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    args_model: type[ToolArguments] = ToolArguments
    read_only: bool = False
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Validated tool arguments plus ``_confirm`` (interactive
                confirmation callback, may be None)

        Returns:
            ToolResult with success status and content
        """
        pass

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON schema of the tool input."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        return schema

    def get_definition(self) -> ToolSpec:
        """Get the tool definition advertised to the model."""
        return ToolSpec(
            name=self.name,
            description=self.description,
            input_schema=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate tool arguments against the tool's argument model.

        Raises:
            ToolExecutionError if invalid
        """
        try:
            parsed = self.args_model.model_validate(arguments or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolExecutionError(self.name, f"Invalid arguments: {problems}") from e
        return parsed.model_dump()


class ToolPolicy(BaseModel):
    """Policy rule set for filtering available tools."""

    allow: list[str] | None = None

    def permits(self, name: str) -> bool:
        if self.allow is None:
            return True
        return _normalize_tool_name(name) in {_normalize_tool_name(n) for n in self.allow}


class ToolRegistry:
    """Registry mapping tool names to handlers; the executor for model tool calls."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._global_policy: ToolPolicy | None = None
        self._approval_callback: ConfirmCallback | None = None

    def set_approval_callback(self, callback: ConfirmCallback | None) -> None:
        """Set the callback used for interactive confirmations."""
        self._approval_callback = callback

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def set_global_policy(self, policy: ToolPolicy | None) -> None:
        """Set the policy applied to the catalog and to dispatch."""
        self._global_policy = policy

    def set_read_only(self, enabled: bool) -> None:
        """Restrict catalog and dispatch to read-only tools (safe mode)."""
        if enabled:
            allow = [tool.name for tool in self._tools.values() if tool.read_only]
            self.set_global_policy(ToolPolicy(allow=allow))
        else:
            self.set_global_policy(None)

    @property
    def read_only(self) -> bool:
        return self._global_policy is not None and self._global_policy.allow is not None

    def _resolve_tools(self) -> list[Tool]:
        """Resolve currently available tools after policy filtering."""
        if self._global_policy is None:
            return list(self._tools.values())
        return [tool for tool in self._tools.values() if self._global_policy.permits(tool.name)]

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List available tool names."""
        return [tool.name for tool in self._resolve_tools()]

    def get_definitions(self) -> list[ToolSpec]:
        """Get definitions of all available tools."""
        return [tool.get_definition() for tool in self._resolve_tools()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Raw tool input from the model

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolBlockedError if the tool is not available in the current mode
            ToolError subclasses raised by the handler
            ToolExecutionError if execution fails unexpectedly or times out
        """
        tool = self.get(name)

        if self._global_policy is not None and not self._global_policy.permits(name):
            raise ToolBlockedError(name, "Not available in safe (read-only) mode")

        validated = tool.validate_arguments(arguments)

        timeout_seconds = max(1.0, float(tool.timeout_seconds or 30.0))
        log.info("Executing tool", tool=name, args=arguments)
        try:
            result = await asyncio.wait_for(
                tool.execute(**validated, _confirm=self._approval_callback),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s") from e
        except ToolError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success, cancelled=result.cancelled)
        return result
