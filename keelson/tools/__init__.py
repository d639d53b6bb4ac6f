"""Tools package for Keelson."""

from pathlib import Path

from keelson.logging import get_logger
from keelson.tools.filesystem import (
    CopyFileTool,
    CreateDirectoryTool,
    DeleteDirectoryTool,
    DeleteFileTool,
    ListDirectoryTool,
    MoveFileTool,
    ReadFileTool,
    WriteFileTool,
)
from keelson.tools.permissions import PermissionEngine
from keelson.tools.registry import Tool, ToolPolicy, ToolRegistry, ToolResult
from keelson.tools.sandbox import PathGuard
from keelson.tools.search import SearchCodeTool, ripgrep_available
from keelson.tools.shell import ShellTool

log = get_logger(__name__)


def build_tool_registry(
    workspace: Path | str,
    permissions: PermissionEngine,
    config,
    confirm=None,
) -> ToolRegistry:
    """Register the workspace tool set for one agent."""
    guard = PathGuard(workspace)
    registry = ToolRegistry()
    registry.set_approval_callback(confirm)

    registry.register(ReadFileTool(guard, permissions, max_file_size=config.tools.max_file_size))
    registry.register(WriteFileTool(guard, permissions))
    registry.register(ListDirectoryTool(guard, permissions))
    registry.register(CreateDirectoryTool(guard, permissions))
    registry.register(DeleteFileTool(guard, permissions))
    registry.register(DeleteDirectoryTool(guard, permissions))
    registry.register(MoveFileTool(guard, permissions))
    registry.register(CopyFileTool(guard, permissions))
    registry.register(
        ShellTool(
            guard.root,
            permissions,
            timeout=config.tools.bash_timeout,
            max_output_bytes=config.tools.max_output_bytes,
        )
    )
    if ripgrep_available():
        registry.register(SearchCodeTool(guard.root, max_count=config.tools.search_max_count))
    else:
        log.warning("ripgrep not found on PATH; search_code is unavailable")

    if config.tools.safe_mode:
        registry.set_read_only(True)
    return registry


__all__ = [
    "Tool",
    "ToolPolicy",
    "ToolRegistry",
    "ToolResult",
    "PathGuard",
    "PermissionEngine",
    "ShellTool",
    "SearchCodeTool",
    "ReadFileTool",
    "WriteFileTool",
    "ListDirectoryTool",
    "CreateDirectoryTool",
    "DeleteFileTool",
    "DeleteDirectoryTool",
    "MoveFileTool",
    "CopyFileTool",
    "build_tool_registry",
]
