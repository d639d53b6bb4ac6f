"""File tools confined to the workspace by PathGuard."""

import difflib
import shutil
from pathlib import Path
from typing import Any, Callable

from pydantic import Field

from keelson.exceptions import PermissionDeniedError, ToolExecutionError
from keelson.logging import get_logger
from keelson.tools.permissions import PermissionEngine
from keelson.tools.registry import Tool, ToolArguments, ToolResult
from keelson.tools.sandbox import PathGuard

log = get_logger(__name__)

MAX_DIFF_LINES = 200


class PathArguments(ToolArguments):
    path: str = Field(description="Path relative to the workspace root")


class DirectoryArguments(ToolArguments):
    path: str = Field(default=".", description="Directory path relative to the workspace root")


class WriteArguments(ToolArguments):
    path: str = Field(description="Path relative to the workspace root")
    content: str = Field(description="Complete new file content")


class TransferArguments(ToolArguments):
    source: str = Field(description="Source path relative to the workspace root")
    destination: str = Field(description="Destination path relative to the workspace root")


class WorkspaceTool(Tool):
    """Shared plumbing for tools that touch workspace paths."""

    def __init__(self, guard: PathGuard, permissions: PermissionEngine | None = None):
        self.guard = guard
        self.permissions = permissions

    def _resolve(self, path: str) -> Path:
        return self.guard.validate(path)

    def _check_readable(self, path: str, resolved: Path) -> None:
        if self.permissions is None:
            return
        if self.permissions.is_read_denied(self.guard.relative(resolved)):
            raise PermissionDeniedError(path, "Reading this path is denied by the permission rules", label="Read blocked")

    def _refuse_root(self, path: str, resolved: Path) -> None:
        if resolved == self.guard.root:
            raise ToolExecutionError(self.name, f"Refusing to operate on the workspace root ('{path}')")

    @staticmethod
    def _confirmed(kwargs: dict[str, Any], question: str) -> bool:
        confirm: Callable[[str], bool] | None = kwargs.get("_confirm")
        if confirm is None:
            return False
        return bool(confirm(question))


class ReadFileTool(WorkspaceTool):
    """Read a UTF-8 text file."""

    name = "read_file"
    description = "Read the contents of a text file in the workspace."
    args_model = PathArguments
    read_only = True

    def __init__(self, guard: PathGuard, permissions: PermissionEngine | None = None, max_file_size: int = 10 * 1024 * 1024):
        super().__init__(guard, permissions)
        self.max_file_size = int(max_file_size)

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        resolved = self._resolve(path)
        self._check_readable(path, resolved)

        if not resolved.exists():
            raise ToolExecutionError(self.name, f"File not found: '{path}'")
        if not resolved.is_file():
            raise ToolExecutionError(self.name, f"'{path}' is not a file")

        size = resolved.stat().st_size
        if size > self.max_file_size:
            raise ToolExecutionError(
                self.name,
                f"File '{path}' is too large ({size} bytes, maximum {self.max_file_size})",
            )

        try:
            content = resolved.read_bytes().decode("utf-8")
        except UnicodeDecodeError as e:
            raise ToolExecutionError(self.name, f"File '{path}' is not valid UTF-8 text") from e
        except OSError as e:
            raise ToolExecutionError(self.name, f"Failed to read '{path}': {e}") from e

        return ToolResult(success=True, content=f"File content of '{path}':\n\n{content}")


class WriteFileTool(WorkspaceTool):
    """Create or overwrite a file."""

    name = "write_file"
    description = (
        "Write content to a file in the workspace, creating parent directories as needed. "
        "Overwrites existing files; the result shows a diff of the change."
    )
    args_model = WriteArguments

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        resolved = self._resolve(path)
        if resolved.is_dir():
            raise ToolExecutionError(self.name, f"'{path}' is a directory")

        existed = resolved.exists()
        previous = ""
        if existed:
            previous = resolved.read_text(encoding="utf-8", errors="replace")

        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ToolExecutionError(self.name, f"Failed to write '{path}': {e}") from e

        if not existed:
            log.info("Created file", path=path, chars=len(content))
            return ToolResult(success=True, content=f"Successfully created file '{path}'")

        diff_lines = list(
            difflib.unified_diff(
                previous.splitlines(keepends=True),
                content.splitlines(keepends=True),
                fromfile=f"a/{path}",
                tofile=f"b/{path}",
            )
        )
        if len(diff_lines) > MAX_DIFF_LINES:
            omitted = len(diff_lines) - MAX_DIFF_LINES
            diff_lines = diff_lines[:MAX_DIFF_LINES] + [f"... ({omitted} more diff lines)\n"]
        diff_text = "".join(diff_lines) or "(no changes)\n"
        log.info("Updated file", path=path, chars=len(content))
        return ToolResult(success=True, content=f"Successfully wrote to file '{path}'\n\n{diff_text}")


class ListDirectoryTool(WorkspaceTool):
    """List a directory."""

    name = "list_directory"
    description = "List the entries of a workspace directory. Directories end with '/'."
    args_model = DirectoryArguments
    read_only = True

    async def execute(self, path: str = ".", **kwargs: Any) -> ToolResult:
        resolved = self._resolve(path)
        if not resolved.exists():
            raise ToolExecutionError(self.name, f"Directory not found: '{path}'")
        if not resolved.is_dir():
            raise ToolExecutionError(self.name, f"'{path}' is not a directory")

        entries: list[str] = []
        for child in sorted(resolved.iterdir(), key=lambda item: item.name):
            if self.permissions is not None and self.permissions.is_read_denied(self.guard.relative(child)):
                continue
            entries.append(f"{child.name}/" if child.is_dir() else child.name)

        if not entries:
            return ToolResult(success=True, content=f"Directory '{path}' is empty")
        return ToolResult(success=True, content=f"Contents of '{path}':\n" + "\n".join(entries))


class CreateDirectoryTool(WorkspaceTool):
    name = "create_directory"
    description = "Create a directory (and missing parents) in the workspace."
    args_model = PathArguments

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        resolved = self._resolve(path)
        if resolved.exists() and not resolved.is_dir():
            raise ToolExecutionError(self.name, f"'{path}' exists and is not a directory")
        resolved.mkdir(parents=True, exist_ok=True)
        return ToolResult(success=True, content=f"Successfully created directory '{path}'")


class DeleteFileTool(WorkspaceTool):
    name = "delete_file"
    description = "Delete a file in the workspace. The user is asked to confirm."
    args_model = PathArguments

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        resolved = self._resolve(path)
        if not resolved.exists():
            raise ToolExecutionError(self.name, f"File not found: '{path}'")
        if resolved.is_dir():
            raise ToolExecutionError(self.name, f"'{path}' is a directory; use delete_directory")

        if not self._confirmed(kwargs, f"Delete file '{path}'?"):
            return ToolResult(
                success=True,
                content=f"File deletion cancelled by user. The file '{path}' was not deleted.",
                cancelled=True,
            )

        resolved.unlink()
        log.info("Deleted file", path=path)
        return ToolResult(success=True, content=f"Successfully deleted file '{path}'")


class DeleteDirectoryTool(WorkspaceTool):
    name = "delete_directory"
    description = "Delete a directory and everything in it. The user is asked to confirm."
    args_model = PathArguments

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        resolved = self._resolve(path)
        self._refuse_root(path, resolved)
        if not resolved.exists():
            raise ToolExecutionError(self.name, f"Directory not found: '{path}'")
        if not resolved.is_dir():
            raise ToolExecutionError(self.name, f"'{path}' is not a directory")

        if not self._confirmed(kwargs, f"Delete directory '{path}' and all its contents?"):
            return ToolResult(
                success=True,
                content=f"Directory deletion cancelled by user. The directory '{path}' was not deleted.",
                cancelled=True,
            )

        shutil.rmtree(resolved)
        log.info("Deleted directory", path=path)
        return ToolResult(success=True, content=f"Successfully deleted directory '{path}'")


class MoveFileTool(WorkspaceTool):
    name = "move_file"
    description = "Move or rename a file or directory within the workspace. The user is asked to confirm."
    args_model = TransferArguments

    async def execute(self, source: str, destination: str, **kwargs: Any) -> ToolResult:
        resolved_source = self._resolve(source)
        resolved_destination = self._resolve(destination)
        self._refuse_root(source, resolved_source)
        if not resolved_source.exists():
            raise ToolExecutionError(self.name, f"Source not found: '{source}'")

        if not self._confirmed(kwargs, f"Move '{source}' to '{destination}'?"):
            return ToolResult(
                success=True,
                content=f"Move cancelled by user. '{source}' was not moved.",
                cancelled=True,
            )

        resolved_destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(resolved_source), str(resolved_destination))
        log.info("Moved path", source=source, destination=destination)
        return ToolResult(success=True, content=f"Successfully moved '{source}' to '{destination}'")


class CopyFileTool(WorkspaceTool):
    name = "copy_file"
    description = "Copy a file within the workspace."
    args_model = TransferArguments

    async def execute(self, source: str, destination: str, **kwargs: Any) -> ToolResult:
        resolved_source = self._resolve(source)
        resolved_destination = self._resolve(destination)
        self._check_readable(source, resolved_source)
        if not resolved_source.is_file():
            raise ToolExecutionError(self.name, f"Source file not found: '{source}'")
        if resolved_destination.is_dir():
            resolved_destination = self._resolve(str(Path(destination) / resolved_source.name))

        resolved_destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(resolved_source, resolved_destination)
        return ToolResult(success=True, content=f"Successfully copied '{source}' to '{destination}'")
