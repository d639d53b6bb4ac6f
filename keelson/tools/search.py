"""Code search backed by ripgrep."""

import asyncio
import shutil
from pathlib import Path
from typing import Any

from pydantic import Field

from keelson.exceptions import ToolExecutionError
from keelson.logging import get_logger
from keelson.tools.registry import Tool, ToolArguments, ToolResult

log = get_logger(__name__)


class SearchArguments(ToolArguments):
    pattern: str = Field(description="Regular expression to search for")
    file_type: str | None = Field(default=None, description="Restrict to a ripgrep file type, e.g. 'py' or 'rust'")
    max_results: int | None = Field(default=None, ge=1, description="Maximum matches per file")


def ripgrep_available() -> bool:
    return shutil.which("rg") is not None


class SearchCodeTool(Tool):
    """Search workspace files with ripgrep."""

    name = "search_code"
    description = (
        "Search the workspace for a regular expression using ripgrep. "
        "Results are grouped by file with line numbers."
    )
    args_model = SearchArguments
    read_only = True
    timeout_seconds = 60.0

    def __init__(self, workspace: Path | str, max_count: int = 50, executable: str = "rg"):
        self.workspace = Path(workspace)
        self.max_count = int(max_count)
        self.executable = executable

    def build_command(self, pattern: str, file_type: str | None, max_results: int | None) -> list[str]:
        args = [
            self.executable,
            "--heading",
            "--line-number",
            "--color=never",
            "--no-messages",
            "--with-filename",
            "--max-count",
            str(max_results or self.max_count),
        ]
        if file_type:
            args.extend(["--type", file_type])
        args.extend(["-e", pattern, "."])
        return args

    async def execute(
        self,
        pattern: str,
        file_type: str | None = None,
        max_results: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        command = self.build_command(pattern, file_type, max_results)
        log.info("Searching code", pattern=pattern, file_type=file_type)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.workspace),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolExecutionError(self.name, f"Failed to run ripgrep: {e}") from e

        stdout, stderr = await process.communicate()
        output = stdout.decode("utf-8", errors="replace").strip()

        # ripgrep: 0 = matches, 1 = no matches, 2 = error
        if process.returncode == 1:
            return ToolResult(success=True, content=f"No matches found for pattern '{pattern}'")
        if process.returncode not in (0, 1):
            message = stderr.decode("utf-8", errors="replace").strip() or f"exit code {process.returncode}"
            raise ToolExecutionError(self.name, f"ripgrep failed: {message}")

        return ToolResult(success=True, content=f"Search results for '{pattern}':\n\n{output}")
