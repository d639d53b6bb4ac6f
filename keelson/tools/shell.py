"""Shell tool: static command filter, permission gate, capped output."""

import asyncio
import re
import shlex
from pathlib import Path
from typing import Any

from pydantic import Field

from keelson.exceptions import PermissionDeniedError, ToolExecutionError
from keelson.logging import get_logger
from keelson.tools.permissions import BUILTIN_DENIED, PermissionEngine
from keelson.tools.registry import Tool, ToolArguments, ToolResult

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_ABSOLUTE_PATH_RE = re.compile(r"(?:^|[\s|;&=(<>'\"`])/")
_HOME_PATH_RE = re.compile(r"(?:^|[\s|;&=(<>'\"`])~")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&", ";;", "|&"}
_SHELL_WRAPPER_TOKENS = {"command", "builtin", "nohup", "time", "exec", "xargs", "env", "nice"}
_STDERR_MERGE = "2>&1"

_GIT_FORBIDDEN_SUBCOMMANDS = {
    "push", "pull", "fetch", "clone", "clean", "commit", "add", "merge", "rebase",
    "submodule", "init", "rm", "mv", "restore", "switch", "cherry-pick", "revert",
    "apply", "am", "gc", "prune", "update-ref", "filter-branch", "send-email",
}
_GIT_FORBIDDEN_FLAGS = {
    "reset": {"--hard"},
    "checkout": {"-f", "--force", "-b", "-B", "--"},
    "branch": {"-d", "-D", "-m", "-M", "--delete", "--move"},
    "tag": {"-d", "--delete"},
}
_GIT_REMOTE_MUTATIONS = {"add", "set-url", "remove", "rm", "rename"}
_GIT_STASH_READ_ONLY = {"list", "show"}


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    tokens = _tokenize_shell_command(command.replace(_STDERR_MERGE, " "))
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> tuple[str, list[str]]:
    """Return the executable token of a segment and the arguments after it."""
    idx = 0
    after_wrapper = False
    while idx < len(tokens):
        token = str(tokens[idx]).strip().lstrip("({")
        if not token:
            idx += 1
            continue
        if token in _SHELL_WRAPPER_TOKENS:
            after_wrapper = True
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            idx += 1
            continue
        if after_wrapper and token.startswith("-"):
            idx += 1
            continue
        return token, [str(t) for t in tokens[idx + 1:]]
    return "", []


def _substituted_commands(tokens: list[str]) -> list[str]:
    """Commands started inside ``$(...)`` or backticks within a segment."""
    found: list[str] = []
    for token in tokens:
        for marker in ("$(", "`"):
            start = token.find(marker)
            if start == -1:
                continue
            inner = token[start + len(marker):].strip("`()")
            if inner:
                found.append(inner.split()[0])
    return found


def _git_violation(args: list[str]) -> str | None:
    """Reason a git invocation mutates repository state, or None."""
    idx = 0
    while idx < len(args) and args[idx].startswith("-"):
        # global options taking a value
        idx += 2 if args[idx] in ("-C", "-c", "--git-dir", "--work-tree") else 1
    if idx >= len(args):
        return None
    subcommand = args[idx]
    rest = args[idx + 1:]

    if subcommand in _GIT_FORBIDDEN_SUBCOMMANDS:
        return f"Git operation '{subcommand}' is not allowed (it modifies the repository or talks to remotes)"
    flags = _GIT_FORBIDDEN_FLAGS.get(subcommand)
    if flags and flags.intersection(rest):
        return f"Git operation '{subcommand} {' '.join(sorted(flags.intersection(rest)))}' is not allowed"
    if subcommand == "remote" and rest and rest[0] in _GIT_REMOTE_MUTATIONS:
        return f"Git operation 'remote {rest[0]}' is not allowed"
    if subcommand == "stash" and (not rest or rest[0] not in _GIT_STASH_READ_ONLY):
        return "Git operation 'stash' is not allowed (only 'stash list' and 'stash show')"
    return None


def check_command_structure(command: str) -> str | None:
    """Return the reason a command fails the static filter, or None if it passes.

    Rejects parent traversal, absolute and home paths, redirection other than
    ``2>&1``, here-docs, deny-listed verbs at the start of any pipeline or list
    segment, and git operations that mutate history, the index, or remotes.
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return "Command is empty"
    if ".." in cleaned:
        return "Parent directory traversal ('..') is not allowed"
    if _ABSOLUTE_PATH_RE.search(cleaned):
        return "Absolute paths are not allowed; use paths relative to the workspace"
    if _HOME_PATH_RE.search(cleaned):
        return "Home directory paths ('~') are not allowed"

    without_merge = cleaned.replace(_STDERR_MERGE, "")
    if "<<" in without_merge:
        return "Here-documents ('<<') are not allowed"
    if ">" in without_merge or "<" in without_merge:
        return "Output redirection is not allowed; use write_file to create or modify files"

    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return "Command could not be parsed"
    if not segments:
        return "Command could not be parsed"

    for segment in segments:
        base, args = _extract_segment_base_command(segment)
        if not base:
            continue
        verb = Path(base).name
        if verb in BUILTIN_DENIED:
            return f"'{verb}' is not allowed in shell commands; use the file tools instead"
        for inner in _substituted_commands(segment):
            if Path(inner).name in BUILTIN_DENIED:
                return f"'{inner}' is not allowed in shell commands"
        if verb == "git":
            reason = _git_violation(args)
            if reason:
                return reason
    return None


def is_blocked_shell_command(command: str) -> tuple[bool, str]:
    """Evaluate command against the static filter."""
    reason = check_command_structure(command)
    return (reason is not None), (reason or "")


class ShellArguments(ToolArguments):
    command: str = Field(description="Shell command to run from the workspace root")


class ShellTool(Tool):
    """Run a shell command inside the workspace."""

    name = "execute_bash"
    description = (
        "Execute a shell command in the workspace root and return stdout/stderr. "
        "Use relative paths only. Redirection, '..', absolute paths, directory changes "
        "and file-mutating commands (rm, mv, cp, chmod, ...) are rejected; use the file "
        "tools for those. Commands not on the built-in allow list need user approval."
    )
    args_model = ShellArguments

    def __init__(
        self,
        workspace: Path | str,
        permissions: PermissionEngine,
        timeout: float = 300.0,
        max_output_bytes: int = 10 * 1024 * 1024,
    ):
        self.workspace = Path(workspace)
        self.permissions = permissions
        self.command_timeout = float(timeout)
        self.max_output_bytes = int(max_output_bytes)
        self.timeout_seconds = self.command_timeout + 5.0

    async def _read_capped(self, stream: asyncio.StreamReader, label: str) -> bytes:
        chunks: list[bytes] = []
        total = 0
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                break
            total += len(chunk)
            if total > self.max_output_bytes:
                raise ToolExecutionError(
                    self.name,
                    f"Command {label} exceeded the maximum size of {self.max_output_bytes} bytes",
                )
            chunks.append(chunk)
        return b"".join(chunks)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
        await process.wait()

    async def execute(self, command: str, **kwargs: Any) -> ToolResult:
        """Execute a shell command after both sandbox gates pass.

        Raises:
            PermissionDeniedError: the filter or the permission engine refused it
            ToolExecutionError: spawn failure, timeout, or oversized output
        """
        blocked, reason = is_blocked_shell_command(command)
        if blocked:
            log.warning("Blocked shell command", command=command, reason=reason)
            raise PermissionDeniedError(command, reason)

        self.permissions.authorize(command, kwargs.get("_confirm"))

        log.info("Executing shell command", command=command, cwd=str(self.workspace))
        try:
            process = await asyncio.create_subprocess_exec(
                "sh",
                "-c",
                command,
                cwd=str(self.workspace),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolExecutionError(self.name, f"Failed to start command: {e}") from e

        try:
            stdout, stderr, _ = await asyncio.wait_for(
                asyncio.gather(
                    self._read_capped(process.stdout, "stdout"),
                    self._read_capped(process.stderr, "stderr"),
                    process.wait(),
                ),
                timeout=self.command_timeout,
            )
        except asyncio.TimeoutError as e:
            await self._kill(process)
            timeout_label = int(self.command_timeout) if self.command_timeout.is_integer() else self.command_timeout
            raise ToolExecutionError(self.name, f"Command timed out after {timeout_label}s") from e
        except ToolExecutionError:
            await self._kill(process)
            raise
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")

        if process.returncode != 0:
            output = (
                f"Command failed with exit code: {process.returncode}\n"
                f"STDOUT:\n{stdout_text}\n"
                f"STDERR:\n{stderr_text}"
            )
            return ToolResult(success=False, content=output, error=output)

        sections: list[str] = []
        if stdout_text:
            sections.append(f"STDOUT:\n{stdout_text}")
        if stderr_text:
            sections.append(f"STDERR:\n{stderr_text}")
        return ToolResult(
            success=True,
            content="\n".join(sections) if sections else "Command executed successfully (no output)",
        )
