"""System prompt assembly, including per-workspace custom instructions.

Custom instructions are read from two optional files in the workspace root:
  1. ``.keelsonrc`` (usually committed with the project)
  2. ``.keelson/instructions.md`` (usually personal, git-ignored)
"""

from pathlib import Path

from keelson.logging import get_logger

log = get_logger(__name__)

CUSTOM_INSTRUCTION_FILES = (".keelsonrc", ".keelson/instructions.md")

BASE_PROMPT = """You are Keelson, a coding assistant working inside the user's project.

Workspace: {workspace}

Rules:
- Every file and shell operation is confined to the workspace. Use paths relative to the workspace root; absolute paths and '..' are rejected.
- Prefer the file tools (read_file, write_file, list_directory, ...) over shell commands for file changes. Shell commands that modify files, use redirection, or change directories are rejected.
- Before deleting or moving anything, make sure the user wants it; they will be asked to confirm.
- After editing code, run the project's tests or build when a command for it is available, and report the outcome.
- Keep answers concise. When you finish a task, summarize what changed."""

SAFE_MODE_MESSAGE = (
    "[SYSTEM: Safe (read-only) mode has been enabled. No file modifications or bash commands "
    "are allowed. Available tools: {tools}.]"
)

NORMAL_MODE_MESSAGE = (
    "[SYSTEM: Normal (unrestricted) mode has been enabled. File modifications and bash commands "
    "are now allowed. All tools are available.]"
)


def load_custom_instructions(workspace: Path | str) -> str:
    """Concatenate the custom instruction files that exist in the workspace."""
    root = Path(workspace)
    sections: list[str] = []
    for name in CUSTOM_INSTRUCTION_FILES:
        path = root / name
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Could not read custom instructions", path=str(path), error=str(e))
            continue
        if content:
            sections.append(f"# Instructions from {name}\n\n{content}")
    return "\n\n".join(sections)


def build_system_prompt(workspace: Path | str) -> str:
    """Base prompt for the workspace plus any custom instructions."""
    prompt = BASE_PROMPT.format(workspace=Path(workspace))
    custom = load_custom_instructions(workspace)
    if custom:
        prompt = f"{prompt}\n\n{custom}"
    return prompt
