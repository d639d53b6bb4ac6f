"""Tiered allow/deny/ask decisions for shell commands, with persisted overrides.

The permission file is JSON::

    {"permissions": {"allow": ["Bash(cargo build)", "Bash(npm:*)"],
                     "deny": ["Bash(curl:*)", "Read(secrets/*)"],
                     "ask": []}}

``Bash(<command>)`` matches one exact command line, ``Bash(<base>:*)`` matches
every command whose first token is ``<base>``. ``Read(<glob>)`` entries in
``deny`` hide workspace paths from the read tools.
"""

import fnmatch
import json
from enum import Enum
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, Field

from keelson.exceptions import ConfigurationError, PermissionDeniedError
from keelson.logging import get_logger

log = get_logger(__name__)

PERMISSIONS_FILENAME = "permissions.json"

BUILTIN_ALLOWED: frozenset[str] = frozenset({
    # build tools and interpreters
    "cargo", "rustc", "npm", "yarn", "pnpm", "node", "python", "python3", "pip",
    "go", "make", "cmake", "gcc", "g++", "javac", "java", "mvn", "gradle",
    # read-only inspection
    "ls", "cat", "head", "tail", "less", "more", "grep", "egrep", "fgrep", "rg",
    "ag", "ack", "find", "file", "stat", "wc", "diff", "cmp", "pwd", "whoami",
    "date", "hostname", "uname", "arch", "env", "printenv", "echo", "printf",
    "which", "whereis", "type", "git", "ps", "top", "htop",
    # archives
    "tar", "gzip", "gunzip", "bzip2", "bunzip2", "unzip", "xz",
    # text processing
    "sed", "awk", "cut", "sort", "uniq", "tr", "expand", "unexpand", "column",
    "paste", "join", "test", "true", "false", "seq", "timeout", "time",
    "basename", "dirname", "realpath", "readlink", "hexdump", "od", "strings",
    "base64", "sha256sum", "sha512sum", "md5sum",
})

BUILTIN_DENIED: frozenset[str] = frozenset({
    # file mutation
    "rm", "rmdir", "mv", "cp", "touch", "ln", "mkdir", "chmod", "chown", "chgrp",
    # disks and mounts
    "dd", "mkfs", "fdisk", "parted", "mkswap", "swapon", "swapoff", "mount", "umount",
    # system and process control
    "shutdown", "reboot", "halt", "poweroff", "systemctl", "service",
    "kill", "killall", "pkill",
    # accounts and privilege
    "useradd", "userdel", "usermod", "groupadd", "groupdel", "passwd", "sudo", "su",
    # directory changes
    "cd", "pushd", "popd",
})


class Decision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    ASK = "ask"


class PermissionSettings(BaseModel):
    """Persisted override rules."""

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)
    ask: list[str] = Field(default_factory=list)


def command_base(command: str) -> str:
    """First whitespace-delimited token of a command line."""
    parts = str(command or "").strip().split()
    return parts[0] if parts else ""


def _rule_argument(rule: str, kind: str) -> str | None:
    """Return the inner text of ``Kind(...)`` or None for other rules."""
    text = rule.strip()
    prefix = f"{kind}("
    if text.startswith(prefix) and text.endswith(")"):
        return text[len(prefix):-1].strip()
    return None


class PermissionEngine:
    """Decide whether a shell command may run, asking the user when undecided."""

    def __init__(self, settings_path: Path | str | None = None, settings: PermissionSettings | None = None):
        self.settings_path = Path(settings_path) if settings_path is not None else None
        self.settings = settings or PermissionSettings()
        self._extra: dict[str, object] = {}

    @classmethod
    def load(cls, settings_path: Path | str) -> "PermissionEngine":
        """Read the permission file; a missing file means no overrides."""
        path = Path(settings_path)
        engine = cls(settings_path=path)
        if not path.exists():
            return engine
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid permission file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Permission file {path} must contain a JSON object")
        engine.settings = PermissionSettings.model_validate(data.get("permissions") or {})
        engine._extra = {key: value for key, value in data.items() if key != "permissions"}
        log.debug(
            "Loaded permission file",
            path=str(path),
            allow=len(engine.settings.allow),
            deny=len(engine.settings.deny),
        )
        return engine

    def save(self) -> None:
        """Rewrite the permission file with the current rules."""
        if self.settings_path is None:
            return
        self.settings_path.parent.mkdir(parents=True, exist_ok=True)
        payload = dict(self._extra)
        payload["permissions"] = self.settings.model_dump()
        self.settings_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        log.info("Saved permission file", path=str(self.settings_path))

    def _match(self, rules: list[str], command: str, base: str, wildcard: bool) -> bool:
        for rule in rules:
            inner = _rule_argument(rule, "Bash")
            if inner is None:
                continue
            if wildcard:
                if inner.endswith(":*") and inner[:-2].strip() == base:
                    return True
            elif inner == command:
                return True
        return False

    def check_command(self, command: str) -> Decision:
        """Classify a command without prompting.

        Precedence: exact rule, then wildcard rule, then the built-in tables.
        Within a tier allow beats deny beats ask.
        """
        cleaned = str(command or "").strip()
        base = command_base(cleaned)

        for wildcard in (False, True):
            if self._match(self.settings.allow, cleaned, base, wildcard):
                return Decision.ALLOWED
            if self._match(self.settings.deny, cleaned, base, wildcard):
                return Decision.DENIED
            if self._match(self.settings.ask, cleaned, base, wildcard):
                return Decision.ASK

        if base in BUILTIN_ALLOWED:
            return Decision.ALLOWED
        if base in BUILTIN_DENIED:
            return Decision.DENIED
        return Decision.ASK

    def authorize(self, command: str, confirm: Callable[[str], bool] | None) -> None:
        """Raise PermissionDeniedError unless the command may run."""
        cleaned = str(command or "").strip()
        decision = self.check_command(cleaned)
        log.debug("Permission decision", command=cleaned, decision=decision.value)

        if decision is Decision.ALLOWED:
            return
        if decision is Decision.DENIED:
            raise PermissionDeniedError(
                cleaned,
                f"'{command_base(cleaned)}' is not permitted. Use the file tools for file operations.",
            )
        if not self.ask_user(cleaned, confirm):
            raise PermissionDeniedError(cleaned, "The user declined to run this command.")

    def ask_user(self, command: str, confirm: Callable[[str], bool] | None) -> bool:
        """Prompt for a decision and persist it if the user asks to remember it."""
        if confirm is None:
            log.warning("Command requires confirmation but no prompt is available", command=command)
            return False

        allowed = bool(confirm(f"Allow command `{command}`?"))
        if confirm("Remember this decision?"):
            rule = f"Bash({command})"
            target = self.settings.allow if allowed else self.settings.deny
            if rule not in target:
                target.append(rule)
            self.save()
        log.info("User permission decision", command=command, allowed=allowed)
        return allowed

    def is_read_denied(self, relative_path: str) -> bool:
        """Whether a workspace-relative path matches a ``Read(<glob>)`` deny rule."""
        target = str(relative_path or "").replace("\\", "/").removeprefix("./") or "."
        for rule in self.settings.deny:
            pattern = _rule_argument(rule, "Read")
            if not pattern:
                continue
            pattern = pattern.removeprefix("./")
            candidates = [pattern]
            if pattern.startswith("**/"):
                candidates.append(pattern[3:])
            if any(fnmatch.fnmatchcase(target, candidate) for candidate in candidates):
                return True
        return False
