"""Confine tool paths to the workspace root."""

from pathlib import Path, PurePath

from keelson.exceptions import ConfigurationError, PathViolationError


class PathGuard:
    """Validate model-supplied paths against a canonical workspace root.

    A path is accepted only if it is relative, has no ``..`` segment, and its
    canonical form (symlinks resolved) stays under the canonical root. Paths
    that do not exist yet are checked through their nearest existing ancestor,
    so creating a file below a symlinked directory is caught too.
    """

    def __init__(self, root: Path | str):
        root_path = Path(root).expanduser()
        if not root_path.is_dir():
            raise ConfigurationError(f"Workspace root is not a directory: {root_path}")
        self.root = root_path.resolve()

    def validate(self, raw_path: str) -> Path:
        """Return the canonical absolute path for ``raw_path``.

        Raises:
            PathViolationError if the path is absolute, traverses upward, or escapes the root
        """
        text = str(raw_path or "").strip()
        if not text:
            raise PathViolationError(text, "empty path")
        if text.startswith("~"):
            raise PathViolationError(text, "home-relative paths are not allowed")

        candidate = PurePath(text)
        if candidate.is_absolute() or text.startswith(("/", "\\")):
            raise PathViolationError(text, "absolute paths are not allowed")
        if ".." in candidate.parts or ".." in text.replace("\\", "/").split("/"):
            raise PathViolationError(text, "parent directory traversal is not allowed")

        canonical = self._canonicalize(self.root / candidate)
        if canonical != self.root and self.root not in canonical.parents:
            raise PathViolationError(text)
        return canonical

    def relative(self, path: Path) -> str:
        """Workspace-relative display form of a validated path."""
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return str(path)
        return str(rel) if str(rel) != "." else "."

    @staticmethod
    def _canonicalize(path: Path) -> Path:
        """Resolve the nearest existing ancestor and re-append the missing tail."""
        missing: list[str] = []
        current = path
        while not current.exists() and not current.is_symlink():
            if current.parent == current:
                break
            missing.append(current.name)
            current = current.parent
        resolved = current.resolve()
        for name in reversed(missing):
            resolved = resolved / name
        return resolved
