import pytest

from keelson.tools.shell import check_command_structure, is_blocked_shell_command


@pytest.mark.parametrize(
    "command",
    [
        "cargo test",
        "ls -la",
        "grep -rn TODO src",
        "cat README.md | wc -l",
        "make test 2>&1",
        "git status",
        "git log --oneline -5",
        "git diff HEAD~1",
        "git stash list",
    ],
)
def test_accepts_ordinary_commands(command: str):
    assert check_command_structure(command) is None


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf build",
        "ls | rm x",
        "ls; mv a b",
        "make && cp a b",
        "false || chmod +x run.sh",
        "env FOO=1 rm x",
        "sudo ls",
        "cd src",
        "FOO=bar rmdir x",
    ],
)
def test_rejects_denied_verb_in_any_segment(command: str):
    reason = check_command_structure(command)

    assert reason is not None
    assert "not allowed" in reason


def test_rejects_denied_verb_in_substitution():
    assert check_command_structure("echo $(rm x)") is not None


@pytest.mark.parametrize(
    ("command", "fragment"),
    [
        ("echo hi > out.txt", "redirection"),
        ("sort < data.txt", "redirection"),
        ("cat <<EOF", "Here-documents"),
        ("cat ../secret", "'..'"),
        ("cat /etc/passwd", "Absolute paths"),
        ("ls ~", "Home directory"),
        ("echo 'unbalanced", "parsed"),
        ("", "empty"),
    ],
)
def test_rejects_structural_violations(command: str, fragment: str):
    reason = check_command_structure(command)

    assert reason is not None
    assert fragment in reason


@pytest.mark.parametrize(
    "command",
    [
        "git push origin main",
        "git commit -m msg",
        "git reset --hard HEAD",
        "git checkout -b feature",
        "git branch -D old",
        "git remote add origin x",
        "git stash",
        "git -C sub pull",
    ],
)
def test_rejects_mutating_git_operations(command: str):
    reason = check_command_structure(command)

    assert reason is not None
    assert "Git operation" in reason


def test_is_blocked_shell_command_returns_reason():
    blocked, reason = is_blocked_shell_command("rm file")
    assert blocked is True
    assert "rm" in reason

    blocked, reason = is_blocked_shell_command("ls")
    assert blocked is False
    assert reason == ""
