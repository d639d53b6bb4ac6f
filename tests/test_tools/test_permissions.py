import json
from pathlib import Path

import pytest

from keelson.exceptions import ConfigurationError, PermissionDeniedError
from keelson.tools.permissions import Decision, PermissionEngine, PermissionSettings


def _engine(**rules) -> PermissionEngine:
    return PermissionEngine(settings=PermissionSettings(**rules))


def test_builtin_tables_decide_without_overrides():
    engine = _engine()

    assert engine.check_command("cargo build") is Decision.ALLOWED
    assert engine.check_command("rm -rf target") is Decision.DENIED
    assert engine.check_command("curl https://example.com") is Decision.ASK


def test_exact_rule_beats_wildcard_rule():
    engine = _engine(allow=["Bash(npm test)"], deny=["Bash(npm:*)"])

    assert engine.check_command("npm test") is Decision.ALLOWED
    assert engine.check_command("npm publish") is Decision.DENIED


def test_wildcard_rule_beats_builtin_tables():
    engine = _engine(deny=["Bash(cargo:*)"], allow=["Bash(rm:*)"])

    assert engine.check_command("cargo build") is Decision.DENIED
    assert engine.check_command("rm stale.log") is Decision.ALLOWED


def test_allow_beats_deny_within_a_tier():
    engine = _engine(allow=["Bash(make check)"], deny=["Bash(make check)"])

    assert engine.check_command("make check") is Decision.ALLOWED


def test_ask_rule_overrides_builtin_allow():
    engine = _engine(ask=["Bash(git:*)"])

    assert engine.check_command("git status") is Decision.ASK


def test_authorize_raises_on_denied_command():
    engine = _engine()

    with pytest.raises(PermissionDeniedError, match="Command blocked: 'kill 1'"):
        engine.authorize("kill 1", confirm=None)


def test_unknown_command_without_prompt_is_refused():
    engine = _engine()

    with pytest.raises(PermissionDeniedError, match="declined"):
        engine.authorize("curl example.com", confirm=None)


def test_remembered_decision_is_persisted(tmp_path: Path):
    path = tmp_path / "permissions.json"
    path.write_text(json.dumps({"other": {"keep": True}}), encoding="utf-8")
    engine = PermissionEngine.load(path)
    questions: list[str] = []

    def confirm(question: str) -> bool:
        questions.append(question)
        return True

    engine.authorize("curl example.com", confirm)

    assert questions == ["Allow command `curl example.com`?", "Remember this decision?"]
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["permissions"]["allow"] == ["Bash(curl example.com)"]
    assert data["other"] == {"keep": True}
    assert PermissionEngine.load(path).check_command("curl example.com") is Decision.ALLOWED


def test_declined_and_remembered_command_is_denied_next_time(tmp_path: Path):
    path = tmp_path / "permissions.json"
    engine = PermissionEngine.load(path)
    answers = iter([False, True])

    with pytest.raises(PermissionDeniedError):
        engine.authorize("wget file", lambda question: next(answers))

    assert engine.check_command("wget file") is Decision.DENIED
    assert "Bash(wget file)" in json.loads(path.read_text(encoding="utf-8"))["permissions"]["deny"]


def test_unremembered_answer_asks_again():
    engine = _engine()
    calls: list[str] = []

    def confirm(question: str) -> bool:
        calls.append(question)
        return question.startswith("Allow")

    engine.authorize("curl a", confirm)
    engine.authorize("curl a", confirm)

    assert calls.count("Allow command `curl a`?") == 2
    assert engine.settings.allow == []


def test_missing_file_means_no_overrides(tmp_path: Path):
    engine = PermissionEngine.load(tmp_path / "absent.json")

    assert engine.settings == PermissionSettings()


def test_invalid_json_is_a_configuration_error(tmp_path: Path):
    path = tmp_path / "permissions.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        PermissionEngine.load(path)


def test_read_rules_match_globs():
    engine = _engine(deny=["Read(.env)", "Read(**/*.pem)", "Read(secrets/*)"])

    assert engine.is_read_denied(".env") is True
    assert engine.is_read_denied("certs/server.pem") is True
    assert engine.is_read_denied("server.pem") is True
    assert engine.is_read_denied("secrets/token") is True
    assert engine.is_read_denied("src/main.py") is False
