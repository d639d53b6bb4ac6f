from pathlib import Path

import pytest

import keelson.config as config_module
from keelson.config import Config
from keelson.exceptions import ConfigurationError


def test_defaults_match_documented_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.model.max_tokens == 8192
    assert cfg.model.enable_thinking is False
    assert cfg.model.thinking_budget == 5000
    assert cfg.context.max_messages == 500
    assert cfg.context.max_context_tokens == 150000
    assert cfg.agent.max_iterations == 200
    assert cfg.retry.max_retries == 2
    assert cfg.tools.max_file_size == 10 * 1024 * 1024
    assert cfg.tools.bash_timeout == 300.0
    assert cfg.session.path == ".keelson/sessions.db"


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: claude-home\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    (tmp_path / "keelson.yaml").write_text(
        "model:\n  model: claude-local\n  max_tokens: 4096\nagent:\n  max_iterations: 12\n",
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "claude-local"
    assert cfg.model.max_tokens == 4096
    assert cfg.agent.max_iterations == 12


def test_load_falls_back_to_home_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("tools:\n  safe_mode: true\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.tools.safe_mode is True


def test_environment_overrides_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("KEELSON_CONTEXT__MAX_MESSAGES", "42")

    cfg = Config.load()

    assert cfg.context.max_messages == 42


def test_invalid_yaml_is_a_configuration_error(tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("model: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        Config.load(path)


def test_non_mapping_yaml_is_rejected(tmp_path: Path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="mapping"):
        Config.load(path)


def test_reasoning_budget_validation():
    cfg = Config()
    cfg.model.enable_thinking = True
    cfg.model.max_tokens = 4000
    cfg.model.thinking_budget = 4000

    with pytest.raises(ConfigurationError, match=r"thinking_budget \(4000\) must be less than max_tokens \(4000\)"):
        cfg.model.validate_reasoning()

    cfg.model.thinking_budget = 2000
    cfg.model.validate_reasoning()


def test_api_key_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "from-env")

    assert Config().model.resolved_api_key() == "from-env"


def test_state_paths_are_anchored_to_workspace(tmp_path: Path):
    cfg = Config()
    cfg.workspace.path = "project"

    assert cfg.resolved_workspace_path(tmp_path) == (tmp_path / "project").resolve()
    assert cfg.resolved_state_path(".keelson/sessions.db", tmp_path) == (
        (tmp_path / "project").resolve() / ".keelson" / "sessions.db"
    )

