"""Configuration management for Keelson."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from keelson.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.keelson/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "keelson.yaml"
STATE_DIR_NAME = ".keelson"

MIN_THINKING_BUDGET = 1024


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = "https://api.anthropic.com/v1"
    request_timeout: float = 300.0
    enable_thinking: bool = False
    thinking_budget: int = 5000

    def resolved_api_key(self) -> str:
        """Configured key, falling back to ``ANTHROPIC_API_KEY``."""
        return self.api_key or os.environ.get("ANTHROPIC_API_KEY", "")

    def validate_reasoning(self) -> None:
        """Reject reasoning budgets the provider would refuse."""
        if not self.enable_thinking:
            return
        if self.thinking_budget < MIN_THINKING_BUDGET:
            raise ConfigurationError(
                f"thinking_budget ({self.thinking_budget}) must be at least {MIN_THINKING_BUDGET}"
            )
        if self.thinking_budget >= self.max_tokens:
            raise ConfigurationError(
                f"thinking_budget ({self.thinking_budget}) must be less than max_tokens ({self.max_tokens})"
            )


class ContextConfig(BaseModel):
    """Conversation memory limits."""

    max_messages: int = 500
    max_context_tokens: int = 150000


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_iterations: int = 200


class RetryConfig(BaseModel):
    """Provider retry policy."""

    max_retries: int = 2
    initial_delay: float = 1.0
    jitter: float = 0.3


class ToolsConfig(BaseModel):
    """Tool configuration."""

    max_file_size: int = 10 * 1024 * 1024
    max_output_bytes: int = 10 * 1024 * 1024
    bash_timeout: float = 300.0
    search_max_count: int = 50
    safe_mode: bool = False


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = f"{STATE_DIR_NAME}/sessions.db"
    auto_save: bool = True


class WorkspaceConfig(BaseModel):
    """Workspace root configuration."""

    path: str = "."


class UIConfig(BaseModel):
    """UI configuration."""

    spinner_interval: float = 0.08
    show_thinking: bool = True
    show_tokens: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"
    file: str | None = None


class Config(BaseSettings):
    """Main configuration for Keelson."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    ui: UIConfig = Field(default_factory=UIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="KEELSON_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from the resolved YAML file, falling back to environment and defaults."""
        return cls.from_yaml(path)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()

    def resolved_state_path(self, relative: str | Path, runtime_base: Path | str | None = None) -> Path:
        """Anchor a workspace-relative state path (sessions, permissions)."""
        raw = Path(relative).expanduser()
        if raw.is_absolute():
            return raw
        return self.resolved_workspace_path(runtime_base) / raw


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
