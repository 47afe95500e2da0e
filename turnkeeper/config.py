"""Configuration management for turnkeeper."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.turnkeeper/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful personal assistant. You are conversational first: most "
    "messages just need a thoughtful reply, not a tool call. Use tools only when "
    "they genuinely help answer the question, and keep responses concise."
)


class ModelConfig(BaseModel):
    """Backend model configuration."""

    provider: Literal["anthropic", "openai"] = "openai"
    model: str = "gpt-4o"
    api_key: str = ""
    base_url: str = ""
    temperature: float | None = None
    max_tokens: int = 8192
    timeout: float = 120.0
    supports_images: bool = True


class ContextConfig(BaseModel):
    """Context window and compaction configuration."""

    compaction_ratio: float = 0.7
    keep_recent_turns: int = 4
    max_message_chars: int = 5000
    context_windows: dict[str, int] = Field(default_factory=dict)


class AgentConfig(BaseModel):
    """Turn loop configuration."""

    max_tool_turns: int = 15
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    system_prompt_file: str = ""
    prompt_cache_seconds: float = 300.0
    history_max_messages: int = 20
    loop_threshold: int = 3
    fingerprint_chars: int = 500
    user_label: str = "User"


class ToolsConfig(BaseModel):
    """Tools configuration."""

    include_conditional: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for turnkeeper."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TURNKEEPER_",
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
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; pydantic-settings layers env vars on top."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
