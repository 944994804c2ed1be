"""Configuration management for Nexus."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from nexus.exceptions import InvalidModelError, MissingCredentialError
from nexus.machines import MachineDescriptor, default_machines


# Paths
DEFAULT_CONFIG_PATH = Path("~/.nexus/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"
API_KEY_ENV_VAR = "ANTHROPIC_API_KEY"


class ModelConfig(BaseModel):
    """Model configuration."""

    class AllowedModelConfig(BaseModel):
        """Allowed model entry with pricing (USD per million tokens)."""

        id: str
        input_price: float = 0.0
        output_price: float = 0.0
        context_window: int = 200000

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5-20250929"
    api_key: str = ""
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    max_tokens: int = 4096
    timeout: float = 120.0
    allowed: list[AllowedModelConfig] = Field(
        default_factory=lambda: [
            ModelConfig.AllowedModelConfig(
                id="claude-sonnet-4-5-20250929",
                input_price=3.0,
                output_price=15.0,
                context_window=200000,
            ),
            ModelConfig.AllowedModelConfig(
                id="claude-haiku-4-5-20251001",
                input_price=0.80,
                output_price=4.0,
                context_window=200000,
            ),
        ]
    )

    def allowed_ids(self) -> list[str]:
        return [entry.id for entry in self.allowed]

    def find_allowed(self, model_id: str) -> "ModelConfig.AllowedModelConfig":
        """Return the allow-list entry for a model id."""
        for entry in self.allowed:
            if entry.id == model_id:
                return entry
        raise InvalidModelError(model_id, self.allowed_ids())


class RemoteConfig(BaseModel):
    """Remote-shell (ssh) execution configuration."""

    ssh_binary: str = "ssh"
    connect_timeout: int = 5
    keepalive_interval: int = 5
    command_timeout: float = 30.0
    probe_timeout: float = 5.0
    fallback_encodings: list[str] = ["cp932", "euc_jp"]
    max_output_chars: int = 10000
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
        "shutdown",
        "reboot",
    ]


class SessionConfig(BaseModel):
    """Conversation session configuration."""

    max_history: int = 20
    max_tool_loops: int = 5
    lock_timeout: float = 10.0


class ContextConfig(BaseModel):
    """Context-fullness warning thresholds (percent)."""

    warn_percent: int = 75
    critical_percent: int = 90


class WebConfig(BaseModel):
    """HTTP transport configuration."""

    host: str = "127.0.0.1"
    port: int = 23780


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Nexus."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    machines: list[MachineDescriptor] = Field(default_factory=default_machines)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_",
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

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; env vars are applied by BaseSettings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def resolved_api_key(self) -> str:
        """API key from config, falling back to the environment."""
        return (self.model.api_key or os.environ.get(API_KEY_ENV_VAR, "")).strip()

    def require_api_key(self) -> str:
        """Return the API key or raise a user-facing configuration error."""
        key = self.resolved_api_key()
        if not key:
            raise MissingCredentialError(API_KEY_ENV_VAR)
        return key


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
