"""Configuration management for the orchestration engine.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models import CostRates, ModelInfo


class ProviderSettings(BaseModel):
    """Static definition of one provider."""
    id: str
    display_name: str
    kind: str = Field(default="mock", description="Client kind: openai, azure_openai, anthropic, gemini, mock")
    models: list[ModelInfo] = Field(default_factory=list)
    default_model: Optional[str] = None
    cost_per_1k: CostRates = Field(default_factory=CostRates)
    api_key: Optional[str] = Field(default=None, description="API key")
    api_key_env: Optional[str] = Field(default=None, description="Environment variable holding the API key")
    api_base: Optional[str] = None
    api_version: Optional[str] = None
    enabled: bool = True

    def resolve_api_key(self) -> Optional[str]:
        """Return the configured key, falling back to the environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None

    @property
    def has_credential(self) -> bool:
        return self.kind == "mock" or self.resolve_api_key() is not None


def default_providers() -> list[ProviderSettings]:
    """The three providers shipped with the desktop application."""
    return [
        ProviderSettings(
            id="claude",
            display_name="Claude (Sonnet)",
            kind="anthropic",
            models=[ModelInfo(id="claude-3-5-sonnet-20241022", display_name="Claude Sonnet", context_window=200000)],
            default_model="claude-3-5-sonnet-20241022",
            cost_per_1k=CostRates(input=0.003, output=0.015),
            api_key_env="ANTHROPIC_API_KEY",
        ),
        ProviderSettings(
            id="openai",
            display_name="ChatGPT (GPT-4o)",
            kind="openai",
            models=[ModelInfo(id="gpt-4o", display_name="GPT-4o", context_window=128000)],
            default_model="gpt-4o",
            cost_per_1k=CostRates(input=0.005, output=0.015),
            api_key_env="OPENAI_API_KEY",
        ),
        ProviderSettings(
            id="gemini",
            display_name="Gemini (Flash)",
            kind="gemini",
            models=[ModelInfo(id="gemini-1.5-flash", display_name="Gemini Flash", context_window=1000000)],
            default_model="gemini-1.5-flash",
            cost_per_1k=CostRates(input=0.00125, output=0.00375),
            api_key_env="GOOGLE_API_KEY",
        ),
    ]


class RegistrySettings(BaseSettings):
    """Provider registry, health and failover configuration."""
    default_provider: Optional[str] = Field(default="claude")
    auto_switch_on_error: bool = Field(default=True)
    auto_switch_threshold: int = Field(default=3, gt=0, description="Consecutive failures before failover")
    breaker_cooldown_seconds: float = Field(default=30.0, ge=0)
    health_check_interval_seconds: float = Field(default=60.0, gt=0)

    # Cost ceilings
    session_cost_limit: float = Field(default=10.0, gt=0)
    session_token_limit: int = Field(default=1_000_000, gt=0)
    limit_warning_ratio: float = Field(default=0.8, gt=0, le=1)

    max_switch_history: int = Field(default=100, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="REGISTRY_",
        env_file=".env",
        extra="ignore"
    )


class ConversationStoreSettings(BaseSettings):
    """Conversation history, compaction and session limits."""
    max_history_size: int = Field(default=50, gt=0)
    context_window: int = Field(default=10, gt=0)
    compaction_enabled: bool = Field(default=True)
    compaction_threshold: int = Field(default=20, gt=0)
    min_messages_to_compact: int = Field(default=5, ge=0)
    max_sessions: int = Field(default=100, gt=0)
    autosave_interval_seconds: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CONVERSATION_",
        env_file=".env",
        extra="ignore"
    )


class GatewaySettings(BaseSettings):
    """Provider gateway configuration."""
    max_retries: int = Field(default=3, gt=0, description="Attempts per provider call")
    retry_backoff_seconds: float = Field(default=0.5, ge=0)
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    history_window: int = Field(default=10, ge=0)
    system_prompt: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )


class BusSettings(BaseSettings):
    max_history: int = Field(default=1000, gt=0)
    enable_logging: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="BUS_",
        env_file=".env",
        extra="ignore"
    )


class ServerSettings(BaseSettings):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    model_config = SettingsConfigDict(
        env_prefix="SERVER_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    storage_path: Optional[str] = Field(default=None, description="Directory for JSON state; in-memory if unset")

    providers: list[ProviderSettings] = Field(default_factory=default_providers)

    # Component settings
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    conversations: ConversationStoreSettings = Field(default_factory=ConversationStoreSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    bus: BusSettings = Field(default_factory=BusSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_prefix="ORCH_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        data = load_yaml_config(path)
        return cls(**data)

    def get_provider(self, provider_id: str) -> Optional[ProviderSettings]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def save_yaml_config(data: dict[str, Any], path: str | Path) -> None:
    """Save configuration to a YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("ORCH_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
