"""Environment settings, agent configuration and `models.yaml` profiles."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings

from tiny_agent.errors import ConfigError
from tiny_agent.schemas.schema import SchemaHandle

DEFAULT_MODEL = "openai/gpt-4.1-mini"
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    openai_api_key: str = ""
    openai_base_url: str = ""
    openrouter_base_url: str = ""
    jina_api_key: str = ""

    # Agent defaults
    agent_model: str = DEFAULT_MODEL
    agent_max_iterations: int = 10
    agent_max_tokens: int = 1000
    agent_timeout: float = 120.0

    log_level: str = "WARNING"

    def resolved_base_url(self) -> str:
        return self.openai_base_url or self.openrouter_base_url or DEFAULT_BASE_URL


settings = Settings()


@dataclass(frozen=True)
class AgentConfig:
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    max_iterations: int = 10
    max_tokens: int | None = 1000
    timeout: float = 120.0
    completion_schema: SchemaHandle | None = None

    def __post_init__(self) -> None:
        if not self.model:
            raise ConfigError("model must not be empty")
        if not self.api_key:
            raise ConfigError("api key must not be empty")
        if self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be at least 1, got {self.max_iterations}")
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ConfigError(f"max_tokens must be at least 1, got {self.max_tokens}")
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")


_models_config_cache: dict | None = None


def _load_models_yaml() -> dict:
    global _models_config_cache
    if _models_config_cache is not None:
        return _models_config_cache

    config_path = os.environ.get("MODELS_CONFIG_PATH", "models.yaml")
    path = Path(config_path)
    if not path.is_file():
        _models_config_cache = {}
        return _models_config_cache

    import yaml

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    _models_config_cache = data
    return _models_config_cache


_PROFILE_KEYS = ("model", "base_url", "max_iterations", "max_tokens", "timeout")


def get_agent_config(profile: str = "", api_key: str | None = None) -> AgentConfig:
    """Build an agent config, merging default + profile over env Settings.

    Falls back to Settings env variables if models.yaml doesn't exist.
    """
    merged: dict = {
        "model": settings.agent_model,
        "base_url": settings.resolved_base_url(),
        "max_iterations": settings.agent_max_iterations,
        "max_tokens": settings.agent_max_tokens,
        "timeout": settings.agent_timeout,
    }

    data = _load_models_yaml()
    default = data.get("default") or {}
    for key in _PROFILE_KEYS:
        if key in default:
            merged[key] = default[key]

    if profile:
        profiles = data.get("profiles") or {}
        if profile not in profiles:
            raise ConfigError(f"unknown agent profile '{profile}'")
        for key, value in (profiles[profile] or {}).items():
            if key in merged:
                merged[key] = value

    return AgentConfig(api_key=api_key if api_key is not None else settings.openai_api_key, **merged)
