"""
config/settings.py — Copilot Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - Each section is a pydantic sub-model with field validators that reject
    bad values at parse time.
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a clear, human-readable message listing every problem.
  - load_settings() respects the COPILOT_CONFIG env var as a fallback
    when no explicit config_path argument is given.
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_KNOWN_PROVIDERS = {"openai", "anthropic"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class OrchestratorConfig(BaseModel):
    enable_multi_step: bool = True
    max_steps: int = 5
    history_window: int = 5
    max_message_chars: int = 2000
    action_timeout_seconds: float = 30.0
    generation_timeout_seconds: float = 30.0
    progress_notice_seconds: float = 10.0

    @field_validator("max_steps", "history_window", "max_message_chars")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("orchestrator limits must be >= 1")
        return v

    @field_validator("action_timeout_seconds", "generation_timeout_seconds", "progress_notice_seconds")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("orchestrator timeouts must be > 0")
        return v


class IntentConfig(BaseModel):
    """Confidence floor and retry policy for the intent resolver."""
    min_confidence: float = 0.5
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    base_delay: float = 2.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    @field_validator("min_confidence")
    @classmethod
    def _valid_confidence(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("intent.min_confidence must be between 0.0 and 1.0")
        return v

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("intent.max_attempts must be >= 1")
        return v

    @field_validator("backoff_factor")
    @classmethod
    def _valid_factor(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("intent.backoff_factor must be >= 1.0")
        return v


class RateLimitConfig(BaseModel):
    messages_per_minute: int = 20
    burst_allowance: int = 5
    tokens_per_day: int = 100_000
    estimated_tokens_per_message: int = 1000

    @field_validator("messages_per_minute", "tokens_per_day")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate_limit budgets must be >= 1")
        return v

    @field_validator("burst_allowance")
    @classmethod
    def _non_negative_burst(cls, v: int) -> int:
        if v < 0:
            raise ValueError("rate_limit.burst_allowance must be >= 0")
        return v


class ContextConfig(BaseModel):
    max_tokens: int = 8000
    summarization_threshold: int = 10
    keep_recent: int = 5
    summary_max_tokens: int = 2000
    ttl_days: int = 30

    @field_validator("max_tokens", "summarization_threshold", "summary_max_tokens", "ttl_days")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("context limits must be >= 1")
        return v

    @field_validator("keep_recent")
    @classmethod
    def _non_negative_keep(cls, v: int) -> int:
        if v < 0:
            raise ValueError("context.keep_recent must be >= 0")
        return v


class GatewayConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 9090
    max_connections: int = 100
    max_message_bytes: int = 2**20

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not (0 < v < 65536):
            raise ValueError("gateway.port must be between 1 and 65535")
        return v


class ReasoningConfig(BaseModel):
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 1024
    timeout_seconds: float = 30.0
    base_url: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _KNOWN_PROVIDERS:
            raise ValueError(
                f"reasoning.provider '{v}' is not supported. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("reasoning.temperature must be between 0.0 and 2.0")
        return v


class DomainConfig(BaseModel):
    backend: str = "memory"
    base_url: Optional[str] = None
    timeout_seconds: float = 15.0

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        if v not in {"memory", "http"}:
            raise ValueError("domain.backend must be 'memory' or 'http'")
        return v


class StoreConfig(BaseModel):
    backend: str = "memory"
    sqlite_path: str = "./data/sqlite/conversations.db"

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        if v not in {"memory", "sqlite"}:
            raise ValueError("store.backend must be 'memory' or 'sqlite'")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = True
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

_SECTIONS: dict[str, type[BaseModel]] = {
    "orchestrator": OrchestratorConfig,
    "intent":       IntentConfig,
    "rate_limit":   RateLimitConfig,
    "context":      ContextConfig,
    "gateway":      GatewayConfig,
    "reasoning":    ReasoningConfig,
    "domain":       DomainConfig,
    "store":        StoreConfig,
    "logging":      LoggingConfig,
}


class Settings(BaseSettings):
    """
    Copilot runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    domain_api_token: Optional[str] = Field(default=None, alias="DOMAIN_API_TOKEN")

    # -- Structured config (from config.yaml) --------------------------------
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    intent: IntentConfig = Field(default_factory=IntentConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    domain: DomainConfig = Field(default_factory=DomainConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator(*_SECTIONS.keys(), mode="before")
    @classmethod
    def _coerce_section(cls, v: Any, info) -> Any:
        if isinstance(v, dict):
            return _SECTIONS[info.field_name](**v)
        return v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def reasoning_api_key(self) -> Optional[str]:
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }.get(self.reasoning.provider)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems Pydantic can't see (API key
        presence for the chosen provider, backend settings that only make
        sense together).
        """
        errors: list[str] = []

        # ── Reasoning provider API key ───────────────────────────────────────
        key_env = {"openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY"}
        provider = self.reasoning.provider
        if not self.reasoning_api_key:
            errors.append(
                f"Reasoning provider '{provider}' requires {key_env[provider]} "
                f"to be set in your .env file."
            )

        # ── Domain backend ───────────────────────────────────────────────────
        if self.domain.backend == "http" and not self.domain.base_url:
            errors.append(
                "domain.backend is 'http' but domain.base_url is not set."
            )

        # ── Context budget must leave room for recent messages ───────────────
        if self.context.summary_max_tokens >= self.context.max_tokens:
            errors.append(
                "context.summary_max_tokens must be smaller than context.max_tokens."
            )
        if self.context.keep_recent > self.context.summarization_threshold:
            errors.append(
                "context.keep_recent must not exceed context.summarization_threshold."
            )

        # ── Intent retry delays ──────────────────────────────────────────────
        if self.intent.base_delay > self.intent.max_delay:
            errors.append("intent.base_delay must not exceed intent.max_delay.")

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nCopilot startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. COPILOT_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("COPILOT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default path
    on first use. Guarded by _singleton_lock against double-initialisation.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(**{
                k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                if k in _SECTIONS
            })
        return _singleton
