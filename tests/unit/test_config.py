"""
tests/unit/test_config.py — Config Validation Tests

Covers:
  - Defaults match the documented limits (0.5 floor, 2s/x2/3 retries,
    8000-token context, 10-message threshold, 30-day TTL)
  - Field validators reject bad values at parse time
  - validate_all() raises ConfigError with a numbered list
  - validate_all() catches a missing API key for the chosen provider
  - validate_all() catches cross-field problems (http backend without URL,
    summary budget >= context budget, keep_recent > threshold)
  - COPILOT_CONFIG env var is respected by load_settings()
  - Explicit config_path argument takes priority over env var
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
from pydantic import ValidationError

from config.settings import (
    ConfigError,
    ContextConfig,
    GatewayConfig,
    IntentConfig,
    LoggingConfig,
    OrchestratorConfig,
    RateLimitConfig,
    ReasoningConfig,
    Settings,
    get_settings,
    load_settings,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

_ROOT = Path(__file__).resolve().parents[2]


def _make_settings(**overrides) -> Settings:
    """Build a Settings object from keyword overrides (no YAML file needed)."""
    return Settings(**overrides)


def _write_yaml(tmp_path, body: str, name: str = "config.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


# ─────────────────────────────────────────────────────────────────────────────
# Defaults
# ─────────────────────────────────────────────────────────────────────────────

class TestDefaults:

    def test_intent_defaults(self):
        cfg = IntentConfig()
        assert cfg.min_confidence == 0.5
        assert (cfg.base_delay, cfg.backoff_factor, cfg.max_attempts) == (2.0, 2.0, 3)

    def test_context_defaults(self):
        cfg = ContextConfig()
        assert cfg.max_tokens == 8000
        assert cfg.summarization_threshold == 10
        assert cfg.keep_recent == 5
        assert cfg.ttl_days == 30

    def test_rate_limit_defaults(self):
        cfg = RateLimitConfig()
        assert (cfg.messages_per_minute, cfg.burst_allowance, cfg.tokens_per_day) == (20, 5, 100_000)

    def test_orchestrator_defaults(self):
        cfg = OrchestratorConfig()
        assert cfg.max_steps == 5
        assert cfg.max_message_chars == 2000
        assert cfg.progress_notice_seconds == 10.0

    def test_shipped_yaml_loads(self):
        settings = load_settings(_ROOT / "config" / "config.yaml")
        assert settings.reasoning.provider == "openai"
        assert settings.gateway.port == 9090


# ─────────────────────────────────────────────────────────────────────────────
# Field validators
# ─────────────────────────────────────────────────────────────────────────────

class TestFieldValidation:

    @pytest.mark.parametrize("value", [-0.1, 1.5])
    def test_confidence_out_of_range(self, value):
        with pytest.raises(ValidationError, match="min_confidence"):
            IntentConfig(min_confidence=value)

    def test_backoff_factor_below_one(self):
        with pytest.raises(ValidationError):
            IntentConfig(backoff_factor=0.5)

    def test_zero_attempts(self):
        with pytest.raises(ValidationError):
            IntentConfig(max_attempts=0)

    def test_negative_burst(self):
        with pytest.raises(ValidationError):
            RateLimitConfig(burst_allowance=-1)

    def test_zero_message_budget(self):
        with pytest.raises(ValidationError):
            RateLimitConfig(messages_per_minute=0)

    def test_negative_timeout(self):
        with pytest.raises(ValidationError):
            OrchestratorConfig(action_timeout_seconds=0)

    def test_bad_port(self):
        with pytest.raises(ValidationError):
            GatewayConfig(port=70000)

    def test_unknown_provider(self):
        with pytest.raises(ValidationError, match="not supported"):
            ReasoningConfig(provider="bytez")

    def test_log_level_normalised(self):
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingConfig(level="LOUD")

    def test_section_dict_coerced(self):
        settings = _make_settings(intent={"min_confidence": 0.7})
        assert isinstance(settings.intent, IntentConfig)
        assert settings.intent.min_confidence == 0.7


# ─────────────────────────────────────────────────────────────────────────────
# validate_all()
# ─────────────────────────────────────────────────────────────────────────────

class TestValidateAll:

    def test_passes_with_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        _make_settings().validate_all()

    def test_missing_key_for_provider(self):
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            _make_settings().validate_all()

    def test_anthropic_needs_its_own_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        settings = _make_settings(reasoning={"provider": "anthropic"})
        with pytest.raises(ConfigError, match="ANTHROPIC_API_KEY"):
            settings.validate_all()

    def test_http_domain_needs_base_url(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with pytest.raises(ConfigError, match="domain.base_url"):
            _make_settings(domain={"backend": "http"}).validate_all()

    def test_summary_budget_must_fit(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        settings = _make_settings(context={"max_tokens": 1000, "summary_max_tokens": 1000})
        with pytest.raises(ConfigError, match="summary_max_tokens"):
            settings.validate_all()

    def test_all_problems_numbered(self):
        settings = _make_settings(
            domain={"backend": "http"},
            context={"keep_recent": 20},
            intent={"base_delay": 60.0},
        )
        with pytest.raises(ConfigError) as exc_info:
            settings.validate_all()
        message = str(exc_info.value)
        assert "4 configuration problem(s)" in message
        for n in range(1, 5):
            assert f"  {n}. " in message


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────

class TestLoading:

    def test_env_var_config_path(self, tmp_path, monkeypatch):
        path = _write_yaml(tmp_path, """
            rate_limit:
              messages_per_minute: 7
        """)
        monkeypatch.setenv("COPILOT_CONFIG", str(path))
        assert load_settings().rate_limit.messages_per_minute == 7

    def test_explicit_path_beats_env(self, tmp_path, monkeypatch):
        env_path = _write_yaml(tmp_path, "gateway:\n  port: 1111\n", "env.yaml")
        arg_path = _write_yaml(tmp_path, "gateway:\n  port: 2222\n", "arg.yaml")
        monkeypatch.setenv("COPILOT_CONFIG", str(env_path))
        assert load_settings(arg_path).gateway.port == 2222

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "nope.yaml")
        assert settings.context.max_tokens == 8000

    def test_unknown_sections_ignored(self, tmp_path):
        path = _write_yaml(tmp_path, """
            voice:
              enabled: true
            store:
              backend: sqlite
        """)
        settings = load_settings(path)
        assert settings.store.backend == "sqlite"

    def test_reasoning_api_key_follows_provider(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-anthropic")
        assert _make_settings().reasoning_api_key == "sk-openai"
        assert _make_settings(reasoning={"provider": "anthropic"}).reasoning_api_key == "sk-anthropic"

    def test_get_settings_returns_last_loaded(self, tmp_path, monkeypatch):
        import config.settings as settings_module
        monkeypatch.setattr(settings_module, "_singleton", None)
        path = _write_yaml(tmp_path, "gateway:\n  port: 3333\n")

        loaded = load_settings(path)
        assert get_settings() is loaded
        assert get_settings().gateway.port == 3333
