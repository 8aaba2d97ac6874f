"""
Root conftest — per-test isolation for process-wide state.

  - Secret env vars (provider keys, domain token, COPILOT_CONFIG) are removed
    so validate_all() only sees what a test sets explicitly.
  - Settings stops reading .env, so a developer's local file cannot leak in.
  - The Settings singleton and structlog contextvars are reset, because the
    orchestrator binds correlation/conversation ids that would otherwise
    carry over into the next test's log lines.
"""
import pytest
import structlog.contextvars

_SECRET_ENV_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "DOMAIN_API_TOKEN",
    "COPILOT_CONFIG",
)


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    for var in _SECRET_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import config.settings as settings_module
    from pydantic_settings import SettingsConfigDict

    monkeypatch.setattr(
        settings_module.Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_nested_delimiter="__",
            extra="ignore",
            case_sensitive=False,
        ),
    )
    monkeypatch.setattr(settings_module, "_singleton", None)

    yield
    structlog.contextvars.clear_contextvars()
