"""
Tests for the YAML settings loader and environment substitution.
"""
import textwrap

import pytest

from config.settings import Settings, _substitute_env_vars, load_settings


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent("""
        app_name: "BrandFlow Test"
        environment: "${BRANDFLOW_ENV:-development}"
        queue:
          backend: "memory"
          redis_url: "${REDIS_URL:-redis://localhost:6379}"
          poll_interval: 0.5
          queues: ["email-send", "crm-sync"]
          retired_option: true
        credits:
          initial_balances: {logo: 10, mockup: 5}
        abandonment:
          app_url: "${APP_URL}"
          resume_token_secret: "${RESUME_TOKEN_SECRET:-fallback-secret}"
    """))
    return path


class TestSubstitution:
    def test_plain_variable(self, monkeypatch):
        monkeypatch.setenv("APP_URL", "https://app.brandflow.test")
        assert _substitute_env_vars("${APP_URL}/wizard") == "https://app.brandflow.test/wizard"

    def test_unset_plain_variable_left_as_is(self, monkeypatch):
        monkeypatch.delenv("BRANDFLOW_NOPE", raising=False)
        assert _substitute_env_vars("${BRANDFLOW_NOPE}") == "${BRANDFLOW_NOPE}"

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        assert _substitute_env_vars("${REDIS_URL:-redis://cache:6379}") == "redis://cache:6379"

    def test_empty_default(self, monkeypatch):
        monkeypatch.delenv("CRM_API_KEY", raising=False)
        assert _substitute_env_vars("${CRM_API_KEY:-}") == ""

    def test_env_wins_over_default(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://prod:6379")
        assert _substitute_env_vars("${REDIS_URL:-redis://cache:6379}") == "redis://prod:6379"


class TestLoadSettings:
    def test_sections_loaded(self, config_file, monkeypatch):
        monkeypatch.setenv("BRANDFLOW_ENV", "staging")
        monkeypatch.setenv("APP_URL", "https://app.brandflow.test")
        monkeypatch.delenv("RESUME_TOKEN_SECRET", raising=False)

        settings = load_settings(str(config_file))

        assert settings.app_name == "BrandFlow Test"
        assert settings.environment == "staging"
        assert settings.queue.poll_interval == 0.5
        assert settings.queue.queues == ["email-send", "crm-sync"]
        assert settings.credits.initial_balances == {"logo": 10, "mockup": 5}
        assert settings.abandonment.app_url == "https://app.brandflow.test"
        assert settings.abandonment.resume_token_secret == "fallback-secret"

    def test_unknown_keys_ignored(self, config_file):
        settings = load_settings(str(config_file))
        assert not hasattr(settings.queue, "retired_option")

    def test_missing_sections_use_defaults(self, config_file):
        settings = load_settings(str(config_file))
        assert settings.integrations.mode == "logging"
        assert settings.progress.subscriber_buffer == 100
        assert settings.abandonment.inactivity_seconds == 86400

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.queue.backend == "memory"
        assert settings.app_name == Settings().app_name

    def test_env_selects_config_path(self, config_file, monkeypatch):
        monkeypatch.setenv("BRANDFLOW_CONFIG", str(config_file))
        assert load_settings().app_name == "BrandFlow Test"

    def test_shipped_defaults_file(self, monkeypatch):
        monkeypatch.delenv("BRANDFLOW_CONFIG", raising=False)
        monkeypatch.delenv("APP_URL", raising=False)
        settings = load_settings()
        assert settings.queue.backend == "memory"
        assert settings.abandonment.app_url == "http://localhost:3000"
        assert settings.integrations.crm_url == ""
