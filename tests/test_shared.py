"""Tests for configuration, errors and logging helpers."""

from shared.config import ProviderSettings, Settings, load_yaml_config, save_yaml_config


class TestConfig:
    """Tests for settings loading."""

    def test_credential_from_environment(self, monkeypatch):
        """API keys resolve from the configured environment variable."""
        settings = ProviderSettings(id="openai", display_name="OpenAI", kind="openai", api_key_env="TEST_OPENAI_KEY")
        monkeypatch.delenv("TEST_OPENAI_KEY", raising=False)

        assert settings.has_credential is False

        monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")

        assert settings.has_credential is True
        assert settings.resolve_api_key() == "sk-test"

    def test_mock_providers_need_no_key(self):
        assert ProviderSettings(id="m", display_name="Mock").has_credential is True

    def test_yaml_round_trip(self, tmp_path):
        """Settings load from YAML files."""
        path = tmp_path / "config" / "settings.yaml"
        save_yaml_config({
            "log_level": "DEBUG",
            "providers": [{"id": "local", "display_name": "Local", "kind": "mock"}],
            "registry": {"default_provider": "local", "session_cost_limit": 5},
        }, path)

        settings = Settings.from_yaml(path)

        assert settings.log_level == "DEBUG"
        assert [p.id for p in settings.providers] == ["local"]
        assert settings.registry.session_cost_limit == 5
        assert settings.get_provider("local").kind == "mock"
        assert settings.get_provider("missing") is None

    def test_missing_yaml_is_empty(self, tmp_path):
        assert load_yaml_config(tmp_path / "absent.yaml") == {}

    def test_default_providers(self):
        settings = Settings()

        assert [p.id for p in settings.providers] == ["claude", "openai", "gemini"]
        assert settings.registry.default_provider == "claude"


class TestErrors:
    """Tests for the error taxonomy."""

    def test_error_info(self):
        from shared.errors import ProviderUnavailable

        info = ProviderUnavailable("A", 3, "timeout").to_info()

        assert info.code == "ProviderUnavailable"
        assert info.category == "transient"
        assert info.details == {"provider_id": "A", "attempts": 3, "last_error": "timeout"}

    def test_categories(self):
        from shared.errors import ConversationNotFound, ToolExecutionFailed, UnknownProvider

        assert UnknownProvider("x").category == "needs_setup"
        assert ConversationNotFound("x").category == "not_found"
        assert ToolExecutionFailed("t", "boom").category == "bug"


class TestLogging:
    """Tests for logging processors."""

    def test_secrets_are_redacted(self):
        from shared.logging import REDACTED, redact_secrets

        event = redact_secrets(None, "info", {"event": "connect", "api_key": "sk-live", "provider": "A"})

        assert event["api_key"] == REDACTED
        assert event["provider"] == "A"

    def test_empty_secret_is_left_alone(self):
        from shared.logging import redact_secrets

        assert redact_secrets(None, "info", {"api_key": None})["api_key"] is None

    def test_context_binding(self):
        """Bound values are merged into every event until cleared."""
        import structlog

        from shared.logging import bind_context, clear_context, unbind_context

        clear_context()
        bind_context(conversation_id="conv_1", provider="A")
        unbind_context("provider")
        assert structlog.contextvars.get_contextvars() == {"conversation_id": "conv_1"}

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}
