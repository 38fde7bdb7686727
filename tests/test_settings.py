"""Tests for environment-driven configuration."""

from config.database import DatabaseConfig
from config.settings import Settings


class TestSettingsFromEnv:

    def test_defaults(self, monkeypatch):
        for name in ("API_KEYS", "COMMIT_POLL_CRON", "AI_MIN_CALL_INTERVAL", "EMBEDDING_PROVIDER"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.api.api_keys == []
        assert settings.api.commit_poll_cron == "*/15 * * * *"
        assert settings.ai.min_call_interval == 0.0
        assert settings.ai.embedding_provider == "huggingface"
        assert settings.pipeline.similarity_threshold == 0.12
        assert settings.pipeline.fallback_top_n == 5

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("API_KEYS", "one, two,,")
        monkeypatch.setenv("COMMIT_POLL_CRON", "")
        monkeypatch.setenv("AI_MIN_CALL_INTERVAL", "4")
        monkeypatch.setenv("EMBEDDING_PROVIDER", "LOCAL")
        monkeypatch.setenv("LOG_JSON", "yes")

        settings = Settings.from_env()

        assert settings.api.api_keys == ["one", "two"]
        assert settings.api.commit_poll_cron is None
        assert settings.ai.min_call_interval == 4.0
        assert settings.ai.embedding_provider == "local"
        assert settings.log_json is True

    def test_allowed_origins_are_split_and_trimmed(self, monkeypatch):
        monkeypatch.setenv("ALLOWED_ORIGINS", "https://app.example.com, https://admin.example.com,")

        settings = Settings.from_env()

        assert settings.api.allowed_origins == ["https://app.example.com", "https://admin.example.com"]


class TestDatabaseConfig:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_HOST", "db.internal")
        monkeypatch.setenv("POSTGRES_PORT", "6543")
        monkeypatch.setenv("DB_MAX_RETRIES", "5")

        config = DatabaseConfig.from_env()

        assert config.postgres.host == "db.internal"
        assert config.postgres.port == 6543
        assert config.max_retries == 5
