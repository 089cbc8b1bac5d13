"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from mitigation_engine.config import (
    AppConfig,
    DatabaseType,
    LogLevel,
    get_config,
    get_testing_config,
    load_config,
    reset_config,
)
from mitigation_engine.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Test cases for AppConfig."""

    def test_defaults(self):
        config = AppConfig()

        assert config.database_url is None
        assert not config.uses_database
        assert config.database_type is None
        assert config.match_threshold == 0.5
        assert config.timeout_factor == 1.5
        assert config.max_escalation_reruns == 1

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MITIGATION_ENGINE_DATABASE_URL", "sqlite:///./engine.db")
        monkeypatch.setenv("MITIGATION_ENGINE_MAX_CONCURRENT_EXECUTIONS", "8")
        monkeypatch.setenv("MITIGATION_ENGINE_TIMEOUT_FACTOR", "2.0")
        monkeypatch.setenv("MITIGATION_ENGINE_STRUCTURED_LOGGING", "yes")
        monkeypatch.setenv("MITIGATION_ENGINE_LOG_LEVEL", "debug")

        config = AppConfig.from_env()

        assert config.database_type == DatabaseType.SQLITE
        assert config.get_database_connect_args() == {"check_same_thread": False}
        assert config.max_concurrent_executions == 8
        assert config.timeout_factor == 2.0
        assert config.structured_logging
        assert config.log_level == LogLevel.DEBUG

    def test_invalid_env_value(self, monkeypatch):
        monkeypatch.setenv("MITIGATION_ENGINE_MAX_CONCURRENT_EXECUTIONS", "many")

        with pytest.raises(ConfigurationError) as exc_info:
            AppConfig.from_env()

        assert "MITIGATION_ENGINE_MAX_CONCURRENT_EXECUTIONS" in exc_info.value.message

    @pytest.mark.parametrize("field,value", [
        ("database_url", "oracle://db"),
        ("match_threshold", 1.0),
        ("timeout_factor", 0.5),
        ("max_concurrent_executions", 0),
        ("retry_backoff_seconds", -1),
        ("monitor_interval_seconds", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            AppConfig(**{field: value})

    def test_blank_database_url_means_in_memory(self):
        assert AppConfig(database_url="  ").database_url is None

    def test_postgres_connect_args(self):
        config = AppConfig(database_url="postgresql+psycopg://user@localhost/engine")

        assert config.database_type == DatabaseType.POSTGRESQL
        assert config.get_database_connect_args() == {}


class TestConfigLoading:
    """Test cases for the global configuration helpers."""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_load_config_reads_env_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MITIGATION_ENGINE_MATCH_THRESHOLD", raising=False)
        env_file = tmp_path / "engine.env"
        env_file.write_text("MITIGATION_ENGINE_MATCH_THRESHOLD=0.6\n")

        try:
            config = load_config(str(env_file))
            assert config.match_threshold == 0.6
            assert get_config() is config
        finally:
            monkeypatch.delenv("MITIGATION_ENGINE_MATCH_THRESHOLD", raising=False)

    def test_testing_config(self):
        config = get_testing_config(max_escalation_reruns=3)

        assert not config.uses_database
        assert config.retry_backoff_seconds == 0.0
        assert config.max_escalation_reruns == 3
