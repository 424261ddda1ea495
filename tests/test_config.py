"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from flowgraph.config import (
    AppConfig,
    LogLevel,
    LoopCeilingPolicy,
    ScriptIsolation,
    get_config,
    get_testing_config,
    reset_config,
    validate_config,
)
from flowgraph.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Test cases for AppConfig."""

    def test_defaults(self):
        config = AppConfig()

        assert config.database_url is None
        assert not config.has_database
        assert config.max_loop_iterations == 100
        assert config.loop_ceiling_policy == LoopCeilingPolicy.CLAMP
        assert config.max_tool_rounds == 10
        assert config.script_isolation == ScriptIsolation.PROCESS

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWGRAPH_PORT", "9001")
        monkeypatch.setenv("FLOWGRAPH_DEBUG", "yes")
        monkeypatch.setenv("FLOWGRAPH_DATABASE_URL", "sqlite:///./runs.db")
        monkeypatch.setenv("FLOWGRAPH_LOOP_CEILING_POLICY", "REJECT")
        monkeypatch.setenv("FLOWGRAPH_LOG_LEVEL", "debug")
        monkeypatch.setenv("FLOWGRAPH_CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("FLOWGRAPH_SCRIPT_TIMEOUT", "1.5")
        monkeypatch.setenv("FLOWGRAPH_SCRIPT_ISOLATION", "THREAD")

        config = AppConfig.from_env()

        assert config.port == 9001
        assert config.debug is True
        assert config.is_sqlite
        assert config.loop_ceiling_policy == LoopCeilingPolicy.REJECT
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["http://a.test", "http://b.test"]
        assert config.script_timeout == 1.5
        assert config.script_isolation == ScriptIsolation.THREAD

    def test_api_key_falls_back_to_provider_variable(self, monkeypatch):
        monkeypatch.delenv("FLOWGRAPH_ANTHROPIC_API_KEY", raising=False)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

        assert AppConfig.from_env().anthropic_api_key == "sk-test"

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    @pytest.mark.parametrize("overrides", [
        {"port": 0},
        {"database_url": "oracle://db"},
        {"max_concurrent_executions": 0},
        {"max_loop_iterations": -1},
        {"node_timeout": 0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            AppConfig(**overrides)

    def test_empty_database_url_means_memory_only(self):
        assert AppConfig(database_url="").database_url is None

    def test_uvicorn_config(self):
        config = AppConfig(port=8123, log_level=LogLevel.WARNING)

        assert config.get_uvicorn_config() == {
            "host": "0.0.0.0", "port": 8123, "reload": False, "log_level": "warning", "access_log": False,
        }


class TestValidateConfig:
    """Test cases for validate_config."""

    def test_testing_config_is_valid(self):
        validate_config(get_testing_config())

    def test_creates_database_directory(self, tmp_path):
        db_dir = tmp_path / "data"
        config = AppConfig(database_url=f"sqlite:///{db_dir}/runs.db")

        validate_config(config)

        assert db_dir.exists()

    def test_rejects_excessive_concurrency(self):
        with pytest.raises(ConfigurationError):
            validate_config(AppConfig(max_concurrent_executions=500))

    def test_rejects_inverted_retry_delays(self):
        with pytest.raises(ConfigurationError) as info:
            validate_config(AppConfig(model_retry_base_delay=10.0, model_retry_max_delay=1.0))

        assert "model_retry_base_delay" in info.value.message
