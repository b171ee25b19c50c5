"""Tests for application configuration."""

import os

import pytest
from pydantic import ValidationError

from flowengine.config import (
    AppConfig,
    LogLevel,
    get_testing_config,
    load_config,
    reset_config,
    validate_config,
)


ENV_KEYS = ("FLOWENGINE_PORT", "FLOWENGINE_DEBUG", "FLOWENGINE_CORS_ORIGINS",
            "FLOWENGINE_NODE_TIMEOUT", "FLOWENGINE_LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    # load_dotenv writes to os.environ directly
    for key in ENV_KEYS:
        os.environ.pop(key, None)
    reset_config()


class TestAppConfig:
    """Defaults, validation and environment loading."""

    def test_defaults(self):
        config = AppConfig()

        assert config.default_max_concurrency == 2
        assert config.node_max_retries == 0
        assert config.is_sqlite

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWENGINE_PORT", "9001")
        monkeypatch.setenv("FLOWENGINE_DEBUG", "yes")
        monkeypatch.setenv("FLOWENGINE_CORS_ORIGINS", "http://a,http://b")
        monkeypatch.setenv("FLOWENGINE_NODE_TIMEOUT", "2.5")
        monkeypatch.setenv("FLOWENGINE_LOG_LEVEL", "debug")

        config = AppConfig.from_env()

        assert config.port == 9001
        assert config.debug is True
        assert config.cors_origins == ["http://a", "http://b"]
        assert config.node_timeout == 2.5
        assert config.log_level == LogLevel.DEBUG

    def test_load_config_from_dotenv(self, tmp_path, monkeypatch):
        env_file = tmp_path / "engine.env"
        env_file.write_text("FLOWENGINE_PORT=8123\n")

        config = load_config(str(env_file))

        assert config.port == 8123

    @pytest.mark.parametrize("field,value", [
        ("port", 0),
        ("database_url", "oracle://db"),
        ("default_max_concurrency", 0),
        ("node_timeout", -1),
        ("node_max_retries", -1),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            AppConfig(**{field: value})

    def test_cross_field_validation(self):
        config = AppConfig(logs_default_page_size=500, logs_max_page_size=100)

        with pytest.raises(ValueError):
            validate_config(config)

    def test_testing_config(self):
        config = get_testing_config()

        validate_config(config)
        assert config.database_url == "sqlite:///:memory:"
        assert config.get_database_connect_args() == {"check_same_thread": False}
        assert config.get_uvicorn_config()["log_level"] == "warning"
