"""Tests for configuration management."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from fedcore.config import (
    DatabaseConfig,
    FederationConfig,
    PushConfig,
    ServerConfig,
)


class TestFederationConfig:
    """Tests for FederationConfig."""

    def test_defaults(self):
        """Test default federation settings."""
        config = FederationConfig()
        assert config.domain == "social.example"
        assert config.port == 8080
        assert config.max_page_size == 80
        assert config.default_followers_limit == 40
        assert config.default_statuses_limit == 20

    def test_base_url_trailing_slash_stripped(self):
        """Test that trailing slashes are removed from base URL."""
        config = FederationConfig(base_url="https://social.example/")
        assert config.base_url == "https://social.example"

    def test_http_base_url_warns(self):
        """Test that a non-HTTPS base URL is accepted with a warning."""
        with pytest.warns(UserWarning):
            config = FederationConfig(base_url="http://localhost:8080")
        assert config.base_url == "http://localhost:8080"

    def test_port_range(self):
        """Test port validation."""
        with pytest.raises(PydanticValidationError):
            FederationConfig(port=0)
        with pytest.raises(PydanticValidationError):
            FederationConfig(port=70000)

    def test_fetch_timeout_must_be_positive(self):
        """Test fetch timeout validation."""
        with pytest.raises(PydanticValidationError):
            FederationConfig(fetch_timeout_seconds=0)

    def test_env_prefix(self, monkeypatch):
        """Test AP_ environment variables are picked up."""
        monkeypatch.setenv("AP_DOMAIN", "fedi.example")
        monkeypatch.setenv("AP_MAX_PAGE_SIZE", "50")
        config = FederationConfig()
        assert config.domain == "fedi.example"
        assert config.max_page_size == 50


class TestDatabaseConfig:
    """Tests for DatabaseConfig."""

    def test_default_url(self):
        config = DatabaseConfig()
        assert config.url.startswith("sqlite+aiosqlite://")

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("DB_URL", "postgresql+asyncpg://localhost/fedcore")
        assert DatabaseConfig().url == "postgresql+asyncpg://localhost/fedcore"


class TestPushConfig:
    """Tests for PushConfig."""

    def test_delivery_disabled_by_default(self):
        config = PushConfig()
        assert config.gateway_url == ""
        assert config.timeout_seconds == 5.0


class TestServerConfig:
    """Tests for the aggregated ServerConfig."""

    def test_nested_dicts(self):
        """Test building sub-configs from dictionaries."""
        config = ServerConfig(
            federation={"domain": "a.example", "base_url": "https://a.example"},
            push={"gateway_url": "https://push.example/send"},
        )
        assert config.federation.domain == "a.example"
        assert config.push.gateway_url == "https://push.example/send"
        assert config.log_level == "INFO"

    def test_from_yaml(self, tmp_path):
        """Test loading configuration from a YAML file."""
        path = tmp_path / "fedcore.yaml"
        path.write_text(
            "federation:\n"
            "  domain: yaml.example\n"
            "  base_url: https://yaml.example/\n"
            "  max_page_size: 60\n"
            "database:\n"
            "  url: \"sqlite+aiosqlite:///:memory:\"\n"
            "log_level: DEBUG\n"
        )

        config = ServerConfig.from_yaml(str(path))

        assert config.federation.domain == "yaml.example"
        assert config.federation.base_url == "https://yaml.example"
        assert config.federation.max_page_size == 60
        assert config.database.url == "sqlite+aiosqlite:///:memory:"
        assert config.log_level == "DEBUG"
