"""Configuration for the fedcore federation server."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FederationConfig(BaseSettings):
    """ActivityPub server settings."""

    model_config = SettingsConfigDict(env_prefix="AP_")

    domain: str = Field(
        default="social.example",
        description="Domain for local actors (e.g., @alice@social.example)"
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host address for HTTP server"
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for HTTP server"
    )
    base_url: str = Field(
        default="https://social.example",
        description="Public URL of this server (must be HTTPS for federation)"
    )
    user_kek: str = Field(
        default="",
        description="Key-encryption key used to wrap local actors' private keys"
    )
    fetch_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for fetching remote documents"
    )
    user_agent: str = Field(
        default="fedcore/0.1.0",
        description="User-Agent sent with remote fetches"
    )
    max_page_size: int = Field(
        default=80,
        ge=1,
        le=1000,
        description="Upper bound for any collection page size"
    )
    default_followers_limit: int = Field(
        default=40,
        ge=1,
        description="Followers page size when the client does not ask for one"
    )
    default_statuses_limit: int = Field(
        default=20,
        ge=1,
        description="Statuses page size when the client does not ask for one"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL uses HTTPS (required for ActivityPub)."""
        if v and not v.startswith("https://"):
            # Allow http for development
            import warnings
            warnings.warn("ActivityPub base URL should use HTTPS for production")
        return v.rstrip("/")


class DatabaseConfig(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///fedcore.db",
        description="SQLAlchemy database URL"
    )


class PushConfig(BaseSettings):
    """Push notification delivery settings."""

    model_config = SettingsConfigDict(env_prefix="PUSH_")

    gateway_url: str = Field(
        default="",
        description="Push gateway endpoint (empty = delivery disabled)"
    )
    timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for a single delivery request"
    )


class ServerConfig(BaseSettings):
    """Main server configuration combining all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-configs
    federation: FederationConfig = Field(default_factory=FederationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    push: PushConfig = Field(default_factory=PushConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @classmethod
    def from_yaml(cls, path: str) -> "ServerConfig":
        """Load configuration from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data)


def load_config() -> ServerConfig:
    """Load configuration from environment and .env file."""
    return ServerConfig()
