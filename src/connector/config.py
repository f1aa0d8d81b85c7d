"""Connector configuration using pydantic-settings.

This module defines the ConnectorSettings class that reads configuration
from environment variables with the CONNECTOR_ prefix. Only public_url is
required; the GitHub token may be supplied later through POST /configure.
"""

from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


WEBHOOK_PATH = "/webhooks"


class ConnectorSettings(BaseSettings):
    """GitHub connector configuration from environment variables.

    All environment variables are prefixed with CONNECTOR_ (e.g.,
    CONNECTOR_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - public_url: Externally reachable base URL of this service; webhooks
      deliver to public_url + "/webhooks" unless callback_url is set
    """

    model_config = SettingsConfigDict(
        env_prefix="CONNECTOR_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    # GitHub API token; GitHub calls fail with NotConfiguredError until set
    github_token: Optional[str] = None

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Secret GitHub signs webhook deliveries with
    webhook_secret: Optional[str] = None

    # -------------------------------------------------------------------------
    # Callback Configuration
    # -------------------------------------------------------------------------
    # Externally reachable base URL of this service
    public_url: str

    # Full webhook delivery URL, overrides public_url + "/webhooks"
    callback_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Event Source Configuration
    # -------------------------------------------------------------------------
    # "webhook" registers repository webhooks, "polling" reads event feeds
    event_source: Literal["webhook", "polling"] = "webhook"

    # Minimum seconds between event feed polls
    poll_interval_seconds: int = 60

    # Upper bound on pages walked when collecting a whole collection
    max_pages: int = 100

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; unset keeps subscriptions in memory
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Host address to bind the server to
    host: str = "0.0.0.0"

    # Port number for the server
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token", "webhook_secret")
    @classmethod
    def validate_optional_secret(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank secrets as unset."""
        if v is None or not v.strip():
            return None
        return v

    @field_validator("public_url", "github_base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate that the URL is not empty and uses http(s)."""
        if not v or not v.strip():
            raise ValueError("URL cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("callback_url")
    @classmethod
    def validate_callback_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("callback_url must start with http:// or https://")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that database URL has a PostgreSQL scheme when set."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("poll_interval_seconds", "max_pages")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def webhook_callback_url(self) -> str:
        """URL every managed webhook delivers to."""
        return self.callback_url or f"{self.public_url}{WEBHOOK_PATH}"


def get_settings() -> ConnectorSettings:
    """Create and return ConnectorSettings instance.

    Returns:
        ConnectorSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return ConnectorSettings()
