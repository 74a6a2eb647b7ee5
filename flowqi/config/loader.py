"""
Configuration loader for the FlowQi ledger service.

Loads configuration from a YAML file and environment variables with nested
key access. Secrets (database URL, Exact Online client credentials) only
come from the environment.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/app.yaml"

EXACT_BASE_URL = "https://start.exactonline.nl"

# Global configuration cache
_config_cache: dict[str, Any] | None = None


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict[str, Any]:
    """Load configuration from YAML file with environment variable support."""
    global _config_cache

    if _config_cache is not None:
        return _config_cache

    load_dotenv()

    config_file = Path(config_path)
    if not config_file.exists():
        logger.warning(f"Configuration file not found: {config_path}. Using defaults.")
        _config_cache = {}
        return _config_cache

    with open(config_file) as f:
        config = yaml.safe_load(f) or {}

    _config_cache = config
    return config


def cfg(key: str, default: Any = None) -> Any:
    """
    Get configuration value using dot notation.

    Args:
        key: Dot-separated key path (e.g., "exact.api.timeout")
        default: Default value if key is not found

    Examples:
        cfg("global.timezone", "Europe/Amsterdam")
        cfg("importer.batch_size", 50)
    """
    config = load_config()

    if "." not in key:
        return config.get(key, default)

    value = config
    try:
        for k in key.split("."):
            value = value[k]
        return value
    except (KeyError, TypeError):
        return default


def env(key: str, default: str = None) -> str | None:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


def get_required_env(key: str) -> str:
    """
    Get required environment variable or raise error.

    Raises:
        ValueError: If environment variable is not set
    """
    value = env(key)
    if not value:
        raise ValueError(f"{key} environment variable is required")
    return value


def get_database_url() -> str:
    """Get database URL from environment."""
    load_dotenv()
    return get_required_env("DATABASE_URL")


class ExactConfig(BaseModel):
    """Exact Online OAuth client and API settings."""

    client_id: str = Field(..., description="OAuth client ID of the Exact app registration")
    client_secret: str = Field(..., description="OAuth client secret")
    redirect_uri: str = Field(..., description="Callback URL registered with Exact")
    base_url: str = Field(default=EXACT_BASE_URL, description="Exact Online regional host")
    timeout: float = Field(default=30.0, description="HTTP timeout in seconds")
    calls_per_minute: int = Field(default=60, description="Exact API minutely rate limit")

    @property
    def authorization_url(self) -> str:
        return f"{self.base_url}/api/oauth2/auth"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/api/oauth2/token"

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api/v1"


def get_exact_config() -> ExactConfig:
    """
    Get Exact Online configuration from environment and app config.

    Raises:
        ValueError: If a required environment variable is missing
    """
    load_dotenv()

    missing = [
        key
        for key in ("EXACT_CLIENT_ID", "EXACT_CLIENT_SECRET", "EXACT_REDIRECT_URI")
        if not env(key)
    ]
    if missing:
        raise ValueError(f"Missing Exact Online settings: {', '.join(missing)}")

    return ExactConfig(
        client_id=env("EXACT_CLIENT_ID"),
        client_secret=env("EXACT_CLIENT_SECRET"),
        redirect_uri=env("EXACT_REDIRECT_URI"),
        base_url=env("EXACT_BASE_URL", EXACT_BASE_URL).rstrip("/"),
        timeout=cfg("exact.api.timeout", 30.0),
        calls_per_minute=cfg("exact.api.calls_per_minute", 60),
    )


def get_sync_organizations() -> list[str]:
    """Organization IDs the scheduler syncs with Exact Online."""
    return [str(org) for org in cfg("exact.organizations", []) or []]


def get_job_config(job: str) -> dict[str, Any]:
    """Get configuration for a scheduled job (e.g. "gl_accounts")."""
    return cfg(f"exact.jobs.{job}", {}) or {}


def is_job_enabled(job: str) -> bool:
    """Check if a specific job is enabled."""
    return bool(get_job_config(job).get("enabled", False))


def validate_config() -> None:
    """Validate configuration and required environment variables."""
    errors = []

    try:
        get_database_url()
    except ValueError as e:
        errors.append(str(e))

    if cfg("exact.enabled", True):
        try:
            get_exact_config()
        except ValueError as e:
            errors.append(f"Exact Online: {e}")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        )
