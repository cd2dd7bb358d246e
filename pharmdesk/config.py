"""
Deployment configuration for PharmDesk.

Settings are validated pydantic objects, loaded from a YAML file and then
overlaid with environment variables so secrets (API keys, sender
addresses) never have to live in the YAML.  The lifecycle core never
reads configuration itself; ``pharmdesk.bootstrap`` hands each
collaborator its already-configured piece.

Example YAML structure::

    pharmdesk:
      database_path: "data/pharmdesk.db"
      attachment_max_bytes: 5242880
      notifications:
        mode: "resend"
        admin_email: "ops@example.org"
      security:
        reset_token_ttl_seconds: 1800
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Collaborator settings
# ---------------------------------------------------------------------------

class EnrichmentSettings(BaseModel):
    """Settings for the generative-text enrichment call."""

    api_key: str = Field(
        default="",
        description="API key for the generative-text provider.  Empty disables enrichment.",
    )
    model: str = Field(default="claude-sonnet-4-20250514")
    max_tokens: int = Field(default=1024, gt=0)
    max_searches: int = Field(
        default=5,
        ge=0,
        description="Upper bound on web searches the model may run per analysis.  0 disables search.",
    )


class NotificationSettings(BaseModel):
    """Settings for submission confirmations and admin alerts."""

    mode: str = Field(
        default="disabled",
        description="'disabled', 'proxy' (POST to an internal endpoint) or 'resend' (Resend email API).",
    )
    endpoint: str = Field(default="", description="Proxy endpoint URL for 'proxy' mode.")
    api_key: str = Field(default="", description="Resend API key for 'resend' mode.")
    from_email: str = Field(default="")
    admin_email: str = Field(default="")
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_workers: int = Field(default=2, ge=1)

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        allowed = {"disabled", "proxy", "resend"}
        if v not in allowed:
            raise ValueError(f"notifications.mode must be one of {allowed}, got '{v}'")
        return v


class BootstrapAdmin(BaseModel):
    """First administrator, created only when the staff table is empty."""

    name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class SecuritySettings(BaseModel):
    password_min_length: int = Field(default=6, ge=1)
    pbkdf2_iterations: int = Field(
        default=260_000,
        ge=1,
        description="PBKDF2-HMAC-SHA256 work factor for new credential hashes.",
    )
    reset_token_ttl_seconds: int = Field(default=3600, gt=0)
    bootstrap_admin: Optional[BootstrapAdmin] = None


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    """Complete PharmDesk deployment settings."""

    database_path: str = Field(
        default="data/pharmdesk.db",
        min_length=1,
        description="SQLite database file, or ':memory:' for a throwaway store.",
    )
    attachment_max_bytes: int = Field(
        default=5 * 1024 * 1024,
        gt=0,
        description="Largest decoded attachment accepted on a submission.",
    )
    audit_list_limit: Optional[int] = Field(
        default=None,
        gt=0,
        description="Optional cap on entries returned when listing the audit ledger.",
    )
    log_level: str = Field(default="INFO")
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"log_level '{v}' is not a logging level name")
        return v


DEFAULT_SETTINGS = Settings()
"""Settings used when no YAML file is supplied."""


# ---------------------------------------------------------------------------
# Environment overlay
# ---------------------------------------------------------------------------

# Maps environment variable -> (section, field).  Section None is top level.
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str]] = {
    "PHARMDESK_DATABASE_PATH": (None, "database_path"),
    "PHARMDESK_LOG_LEVEL": (None, "log_level"),
    "ANTHROPIC_API_KEY": ("enrichment", "api_key"),
    "PHARMDESK_NOTIFICATION_MODE": ("notifications", "mode"),
    "NOTIFICATION_ENDPOINT": ("notifications", "endpoint"),
    "RESEND_API_KEY": ("notifications", "api_key"),
    "FROM_EMAIL": ("notifications", "from_email"),
    "ADMIN_NOTIFICATION_EMAIL": ("notifications", "admin_email"),
}


def apply_env_overrides(
    settings: Settings, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Return a copy of ``settings`` with environment values laid over it.

    Empty environment values are ignored.  The result is re-validated.
    """
    environ = os.environ if environ is None else environ
    data = settings.model_dump()
    for var, (section, field) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        if section is None:
            data[field] = value
        else:
            data[section][field] = value
    return Settings(**data)


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> Settings:
    """Load settings from a YAML file with a top-level ``pharmdesk`` key.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any setting fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "pharmdesk" not in raw:
        raise ValueError("YAML file must contain a top-level 'pharmdesk' mapping.")

    section = raw["pharmdesk"] or {}
    if not isinstance(section, dict):
        raise ValueError("'pharmdesk' must be a mapping of settings.")

    return Settings(**section)


def load_settings(
    path: str | Path | None = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from ``path`` (if given) and apply environment overrides."""
    settings = load_settings_from_yaml(path) if path is not None else Settings()
    return apply_env_overrides(settings, environ)
