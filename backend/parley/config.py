"""Parley application configuration.

Loads settings from two YAML files:
  * parley.settings.yaml: non-secret configuration
  * parley.secrets.yaml: secrets (never committed)

Both paths can be overridden with the PARLEY_SETTINGS_FILE and
PARLEY_SECRETS_FILE environment variables.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("parley.settings.yaml")
SECRETS_FILE  = Path("parley.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------

# Publicly known placeholder; load_settings warns while it is in use.
DEFAULT_SECRET_KEY = "change-me-in-production"


class EncryptionSecrets(BaseModel):
    secret_key: str = DEFAULT_SECRET_KEY

    @field_validator("secret_key")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("encryption.secret_key must not be empty")
        return value


class JWTSecrets(BaseModel):
    secret_key: str = DEFAULT_SECRET_KEY
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    encryption: EncryptionSecrets = Field(default_factory=EncryptionSecrets)
    jwt:        JWTSecrets        = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    path:                      str   = "parley.duckdb"
    operation_timeout_seconds: float = 10.0

    @field_validator("operation_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("operation_timeout_seconds must be positive")
        return value


class ChatSettings(BaseModel):
    default_page_size:   int = 20
    max_page_size:       int = 100
    discoverable_status: str = "VERIFIED"

    @model_validator(mode="after")
    def _page_sizes(self) -> "ChatSettings":
        if self.default_page_size < 1 or self.max_page_size < self.default_page_size:
            raise ValueError("page sizes must satisfy 1 <= default_page_size <= max_page_size")
        return self


class AuthSettings(BaseModel):
    """How bearer credentials are verified.

    ``jwt`` verifies tokens locally with the shared secret; ``remote`` asks
    the identity service. The same verifier serves HTTP and WebSocket.
    """
    mode:                    Literal["jwt", "remote"] = "jwt"
    issuer:                  Optional[str] = None
    audience:                Optional[str] = None
    identity_service_url:    str   = "http://localhost:4000"
    verify_path:             str   = "/auth/is-valid-user"
    request_timeout_seconds: float = 5.0


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = settings_path or Path(os.environ.get("PARLEY_SETTINGS_FILE", SETTINGS_FILE))
    secrets_path  = secrets_path or Path(os.environ.get("PARLEY_SECRETS_FILE", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    if app_settings.secrets.encryption.secret_key == DEFAULT_SECRET_KEY:
        logger.warning("encryption.secret_key is the built-in default; set it in %s", secrets_path)
    if app_settings.auth.mode == "jwt" and app_settings.secrets.jwt.secret_key == DEFAULT_SECRET_KEY:
        logger.warning("jwt.secret_key is the built-in default; set it in %s", secrets_path)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, auth.mode=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.auth.mode,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget cached settings (used by tests)."""
    global _config
    _config = None
