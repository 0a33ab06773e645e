"""
Client configuration.

All settings come from the environment (or a .env file) through
pydantic-settings and are validated when first loaded, so a misconfigured
client fails at startup rather than on its first request. The web console's
VITE_API_URL is accepted as an alias of API_BASE_URL so both can share one
.env file.
"""

import json
from pathlib import Path
from typing import Annotated, Any, List, Optional

import structlog
from pydantic import (
    AliasChoices,
    BeforeValidator,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = structlog.get_logger(__name__)


# Backend messages meaning "this session is over", whatever the status code.
# Matching ignores case and accents.
DEFAULT_SESSION_ENDED_PHRASES = [
    "token não fornecido",
    "token inválido",
    "token expirado",
    "não autorizado",
    "sessão expirada",
    "token not provided",
    "invalid token",
    "token expired",
    "unauthorized",
    "session expired",
    "use post /login",
    "use post /auth/refresh",
]

SESSION_EXPIRED_MESSAGE = "Sua sessão expirou. Por favor, entre novamente."

APP_ENVS = ("development", "staging", "production", "test")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
STORE_BACKENDS = ("file", "memory")


def parse_string_list(v: Any) -> List[str]:
    """
    Accept a list setting as a JSON array, a comma-separated string or a list.

    'token expirado, conta suspensa' and '["token expirado"]' both work; an
    empty value is an empty list.
    """
    if v is None:
        return []
    if not isinstance(v, str):
        return v
    text = v.strip()
    if text.startswith("["):
        return json.loads(text)
    return [part.strip() for part in text.split(",") if part.strip()]


StringList = Annotated[List[str], NoDecode, BeforeValidator(parse_string_list)]


class Settings(BaseSettings):
    """
    Settings for the authenticated client.

    Environment variables win over .env, which wins over the defaults below.
    """

    # ----- Runtime -----
    app_env: str = Field(default="development", description=f"One of {APP_ENVS}")
    app_name: str = Field(default="Caramello Logística Client")
    app_version: str = Field(default="0.1.0")
    log_level: str = Field(default="INFO", description=f"One of {LOG_LEVELS}")

    # ----- Backend -----
    # The console calls the relative "/api" on its own dev server (port 8080)
    api_base_url: str = Field(
        default="http://localhost:8080/api",
        validation_alias=AliasChoices("API_BASE_URL", "VITE_API_URL"),
        description="Base URL of the freight management REST backend",
    )
    http_connect_timeout: float = Field(default=10.0, gt=0)
    http_read_timeout: float = Field(default=30.0, gt=0)
    http_write_timeout: float = Field(default=30.0, gt=0)
    http_pool_timeout: float = Field(default=5.0, gt=0)

    login_endpoint: str = "/auth/login"
    refresh_endpoint: str = "/auth/refresh"
    register_endpoint: str = "/auth/registrar"

    # ----- Refresh exchange -----
    refresh_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=120,
        description="Upper bound for one refresh-token exchange, retries included",
    )
    refresh_max_network_retries: int = Field(
        default=2, ge=0, le=10, description="Extra attempts after a transport error"
    )
    refresh_base_delay_ms: int = Field(
        default=200, ge=10, le=5000, description="First backoff delay; doubles per retry"
    )

    # ----- Session -----
    login_path: str = "/login"
    session_expired_message: str = SESSION_EXPIRED_MESSAGE
    session_ended_phrases: StringList = Field(
        default_factory=lambda: list(DEFAULT_SESSION_ENDED_PHRASES)
    )
    notification_dedupe_seconds: float = Field(
        default=3.0, ge=0, description="Identical notifications inside this window show once"
    )

    # ----- Persistence -----
    credential_store_backend: str = Field(default="file", description=f"One of {STORE_BACKENDS}")
    credential_store_path: Path = Path("~/.config/caramello-logistica/session.json")
    fernet_key: Optional[str] = Field(
        default=None, description="Encrypts the session file; see `logistica keygen`"
    )
    fernet_keys: StringList = Field(
        default_factory=list, description="Retired keys still accepted for reading"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("app_env", "credential_store_backend")
    @classmethod
    def lowercase_choice(cls, v: str, info: ValidationInfo) -> str:
        allowed = APP_ENVS if info.field_name == "app_env" else STORE_BACKENDS
        value = v.strip().lower()
        if value not in allowed:
            raise ValueError(f"{info.field_name} must be one of {allowed}, got {v!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def uppercase_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}, got {v!r}")
        return level

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("session_ended_phrases")
    @classmethod
    def lowercase_phrases(cls, phrases: List[str]) -> List[str]:
        return [p.strip().lower() for p in phrases if p and p.strip()]

    @property
    def auth_endpoints(self) -> List[str]:
        """Endpoints whose failures mean bad credentials, not an expired session."""
        return [self.login_endpoint, self.refresh_endpoint, self.register_endpoint]

    def log_config(self) -> None:
        values = self.model_dump(mode="json")
        for secret in ("fernet_key", "fernet_keys"):
            if values.get(secret):
                values[secret] = "***"
        logger.debug("Configuration loaded", **values)

    def validate_required_for_production(self) -> None:
        """Refuse to run in production with plain HTTP or an unencrypted session file."""
        if self.app_env != "production":
            return

        problems = []
        if not self.api_base_url.startswith("https://"):
            problems.append("API_BASE_URL must use https")
        if self.credential_store_backend == "file" and not self.fernet_key:
            problems.append("FERNET_KEY is required to persist tokens")
        if self.log_level == "DEBUG":
            logger.warning("DEBUG logging enabled in production")

        if problems:
            raise ValueError("Invalid production configuration: " + "; ".join(problems))


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Load and validate settings once; later calls return the same object."""
    global _settings
    if _settings is None:
        try:
            settings = Settings()
        except ValidationError as e:
            logger.error("Invalid configuration", errors=e.errors())
            raise
        settings.validate_required_for_production()
        settings.log_config()
        _settings = settings
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
