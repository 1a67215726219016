"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
SOFT FALLBACK - Token lifetime overrides never stop the service; a bad value
is logged and the next source in the precedence chain is used.
"""

import sys
from dataclasses import dataclass
from datetime import timedelta

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog import get_logger

from echo_ledger.exceptions import InvalidConfigurationError

logger = get_logger(__name__)

# Token policy defaults
DEFAULT_ACCESS_TOKEN_EXPIRY_SECONDS = 1
DEFAULT_REFRESH_TOKEN_EXPIRY_DAYS = 30
DEFAULT_ARCHIVE_GRACE_MS = 2 * 60 * 1000


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Echo Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Usage metering and credit accounting for echo apps"

    # Runtime environment ("production", "staging", "test", ...)
    environment: str = "production"
    integration_test_mode: bool = False

    # Token signing
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Token lifetimes - kept as raw strings so bad values degrade instead of failing
    oauth_access_token_expiry_seconds: str | None = None
    oauth_refresh_token_expiry_seconds: str | None = None
    oauth_refresh_token_expiry_days: str | None = None
    oauth_refresh_token_archive_grace_ms: str | None = None
    oauth_refresh_token_archive_grace_seconds: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    tracing_sample_ratio: float = 1.0
    service_name: str = "echo-ledger-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.jwt_secret:
            errors.append("JWT_SECRET is required but empty or missing")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def is_test_mode(self) -> bool:
        """True for local/integration test runs (zero rotation grace)."""
        return self.integration_test_mode or self.environment.lower() == "test"


# ============================================================================
# Token Policy
# ============================================================================


def _parse_int_override(setting: str, raw: str | None, minimum: int) -> int | None:
    """
    Parse a numeric override.

    Returns None when unset. Raises InvalidConfigurationError when the value
    is not an integer or is below ``minimum``.
    """
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw.strip())
    except ValueError as e:
        raise InvalidConfigurationError(setting, raw) from e
    if value < minimum:
        raise InvalidConfigurationError(setting, raw)
    return value


def _first_valid(*sources: tuple[str, str | None, int]) -> tuple[str, int] | None:
    """Return the first (setting, value) that parses, logging the ones that don't."""
    for setting, raw, minimum in sources:
        try:
            value = _parse_int_override(setting, raw, minimum)
        except InvalidConfigurationError as e:
            logger.warning(
                "token_policy_invalid_override",
                setting=e.setting,
                value=e.value,
            )
            continue
        if value is not None:
            return setting, value
    return None


def resolve_access_token_ttl(settings: "Settings") -> timedelta:
    """Access token lifetime. Unset or invalid means the minimal lifetime, never infinite."""
    found = _first_valid(
        ("OAUTH_ACCESS_TOKEN_EXPIRY_SECONDS", settings.oauth_access_token_expiry_seconds, 1),
    )
    seconds = found[1] if found else DEFAULT_ACCESS_TOKEN_EXPIRY_SECONDS
    return timedelta(seconds=seconds)


def resolve_refresh_token_ttl(settings: "Settings") -> timedelta:
    """Refresh token lifetime: seconds override, then legacy days override, then 30 days."""
    found = _first_valid(
        ("OAUTH_REFRESH_TOKEN_EXPIRY_SECONDS", settings.oauth_refresh_token_expiry_seconds, 1),
        ("OAUTH_REFRESH_TOKEN_EXPIRY_DAYS", settings.oauth_refresh_token_expiry_days, 1),
    )
    if found is None:
        return timedelta(days=DEFAULT_REFRESH_TOKEN_EXPIRY_DAYS)
    setting, value = found
    if setting == "OAUTH_REFRESH_TOKEN_EXPIRY_DAYS":
        return timedelta(days=value)
    return timedelta(seconds=value)


def resolve_archive_grace(settings: "Settings") -> timedelta:
    """
    Grace window for a just-rotated refresh token.

    Priority:
    - OAUTH_REFRESH_TOKEN_ARCHIVE_GRACE_MS (milliseconds)
    - OAUTH_REFRESH_TOKEN_ARCHIVE_GRACE_SECONDS (seconds)
    - 0 in test/integration mode, 2 minutes otherwise
    """
    found = _first_valid(
        ("OAUTH_REFRESH_TOKEN_ARCHIVE_GRACE_MS", settings.oauth_refresh_token_archive_grace_ms, 0),
        (
            "OAUTH_REFRESH_TOKEN_ARCHIVE_GRACE_SECONDS",
            settings.oauth_refresh_token_archive_grace_seconds,
            0,
        ),
    )
    if found is not None:
        setting, value = found
        if setting == "OAUTH_REFRESH_TOKEN_ARCHIVE_GRACE_MS":
            return timedelta(milliseconds=value)
        return timedelta(seconds=value)

    if settings.is_test_mode:
        return timedelta(0)
    return timedelta(milliseconds=DEFAULT_ARCHIVE_GRACE_MS)


@dataclass(frozen=True)
class TokenPolicy:
    """Token lifetimes resolved once at startup and passed to the token manager."""

    access_token_ttl: timedelta
    refresh_token_ttl: timedelta
    archive_grace: timedelta
    jwt_secret: str
    jwt_algorithm: str = "HS256"

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TokenPolicy":
        """Build the policy from settings, applying the fallback chains."""
        policy = cls(
            access_token_ttl=resolve_access_token_ttl(settings),
            refresh_token_ttl=resolve_refresh_token_ttl(settings),
            archive_grace=resolve_archive_grace(settings),
            jwt_secret=settings.jwt_secret,
            jwt_algorithm=settings.jwt_algorithm,
        )
        logger.info(
            "token_policy_resolved",
            access_token_ttl_seconds=policy.access_token_ttl.total_seconds(),
            refresh_token_ttl_seconds=policy.refresh_token_ttl.total_seconds(),
            archive_grace_ms=int(policy.archive_grace.total_seconds() * 1000),
        )
        return policy


# Global settings instance - validates at import time
settings = Settings()

# Global token policy - resolved once
_token_policy: TokenPolicy | None = None


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings


def get_token_policy() -> TokenPolicy:
    """Get the process-wide token policy (resolved on first use)."""
    global _token_policy
    if _token_policy is None:
        _token_policy = TokenPolicy.from_settings(settings)
    return _token_policy
