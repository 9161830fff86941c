"""
Runtime configuration loaded from environment variables (and .env if present).
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_BASE_URL = "https://api.crayon.com/api/v1"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class Settings:
    """All knobs the server reads at startup."""

    client_id: str | None = None
    client_secret: str | None = None
    username: str | None = None
    password: str | None = None
    base_url: str = DEFAULT_BASE_URL

    api_timeout_ms: int = 30000
    breaker_error_threshold: int = 50
    breaker_reset_timeout_ms: int = 30000
    breaker_volume_threshold: int = 10

    auth_enabled: bool = True
    auth_token: str | None = None
    allowed_organizations: list[int] = field(default_factory=list)
    roles: list[str] = field(default_factory=lambda: ["admin"])

    log_level: str = "INFO"
    locale: str = "en"
    host: str = "0.0.0.0"
    port: int = 3003

    @classmethod
    def from_env(cls, allow_missing_credentials: bool = False) -> "Settings":
        """
        Build settings from the process environment.

        Args:
            allow_missing_credentials: If True, skip the upstream credential check
                                       (inspection/testing only - API calls will fail)

        Raises:
            ConfigurationError: On missing credentials or malformed values
        """
        load_dotenv()

        organizations: list[int] = []
        for raw in _env_list("AUTH_ALLOWED_ORGANIZATIONS"):
            try:
                organizations.append(int(raw))
            except ValueError as e:
                raise ConfigurationError(
                    f"AUTH_ALLOWED_ORGANIZATIONS must contain integers, got {raw!r}"
                ) from e

        settings = cls(
            client_id=os.getenv("CRAYON_CLIENT_ID"),
            client_secret=os.getenv("CRAYON_CLIENT_SECRET"),
            username=os.getenv("CRAYON_USERNAME"),
            password=os.getenv("CRAYON_PASSWORD"),
            base_url=os.getenv("CRAYON_API_BASE_URL") or DEFAULT_BASE_URL,
            api_timeout_ms=_env_int("API_TIMEOUT_MS", 30000),
            breaker_error_threshold=_env_int("CIRCUIT_BREAKER_THRESHOLD", 50),
            breaker_reset_timeout_ms=_env_int("CIRCUIT_BREAKER_TIMEOUT_MS", 30000),
            breaker_volume_threshold=_env_int("CIRCUIT_BREAKER_VOLUME", 10),
            auth_enabled=_env_bool("AUTH_ENABLED", True),
            auth_token=os.getenv("AUTH_TOKEN") or None,
            allowed_organizations=organizations,
            roles=_env_list("AUTH_ROLES") or ["admin"],
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            locale=os.getenv("LOCALE", "en"),
            host=os.getenv("MCP_HOST", "0.0.0.0"),
            port=_env_int("MCP_PORT", 3003),
        )

        if not allow_missing_credentials and not settings.has_upstream_credentials:
            raise ConfigurationError(
                "Missing Crayon API credentials. Set CRAYON_CLIENT_ID, CRAYON_CLIENT_SECRET, "
                "CRAYON_USERNAME and CRAYON_PASSWORD environment variables."
            )

        return settings

    @property
    def has_upstream_credentials(self) -> bool:
        return all([self.client_id, self.client_secret, self.username, self.password])
