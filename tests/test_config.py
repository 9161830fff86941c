"""
Tests for environment-driven settings.
"""

import pytest

from crayon_cost_mcp.config import DEFAULT_BASE_URL, Settings
from crayon_cost_mcp.errors import ConfigurationError

ENV_VARS = (
    "CRAYON_CLIENT_ID",
    "CRAYON_CLIENT_SECRET",
    "CRAYON_USERNAME",
    "CRAYON_PASSWORD",
    "CRAYON_API_BASE_URL",
    "API_TIMEOUT_MS",
    "CIRCUIT_BREAKER_THRESHOLD",
    "CIRCUIT_BREAKER_TIMEOUT_MS",
    "CIRCUIT_BREAKER_VOLUME",
    "AUTH_ENABLED",
    "AUTH_TOKEN",
    "AUTH_ALLOWED_ORGANIZATIONS",
    "AUTH_ROLES",
    "LOG_LEVEL",
    "LOCALE",
    "MCP_HOST",
    "MCP_PORT",
)


@pytest.fixture
def env(monkeypatch):
    """Clean environment with upstream credentials set"""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CRAYON_CLIENT_ID", "cid")
    monkeypatch.setenv("CRAYON_CLIENT_SECRET", "cs")
    monkeypatch.setenv("CRAYON_USERNAME", "user")
    monkeypatch.setenv("CRAYON_PASSWORD", "pw")
    return monkeypatch


def test_defaults(env):
    settings = Settings.from_env()

    assert settings.base_url == DEFAULT_BASE_URL
    assert settings.api_timeout_ms == 30000
    assert settings.breaker_error_threshold == 50
    assert settings.breaker_volume_threshold == 10
    assert settings.auth_enabled is True
    assert settings.auth_token is None
    assert settings.allowed_organizations == []
    assert settings.roles == ["admin"]
    assert settings.port == 3003


def test_overrides(env):
    env.setenv("AUTH_ENABLED", "false")
    env.setenv("AUTH_ALLOWED_ORGANIZATIONS", "10, 20,")
    env.setenv("AUTH_ROLES", "viewer,editor")
    env.setenv("CIRCUIT_BREAKER_VOLUME", "4")
    env.setenv("LOCALE", "no")

    settings = Settings.from_env()

    assert settings.auth_enabled is False
    assert settings.allowed_organizations == [10, 20]
    assert settings.roles == ["viewer", "editor"]
    assert settings.breaker_volume_threshold == 4
    assert settings.locale == "no"


def test_missing_credentials(env):
    env.setenv("CRAYON_PASSWORD", "")

    with pytest.raises(ConfigurationError, match="CRAYON_PASSWORD"):
        Settings.from_env()

    assert not Settings.from_env(allow_missing_credentials=True).has_upstream_credentials


def test_malformed_integer_names_variable(env):
    env.setenv("API_TIMEOUT_MS", "fast")

    with pytest.raises(ConfigurationError, match="API_TIMEOUT_MS"):
        Settings.from_env()


def test_malformed_organization(env):
    env.setenv("AUTH_ALLOWED_ORGANIZATIONS", "10,acme")

    with pytest.raises(ConfigurationError, match="AUTH_ALLOWED_ORGANIZATIONS"):
        Settings.from_env()


def test_hosted_bind_address(env):
    env.setenv("MCP_HOST", "127.0.0.1")
    env.setenv("MCP_PORT", "8080")

    settings = Settings.from_env()

    assert settings.host == "127.0.0.1"
    assert settings.port == 8080
