"""
Shared fixtures for the Crayon cost MCP tests.
"""

from unittest.mock import AsyncMock

import pytest

from crayon_cost_mcp.access_control import AccessControl
from crayon_cost_mcp.config import Settings
from crayon_cost_mcp.crayon_client import CrayonClient


class FakeClock:
    """Manually advanced clock for time-dependent tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings with auth enabled, a viewer token scoped to organization 10"""
    return Settings(
        client_id="cid",
        client_secret="csecret",
        username="user@example.com",
        password="pw",
        base_url="https://api.test/api/v1",
        auth_enabled=True,
        auth_token="s3cret-token",
        allowed_organizations=[10],
        roles=["viewer"],
    )


@pytest.fixture
def access_control(settings):
    return AccessControl(settings)


@pytest.fixture
def mock_client():
    """AsyncMock standing in for CrayonClient"""
    return AsyncMock(spec=CrayonClient)
