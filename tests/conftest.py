"""Shared fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from companyos.core.config import AuthConfig, reset_config
from companyos.core.events import reset_event_bus
from companyos.hub.auth.jwt import JWTService, reset_jwt_service

TEST_SECRET = "test-secret-key-with-enough-entropy-0123456789"


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch, tmp_path):
    """Isolate every test from global state and the developer's environment."""
    for var in ("JWT_SECRET_KEY", "COMPANYOS_LOG_LEVEL", "COMPANYOS_MAX_AUTO_APPROVE_LINES"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    reset_event_bus()
    reset_jwt_service()
    yield
    reset_config()
    reset_event_bus()
    reset_jwt_service()


@pytest.fixture
def auth_config():
    return AuthConfig(secret_key=TEST_SECRET)


@pytest.fixture
def jwt_service(auth_config):
    return JWTService(auth_config)


def make_websocket(ip: str = "127.0.0.1", forwarded: str | None = None):
    """AsyncMock standing in for a Starlette WebSocket."""
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    ws.headers = {"x-forwarded-for": forwarded} if forwarded else {}
    ws.client = MagicMock(host=ip)
    return ws


@pytest.fixture
def ws_factory():
    return make_websocket
