# ─────────────────────────────────────────────────────────────────────────────
# Test Fixtures — shared across all tests
# ─────────────────────────────────────────────────────────────────────────────

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import pytest
import respx
import time_machine
from fastapi.testclient import TestClient

from auditor_gateway.config import Settings
from auditor_gateway.main import build_services, create_app
from auditor_gateway.stages import GatewayServices

TEST_API_KEY = "test-gemini-key-2026-do-not-leak"
UPSTREAM_BASE = "https://upstream.test/v1beta"
GENERATE_PATH = "/models/gemini-2.0-flash:generateContent"
ALLOWED_ORIGIN = "https://graev.netlify.app"
DEV_ORIGIN = "http://localhost:5173"

CANDIDATE_BODY = {"candidates": [{"content": {"parts": [{"text": "Score: 7/10"}]}}]}
GENERATE_BODY = {"contents": [{"parts": [{"text": "Evaluate this grant"}]}]}


# Wall-clock start for rate-limit windows; limits reads time.time().
FROZEN_AT = 1_767_225_600.0  # 2026-01-01T00:00:00Z


class FrozenClock:
    """Frozen wall clock for rate-limit windows, advanced by hand."""

    def __init__(self, traveller: time_machine.Coordinates) -> None:
        self._traveller = traveller

    def advance(self, seconds: float) -> None:
        self._traveller.shift(seconds)


@contextmanager
def frozen_clock(start: float = FROZEN_AT) -> Iterator[FrozenClock]:
    with time_machine.travel(start, tick=False) as traveller:
        yield FrozenClock(traveller)


def make_settings(**overrides: Any) -> Settings:
    """Settings for tests — fake key, fake upstream, readable logs."""
    values: dict[str, Any] = {
        "gemini_api_key": TEST_API_KEY,
        "allowed_origins": f"{ALLOWED_ORIGIN},{DEV_ORIGIN}",
        "upstream_base_url": UPSTREAM_BASE,
        "upstream_model": "gemini-2.0-flash",
        "environment": "development",
        "log_json": False,
        "log_level": "DEBUG",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> Iterator[FrozenClock]:
    with frozen_clock() as frozen:
        yield frozen


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def services(test_settings: Settings, clock: FrozenClock) -> GatewayServices:
    """Service bundle for stage-level tests (no app, no server)."""
    return build_services(test_settings)


@pytest.fixture
def upstream_mock() -> Iterator[respx.MockRouter]:
    """respx router for the upstream API. Unmocked upstream calls fail the test."""
    with respx.mock(base_url=UPSTREAM_BASE, assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def make_client(clock: FrozenClock) -> Iterator[Callable[..., TestClient]]:
    """Factory: TestClient for an app built from make_settings(**overrides).

    The client is entered so the lifespan runs and every request shares one
    event loop; all clients are closed at teardown.
    """
    opened: list[TestClient] = []

    def _make(*, http_client: Any = None, raise_server_exceptions: bool = True, **overrides: Any) -> TestClient:
        app = create_app(make_settings(**overrides), http_client=http_client)
        client = TestClient(app, raise_server_exceptions=raise_server_exceptions)
        client.__enter__()
        opened.append(client)
        return client

    yield _make

    for client in opened:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client: Callable[..., TestClient]) -> TestClient:
    """Default gateway client: development mode, two whitelisted origins."""
    return make_client()
