from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from dev_backend.main import create_app
from ghl_mcp.actions import GhlActions
from ghl_mcp.client import McpClient
from ghl_mcp.config import LocationConfig, Thresholds

STUB_URL = "http://testserver/mcp/"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def iso_ago(**delta: float) -> str:
    return (NOW - timedelta(**delta)).isoformat().replace("+00:00", "Z")


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def location() -> LocationConfig:
    return LocationConfig(
        name="Test Location",
        alias="test",
        token="test-token",
        location_id="test-loc",
        thresholds=Thresholds(),
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def make_stub_actions(
    location: LocationConfig,
    data: Optional[Dict[str, Any]] = None,
    mode: str = "json",
    **kwargs: Any,
) -> Tuple[GhlActions, Any]:
    """GhlActions wired to the dev stub through an in-process ASGI transport."""
    app = create_app(data=data, mode=mode)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    client = McpClient(token=location.token, location_id=location.location_id, url=STUB_URL, http_client=http)
    kwargs.setdefault("retry_sleep", no_sleep)
    return GhlActions(location, client=client, **kwargs), app.state.stub


def methods_sent(stub: Any) -> List[str]:
    return [r["body"].get("method") for r in stub.requests]
