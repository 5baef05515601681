import httpx
import pytest

from scheduler import tick_loop, trigger_tick
from tests.conftest import TICK_TOKEN

TICK_URL = "http://nebula.test/api/auction/tick"


@pytest.fixture
def tick_url(fixed_settings, monkeypatch):
    monkeypatch.setattr(fixed_settings, "TICK_URL", TICK_URL)
    return TICK_URL


@pytest.mark.asyncio
async def test_trigger_uses_first_configured_token(httpx_mock, tick_url):
    httpx_mock.add_response(
        url=tick_url,
        method="POST",
        match_headers={"Authorization": f"Bearer {TICK_TOKEN}"},
        json={"status": "ok", "transitioned": [], "finalized": [], "started": None, "failed": []},
    )
    async with httpx.AsyncClient() as client:
        result = await trigger_tick(client)
    assert result["status_code"] == 200
    assert result["body"]["status"] == "ok"


@pytest.mark.asyncio
async def test_loop_survives_busy_and_errors(httpx_mock, tick_url):
    httpx_mock.add_response(url=tick_url, status_code=429, json={"error": "Auction tick is already running."})
    httpx_mock.add_response(url=tick_url, status_code=500, text="boom")
    await tick_loop(interval=0, iterations=2)
    assert len(httpx_mock.get_requests()) == 2
