from datetime import datetime, timezone

import pytest
import pytest_asyncio

import auctions
import db as dbmod
from config import settings

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

TICK_TOKEN = "tick-secret"
ADMIN_TOKEN = "admin-secret"
LOCK_RECIPIENT = "0x8c80dd6327ed5889be09e77f9ca49d5bad2b0bf7"
LOCK_AMOUNT_WEI = 50_000_000_000_000_000


def wallet(n: int) -> str:
    return "0x" + f"{n:040x}"


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


@pytest.fixture(autouse=True)
def fixed_settings(monkeypatch, tmp_path):
    """Pin every knob the tests depend on, independent of the host env."""
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "nebula.db"))
    monkeypatch.setattr(settings, "DEBUG", False)
    monkeypatch.setattr(settings, "ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "AUCTION_TICK_TOKENS", f"{TICK_TOKEN}, fallback-token")
    monkeypatch.setattr(settings, "AUCTION_ROUND_SECONDS", 14_400)
    monkeypatch.setattr(settings, "AUCTION_SUBMISSION_SECONDS", 3_600)
    monkeypatch.setattr(settings, "AUCTION_MIN_INCREMENT_BPS", 500)
    monkeypatch.setattr(settings, "AUCTION_MIN_RARITY_TIER", 3)
    monkeypatch.setattr(settings, "AUCTION_MAX_BID_FLUX", 1_000_000)
    monkeypatch.setattr(settings, "AUCTION_TICK_LOCK_TTL_SECONDS", 120)
    monkeypatch.setattr(settings, "ETH_RPC_URL", "https://rpc.test")
    monkeypatch.setattr(settings, "ETH_LOCK_RECIPIENT", LOCK_RECIPIENT)
    monkeypatch.setattr(settings, "ETH_LOCK_AMOUNT_WEI", LOCK_AMOUNT_WEI)
    monkeypatch.setattr(settings, "ETH_LOCK_MIN_CONFIRMATIONS", 1)
    monkeypatch.setattr(settings, "ETH_LOCK_VERIFY_POLL_ATTEMPTS", 2)
    monkeypatch.setattr(settings, "ETH_LOCK_VERIFY_POLL_INTERVAL_MS", 10)
    monkeypatch.setattr(settings, "ETH_LOCK_MAX_VERIFICATION_ATTEMPTS", 0)
    return settings


@pytest_asyncio.fixture
async def conn(fixed_settings):
    c = await dbmod.connect(fixed_settings.DB_PATH, apply_schema=True)
    try:
        yield c
    finally:
        await c.close()


@pytest_asyncio.fixture
async def round_id(conn):
    """A fresh round accepting submissions from T0."""
    return await auctions.start_auction_round(conn, T0)


@pytest_asyncio.fixture
async def conn2(conn, fixed_settings):
    """A second connection to the same database, as a second worker would hold."""
    c = await dbmod.connect(fixed_settings.DB_PATH)
    try:
        yield c
    finally:
        await c.close()
