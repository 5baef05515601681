import asyncio
from datetime import timedelta

import pytest

import auctions
import db as dbmod
from errors import TickBusy
from tests.conftest import T0, wallet
from tick import TICK_LOCK_NAME, run_auction_tick

SELLER = wallet(1)


async def _submit(conn, now=T0):
    part = await auctions.create_part(
        conn, owner_wallet=SELLER, name="Warp Core", section_name="Engines", rarity="Mythic", part_value=40, now=T0
    )
    await auctions.submit_auction_item(conn, SELLER, part["id"], now=now)
    return part


@pytest.mark.asyncio
async def test_tick_starts_a_round_when_none_is_active(conn):
    report = await run_auction_tick(conn, now=T0)
    assert report["status"] == "ok"
    assert report["started"] is not None
    assert report["transitioned"] == report["finalized"] == report["failed"] == []
    assert (await auctions.get_active_round(conn))["id"] == report["started"]


@pytest.mark.asyncio
async def test_tick_before_any_deadline_changes_nothing(conn, round_id):
    report = await run_auction_tick(conn, now=T0 + timedelta(minutes=30))
    assert report == {"status": "ok", "transitioned": [], "finalized": [], "started": None, "failed": []}


@pytest.mark.asyncio
async def test_tick_walks_a_round_through_its_life(conn, round_id):
    await _submit(conn)

    report = await run_auction_tick(conn, now=T0 + timedelta(hours=1))
    assert report["transitioned"] == [round_id]
    assert (await auctions.get_round(conn, round_id))["status"] == auctions.BIDDING

    report = await run_auction_tick(conn, now=T0 + timedelta(hours=4))
    assert report["finalized"] == [round_id]
    assert report["started"] == round_id + 1
    assert (await auctions.get_round(conn, round_id))["status"] == auctions.COMPLETED


@pytest.mark.asyncio
async def test_repeated_ticks_apply_a_transition_once(conn, round_id):
    await _submit(conn)
    due = T0 + timedelta(hours=1)

    first = await run_auction_tick(conn, now=due)
    second = await run_auction_tick(conn, now=due + timedelta(seconds=5))
    assert first["transitioned"] == [round_id]
    assert second["transitioned"] == []

    history = await auctions.get_auction_history(conn)
    assert history == []


@pytest.mark.asyncio
async def test_overlapping_ticks_on_two_connections_transition_once(conn, conn2, round_id):
    await _submit(conn)
    due = T0 + timedelta(hours=1)

    results = await asyncio.gather(
        run_auction_tick(conn, now=due, owner="worker-a"),
        run_auction_tick(conn2, now=due, owner="worker-b"),
        return_exceptions=True,
    )
    reports = [r for r in results if isinstance(r, dict)]
    assert reports
    assert all(isinstance(r, TickBusy) for r in results if not isinstance(r, dict))
    assert [rid for r in reports for rid in r["transitioned"]] == [round_id]
    assert all(r["failed"] == [] for r in reports)

    assert (await auctions.get_round(conn, round_id))["status"] == auctions.BIDDING
    rounds = await dbmod.fetch_all(conn, "SELECT id FROM auction_rounds")
    assert len(rounds) == 1

@pytest.mark.asyncio
async def test_busy_lock_rejects_without_mutation(conn, round_id):
    assert await dbmod.try_acquire_lock(conn, TICK_LOCK_NAME, "other-worker", 120, now=T0)

    with pytest.raises(TickBusy, match="Auction tick is already running."):
        await run_auction_tick(conn, now=T0 + timedelta(hours=1))
    assert (await auctions.get_round(conn, round_id))["status"] == auctions.ACCEPTING

    # the foreign lease has expired by now
    report = await run_auction_tick(conn, now=T0 + timedelta(hours=1, minutes=5))
    assert report["status"] == "ok"
    assert report["started"] == round_id + 1  # no submissions: the next round opened


@pytest.mark.asyncio
async def test_lock_is_released_after_a_pass(conn):
    await run_auction_tick(conn, now=T0, owner="worker-a")
    row = await dbmod.fetch_one(conn, "SELECT * FROM job_locks WHERE name=?", (TICK_LOCK_NAME,))
    assert row is None
    assert await dbmod.try_acquire_lock(conn, TICK_LOCK_NAME, "worker-b", 120, now=T0)
    assert not await dbmod.try_acquire_lock(conn, TICK_LOCK_NAME, "worker-c", 120, now=T0 + timedelta(seconds=30))


@pytest.mark.asyncio
async def test_one_failing_round_does_not_block_the_others(conn, round_id, monkeypatch):
    # a round stranded in finalizing by an earlier crash
    stranded = await dbmod.insert(
        conn,
        "INSERT INTO auction_rounds(status, starts_at, submission_ends_at, ends_at, created_at, updated_at) "
        "VALUES('finalizing', ?, ?, ?, ?, ?)",
        ("2026-02-28T00:00:00Z", "2026-02-28T01:00:00Z", "2026-02-28T04:00:00Z",
         "2026-02-28T00:00:00Z", "2026-02-28T00:00:00Z"),
    )
    await _submit(conn)

    async def boom(conn, rid, now=None):
        raise RuntimeError("settlement exploded")

    monkeypatch.setattr(auctions, "finalize_auction", boom)

    report = await run_auction_tick(conn, now=T0 + timedelta(hours=1))
    assert report["status"] == "partial"
    assert report["transitioned"] == [round_id]
    assert report["failed"] == [{"round_id": stranded, "error": "settlement exploded"}]

    row = await dbmod.fetch_one(conn, "SELECT * FROM job_locks WHERE name=?", (TICK_LOCK_NAME,))
    assert row is None


@pytest.mark.asyncio
async def test_stranded_finalizing_round_is_completed(conn, round_id):
    await _submit(conn)
    await auctions.transition_to_bidding(conn, round_id, now=T0 + timedelta(hours=1))
    await auctions.close_bidding(conn, round_id, now=T0 + timedelta(hours=4))

    report = await run_auction_tick(conn, now=T0 + timedelta(hours=4, minutes=1))
    assert report["finalized"] == [round_id]
    history = await auctions.get_auction_history(conn)
    assert history[0]["outcome"] == "no_bids"
