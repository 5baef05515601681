# tick.py
"""
NEBULA: auction tick.

One externally triggered pass (cron -> POST /auction/tick) that advances
every due round exactly once. Overlapping passes are turned away by a
job_locks row rather than in-process state, so redundant deliveries from
the scheduler and multiple app instances are both safe.
"""

from __future__ import annotations
from datetime import datetime
from typing import Optional
import logging
import secrets

import aiosqlite

import auctions
import db as dbmod
from config import settings
from errors import TickBusy
from utils import rfc3339, utcnow

log = logging.getLogger(__name__)

TICK_LOCK_NAME = "auction_tick"


async def _due_round_ids(conn: aiosqlite.Connection, status: str, deadline_col: Optional[str], now: datetime) -> list[int]:
    if deadline_col is None:
        rows = await dbmod.fetch_all(
            conn, "SELECT id FROM auction_rounds WHERE status=? ORDER BY id ASC", (status,)
        )
    else:
        rows = await dbmod.fetch_all(
            conn,
            f"SELECT id FROM auction_rounds WHERE status=? AND {deadline_col} <= ? ORDER BY {deadline_col} ASC, id ASC",
            (status, rfc3339(now)),
        )
    return [int(r["id"]) for r in rows]


async def run_auction_tick(
    conn: aiosqlite.Connection,
    now: Optional[datetime] = None,
    owner: Optional[str] = None,
) -> dict:
    """
    Scan and advance due rounds.

    Returns {status, transitioned, finalized, started, failed}. Raises
    TickBusy (nothing mutated) when another pass holds the lock. A round
    whose transition fails is reported in `failed` and the pass moves on.
    """
    now = now or utcnow()
    owner = owner or secrets.token_hex(8)

    if not await dbmod.try_acquire_lock(
        conn, TICK_LOCK_NAME, owner, settings.AUCTION_TICK_LOCK_TTL_SECONDS, now=now
    ):
        log.info("[auction_tick] busy; another pass holds the lock")
        raise TickBusy()

    transitioned: list[int] = []
    finalized: list[int] = []
    failed: list[dict] = []
    started: Optional[int] = None

    try:
        for rid in await _due_round_ids(conn, auctions.ACCEPTING, "submission_ends_at", now):
            try:
                result = await auctions.transition_to_bidding(conn, rid, now)
            except Exception as e:
                log.exception("[auction_tick] transition failed for round %s", rid)
                failed.append({"round_id": rid, "error": str(e)})
                continue
            transitioned.append(rid)
            if result.get("next_round_id"):
                started = result["next_round_id"]

        # bidding rounds past ends_at, then any round left in finalizing by an earlier crash
        due = await _due_round_ids(conn, auctions.BIDDING, "ends_at", now)
        due += [r for r in await _due_round_ids(conn, auctions.FINALIZING, None, now) if r not in due]
        for rid in due:
            try:
                result = await auctions.finalize_auction(conn, rid, now)
            except Exception as e:
                log.exception("[auction_tick] finalize failed for round %s", rid)
                failed.append({"round_id": rid, "error": str(e)})
                continue
            finalized.append(rid)
            if result.get("next_round_id"):
                started = result["next_round_id"]

        try:
            fresh = await auctions.start_auction_round(conn, now)
        except Exception as e:
            log.exception("[auction_tick] could not start a new round")
            failed.append({"round_id": None, "error": str(e)})
        else:
            if fresh is not None:
                started = fresh
    finally:
        await dbmod.release_lock(conn, TICK_LOCK_NAME, owner)

    report = {
        "status": "partial" if failed else "ok",
        "transitioned": transitioned,
        "finalized": finalized,
        "started": started,
        "failed": failed,
    }
    log.info(
        "[auction_tick] done transitioned=%s finalized=%s started=%s failed=%d",
        transitioned, finalized, started, len(failed),
    )
    return report
