# auctions.py
"""
NEBULA: auction rounds.

Round lifecycle:

    accepting_submissions --(submission_ends_at)--> bidding --(ends_at)--> finalizing --> completed
             \\--(no submissions)--> no_submissions

"Active round" is a query (status accepting_submissions|bidding), never
process state; db.SCHEMA backs it with a partial unique index.

Every public coroutine here is one unit of work: it opens its own
transaction via db.tx(). The underscore helpers expect to run inside one.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
import logging
import secrets

import aiosqlite

import db as dbmod
from bids import (
    bid_idempotency_key,
    compute_min_next_bid,
    from_cents,
    is_part_eligible,
    normalize_auction_bid_amount,
    rarity_tier_id,
    select_winning_submission,
    to_cents,
)
from config import settings
from errors import (
    BidTooLow,
    Conflict,
    Forbidden,
    Ineligible,
    InsufficientBalance,
    NotFound,
    RoundClosed,
    ValidationError,
)
from utils import parse_iso_z, rfc3339, utcnow

log = logging.getLogger(__name__)

ACCEPTING = "accepting_submissions"
BIDDING = "bidding"
FINALIZING = "finalizing"
COMPLETED = "completed"
NO_SUBMISSIONS = "no_submissions"
ACTIVE_STATUSES = (ACCEPTING, BIDDING)


# =========================================================
# FLUX ledger
# =========================================================
async def get_balance_cents(conn: aiosqlite.Connection, wallet: str) -> int:
    row = await dbmod.fetch_one(conn, "SELECT balance_cents FROM flux_balances WHERE wallet=?", (wallet,))
    return int(row["balance_cents"]) if row else 0


async def _credit(conn: aiosqlite.Connection, wallet: str, cents: int, now: datetime) -> None:
    await dbmod.execute(
        conn,
        "INSERT INTO flux_balances(wallet, balance_cents, updated_at) VALUES(?, ?, ?) "
        "ON CONFLICT(wallet) DO UPDATE SET balance_cents = balance_cents + excluded.balance_cents, "
        "updated_at = excluded.updated_at",
        (wallet, int(cents), rfc3339(now)),
    )


async def _debit(conn: aiosqlite.Connection, wallet: str, cents: int, now: datetime) -> None:
    changed = await dbmod.execute(
        conn,
        "UPDATE flux_balances SET balance_cents = balance_cents - ?, updated_at = ? "
        "WHERE wallet = ? AND balance_cents >= ?",
        (int(cents), rfc3339(now), wallet, int(cents)),
    )
    if changed != 1:
        raise InsufficientBalance("Insufficient FLUX balance.")


async def credit_flux(
    conn: aiosqlite.Connection,
    wallet: str,
    amount: Any,
    now: Optional[datetime] = None,
) -> Decimal:
    """Admin credit; returns the new balance."""
    wallet = wallet.lower()
    amount = normalize_auction_bid_amount(amount, max_bid=10**12)
    now = now or utcnow()
    async with dbmod.tx(conn):
        await _credit(conn, wallet, to_cents(amount), now)
        balance = await get_balance_cents(conn, wallet)
    return from_cents(balance)


# =========================================================
# Parts
# =========================================================
async def create_part(
    conn: aiosqlite.Connection,
    owner_wallet: str,
    name: str,
    section_name: str,
    rarity: str,
    part_value: int = 0,
    total_power: int = 0,
    serial_number: Optional[int] = None,
    is_shiny: bool = False,
    part_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Insert an inventory part (parts are minted by the box flow; this seeds them)."""
    pid = part_id or f"part_{secrets.token_hex(8)}"
    tier = rarity_tier_id(rarity)
    await dbmod.execute(
        conn,
        "INSERT INTO parts(id, owner_wallet, name, section_name, rarity, rarity_tier_id, part_value, "
        "total_power, serial_number, is_shiny, is_locked, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,0,?)",
        (
            pid, owner_wallet.lower(), name, section_name, rarity, tier, int(part_value),
            int(total_power), serial_number, int(bool(is_shiny)), rfc3339(now or utcnow()),
        ),
    )
    return await get_part(conn, pid)


async def get_part(conn: aiosqlite.Connection, part_id: str) -> dict:
    row = await dbmod.fetch_one(conn, "SELECT * FROM parts WHERE id=?", (part_id,))
    if not row:
        raise NotFound("Part not found.")
    return dict(row)


# =========================================================
# Rounds - reads
# =========================================================
async def get_round(conn: aiosqlite.Connection, round_id: int) -> aiosqlite.Row:
    row = await dbmod.fetch_one(conn, "SELECT * FROM auction_rounds WHERE id=?", (round_id,))
    if not row:
        raise NotFound(f"Auction round {round_id} not found.")
    return row


async def get_active_round(conn: aiosqlite.Connection) -> Optional[aiosqlite.Row]:
    return await dbmod.fetch_one(
        conn,
        "SELECT * FROM auction_rounds WHERE status IN (?, ?) ORDER BY id DESC LIMIT 1",
        ACTIVE_STATUSES,
    )


async def get_active_auction(conn: aiosqlite.Connection) -> Optional[dict]:
    """Active round with its bound part and bids (insertion order)."""
    row = await get_active_round(conn)
    if not row:
        return None

    part = None
    if row["part_id"]:
        p = await dbmod.fetch_one(conn, "SELECT * FROM parts WHERE id=?", (row["part_id"],))
        if p:
            part = {
                "id": p["id"],
                "name": p["name"],
                "section_name": p["section_name"],
                "rarity": p["rarity"],
                "rarity_tier_id": p["rarity_tier_id"],
                "part_value": p["part_value"],
                "total_power": p["total_power"],
                "serial_number": p["serial_number"],
                "is_shiny": bool(p["is_shiny"]),
                "submitted_by": row["seller_wallet"],
            }

    bids = await dbmod.fetch_all(
        conn,
        "SELECT id, wallet, amount_cents, created_at FROM auction_bids WHERE round_id=? ORDER BY id ASC",
        (row["id"],),
    )
    current = from_cents(row["current_highest_bid_cents"])
    submissions = await dbmod.fetch_one(
        conn, "SELECT COUNT(1) AS n FROM auction_submissions WHERE round_id=?", (row["id"],)
    )
    return {
        "round_id": row["id"],
        "status": row["status"],
        "starts_at": row["starts_at"],
        "submission_ends_at": row["submission_ends_at"],
        "ends_at": row["ends_at"],
        "bidding_opens_at": row["bidding_opens_at"],
        "part": part,
        "bids": [
            {"id": b["id"], "wallet": b["wallet"], "amount": from_cents(b["amount_cents"]), "created_at": b["created_at"]}
            for b in bids
        ],
        "current_highest_bid": current,
        "bid_count": row["bid_count"],
        "submission_count": int(submissions["n"] or 0),
        "min_next_bid": compute_min_next_bid(current),
    }


async def get_auction_history(conn: aiosqlite.Connection, limit: int = 20, offset: int = 0) -> list[dict]:
    rows = await dbmod.fetch_all(
        conn,
        "SELECT * FROM auction_history ORDER BY round_id DESC LIMIT ? OFFSET ?",
        (int(limit), int(offset)),
    )
    out = []
    for r in rows:
        entry = dict(r)
        entry["final_price"] = from_cents(entry.pop("final_price_cents"))
        entry["is_shiny"] = bool(entry["is_shiny"]) if entry["is_shiny"] is not None else None
        out.append(entry)
    return out


# =========================================================
# Rounds - start
# =========================================================
async def _start_round(conn: aiosqlite.Connection, now: datetime) -> Optional[int]:
    if await get_active_round(conn):
        return None
    submission_ends = now + timedelta(seconds=int(settings.AUCTION_SUBMISSION_SECONDS))
    ends = now + timedelta(seconds=int(settings.AUCTION_ROUND_SECONDS))
    rid = await dbmod.insert(
        conn,
        "INSERT INTO auction_rounds(status, starts_at, submission_ends_at, ends_at, created_at, updated_at) "
        "VALUES(?, ?, ?, ?, ?, ?)",
        (ACCEPTING, rfc3339(now), rfc3339(submission_ends), rfc3339(ends), rfc3339(now), rfc3339(now)),
    )
    log.info("[auction] started round %s (submissions until %s, ends %s)", rid, rfc3339(submission_ends), rfc3339(ends))
    return rid


async def start_auction_round(conn: aiosqlite.Connection, now: Optional[datetime] = None) -> Optional[int]:
    """Open a new round unless one is already active; returns the new id or None."""
    now = now or utcnow()
    async with dbmod.tx(conn):
        return await _start_round(conn, now)


# =========================================================
# Submissions
# =========================================================
async def submit_auction_item(
    conn: aiosqlite.Connection,
    wallet: str,
    part_id: str,
    now: Optional[datetime] = None,
) -> dict:
    wallet = wallet.lower()
    now = now or utcnow()
    async with dbmod.tx(conn):
        rnd = await get_active_round(conn)
        if (
            not rnd
            or rnd["status"] != ACCEPTING
            or now >= parse_iso_z(rnd["submission_ends_at"])
        ):
            raise RoundClosed("Round is no longer accepting submissions.")

        part = await get_part(conn, part_id)
        if part["owner_wallet"] != wallet:
            raise Forbidden("Part does not belong to this wallet.")
        if not is_part_eligible(part):
            if part["is_locked"]:
                raise Ineligible("Part is locked.")
            raise Ineligible("Only Rare or higher parts can be submitted to the auction.")

        existing = await dbmod.fetch_one(
            conn,
            "SELECT id FROM auction_submissions WHERE round_id=? AND wallet=?",
            (rnd["id"], wallet),
        )
        if existing:
            raise Conflict("Wallet already submitted a part to this round.")

        sid = await dbmod.insert(
            conn,
            "INSERT INTO auction_submissions(round_id, wallet, part_id, rarity_tier_id, part_value, status, created_at) "
            "VALUES(?, ?, ?, ?, ?, 'submitted', ?)",
            (rnd["id"], wallet, part_id, part["rarity_tier_id"], part["part_value"], rfc3339(now)),
        )
        await dbmod.execute(conn, "UPDATE parts SET is_locked=1 WHERE id=?", (part_id,))

    log.info("[auction] submission %s: %s put %s into round %s", sid, wallet, part_id, rnd["id"])
    return {"submission_id": sid, "round_id": rnd["id"]}


# =========================================================
# Bids
# =========================================================
async def place_auction_bid(
    conn: aiosqlite.Connection,
    wallet: str,
    round_id: int,
    raw_amount: Any,
    now: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Place a bid. The winning bid is held in escrow: the previous leader is
    refunded and the new leader debited inside the same transaction.
    """
    wallet = wallet.lower()
    now = now or utcnow()
    amount = normalize_auction_bid_amount(raw_amount)
    key = idempotency_key or bid_idempotency_key(wallet, round_id, amount)
    cents = to_cents(amount)

    async with dbmod.tx(conn):
        prior = await dbmod.fetch_one(
            conn, "SELECT * FROM auction_bids WHERE idempotency_key=?", (key,)
        )
        if prior:
            if prior["wallet"] != wallet or prior["round_id"] != int(round_id):
                raise Conflict("Idempotency key was already used for a different bid.")
            rnd = await get_round(conn, prior["round_id"])
            return {
                "bid_id": prior["id"],
                "round_id": prior["round_id"],
                "amount": from_cents(prior["amount_cents"]),
                "min_next_bid": compute_min_next_bid(from_cents(rnd["current_highest_bid_cents"])),
                "balance": from_cents(await get_balance_cents(conn, wallet)),
                "duplicate": True,
            }

        rnd = await get_round(conn, round_id)
        if rnd["status"] != BIDDING or now >= parse_iso_z(rnd["ends_at"]):
            raise RoundClosed("Round is no longer accepting bids.")
        if rnd["seller_wallet"] == wallet:
            raise Forbidden("Sellers cannot bid on their own part.")

        seen_cents = int(rnd["current_highest_bid_cents"])
        min_next = compute_min_next_bid(from_cents(seen_cents))
        if amount < min_next:
            raise BidTooLow(f"Bid must be at least {min_next} FLUX.")

        if rnd["highest_bidder"]:
            await _credit(conn, rnd["highest_bidder"], seen_cents, now)
        await _debit(conn, wallet, cents, now)

        bid_id = await dbmod.insert(
            conn,
            "INSERT INTO auction_bids(round_id, wallet, amount_cents, idempotency_key, created_at) VALUES(?, ?, ?, ?, ?)",
            (rnd["id"], wallet, cents, key, rfc3339(now)),
        )
        changed = await dbmod.execute(
            conn,
            "UPDATE auction_rounds SET current_highest_bid_cents=?, highest_bidder=?, bid_count=bid_count+1, updated_at=? "
            "WHERE id=? AND status=? AND current_highest_bid_cents=?",
            (cents, wallet, rfc3339(now), rnd["id"], BIDDING, seen_cents),
        )
        if changed != 1:
            raise Conflict("Highest bid changed while placing the bid; retry.")
        balance = await get_balance_cents(conn, wallet)

    log.info("[auction] bid %s: %s bid %s on round %s", bid_id, wallet, amount, rnd["id"])
    return {
        "bid_id": bid_id,
        "round_id": rnd["id"],
        "amount": amount,
        "min_next_bid": compute_min_next_bid(amount),
        "balance": from_cents(balance),
        "duplicate": False,
    }


# =========================================================
# Transitions
# =========================================================
async def _write_history(
    conn: aiosqlite.Connection,
    rnd: aiosqlite.Row,
    status: str,
    outcome: str,
    now: datetime,
    part: Optional[dict] = None,
    winner: Optional[str] = None,
    final_price_cents: int = 0,
) -> None:
    await dbmod.execute(
        conn,
        "INSERT INTO auction_history(round_id, status, outcome, starts_at, ends_at, final_price_cents, "
        "winner_wallet, seller_wallet, part_id, part_name, section_name, rarity, part_value, total_power, "
        "serial_number, is_shiny, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
        (
            rnd["id"], status, outcome, rnd["starts_at"], rfc3339(now), int(final_price_cents),
            winner, rnd["seller_wallet"],
            part["id"] if part else None,
            part["name"] if part else None,
            part["section_name"] if part else None,
            part["rarity"] if part else None,
            part["part_value"] if part else None,
            part["total_power"] if part else None,
            part["serial_number"] if part else None,
            int(part["is_shiny"]) if part else None,
            rfc3339(now),
        ),
    )


def _require_status(rnd: aiosqlite.Row, expected: str) -> None:
    if rnd["status"] != expected:
        raise Conflict(f"Round {rnd['id']} is {rnd['status']}, expected {expected}.")


async def transition_to_bidding(
    conn: aiosqlite.Connection,
    round_id: int,
    now: Optional[datetime] = None,
) -> dict:
    """
    Close submissions. The top ranked submission becomes the round's part;
    every other submitted part goes back to its owner. With nothing
    submitted the round ends as no_submissions and the next one opens.
    """
    now = now or utcnow()
    async with dbmod.tx(conn):
        rnd = await get_round(conn, round_id)
        _require_status(rnd, ACCEPTING)
        if now < parse_iso_z(rnd["submission_ends_at"]):
            raise ValidationError(f"Round {round_id} is still accepting submissions.")

        subs = await dbmod.fetch_all(
            conn,
            "SELECT * FROM auction_submissions WHERE round_id=? AND status='submitted' ORDER BY id ASC",
            (round_id,),
        )
        winner = select_winning_submission(subs)

        for sub in subs:
            if winner is not None and sub["id"] == winner["id"]:
                continue
            await dbmod.execute(conn, "UPDATE auction_submissions SET status='returned' WHERE id=?", (sub["id"],))
            await dbmod.execute(conn, "UPDATE parts SET is_locked=0 WHERE id=?", (sub["part_id"],))

        if winner is None:
            await _write_history(conn, rnd, NO_SUBMISSIONS, NO_SUBMISSIONS, now)
            await dbmod.execute(
                conn,
                "UPDATE auction_rounds SET status=?, finalized_at=?, updated_at=? WHERE id=?",
                (NO_SUBMISSIONS, rfc3339(now), rfc3339(now), round_id),
            )
            next_id = await _start_round(conn, now)
            log.info("[auction] round %s closed with no submissions", round_id)
            return {"round_id": round_id, "status": NO_SUBMISSIONS, "part_id": None, "next_round_id": next_id}

        await dbmod.execute(conn, "UPDATE auction_submissions SET status='selected' WHERE id=?", (winner["id"],))
        await dbmod.execute(
            conn,
            "UPDATE auction_rounds SET status=?, part_id=?, submission_id=?, seller_wallet=?, "
            "bidding_opens_at=?, updated_at=? WHERE id=?",
            (BIDDING, winner["part_id"], winner["id"], winner["wallet"], rfc3339(now), rfc3339(now), round_id),
        )

    log.info("[auction] round %s -> bidding with part %s from %s", round_id, winner["part_id"], winner["wallet"])
    return {"round_id": round_id, "status": BIDDING, "part_id": winner["part_id"], "next_round_id": None}


async def _close_bidding(conn: aiosqlite.Connection, round_id: int, now: datetime) -> None:
    rnd = await get_round(conn, round_id)
    _require_status(rnd, BIDDING)
    if now < parse_iso_z(rnd["ends_at"]):
        raise ValidationError(f"Round {round_id} is still open for bids.")
    await dbmod.execute(
        conn,
        "UPDATE auction_rounds SET status=?, updated_at=? WHERE id=? AND status=?",
        (FINALIZING, rfc3339(now), round_id, BIDDING),
    )


async def _complete_round(conn: aiosqlite.Connection, round_id: int, now: datetime) -> dict:
    rnd = await get_round(conn, round_id)
    _require_status(rnd, FINALIZING)
    part = await get_part(conn, rnd["part_id"]) if rnd["part_id"] else None

    winner = rnd["highest_bidder"] if int(rnd["bid_count"]) > 0 else None
    final_cents = int(rnd["current_highest_bid_cents"]) if winner else 0
    outcome = "sold" if winner else "no_bids"

    await _write_history(conn, rnd, COMPLETED, outcome, now, part=part, winner=winner, final_price_cents=final_cents)

    if part is not None:
        if winner:
            # escrowed winning bid goes to the seller, the part to the winner
            await dbmod.execute(
                conn, "UPDATE parts SET owner_wallet=?, is_locked=0 WHERE id=?", (winner, part["id"])
            )
            await _credit(conn, rnd["seller_wallet"], final_cents, now)
        else:
            await dbmod.execute(conn, "UPDATE parts SET is_locked=0 WHERE id=?", (part["id"],))

    await dbmod.execute(
        conn,
        "UPDATE auction_rounds SET status=?, finalized_at=?, updated_at=? WHERE id=?",
        (COMPLETED, rfc3339(now), rfc3339(now), round_id),
    )
    next_id = await _start_round(conn, now)
    return {
        "round_id": round_id,
        "status": COMPLETED,
        "outcome": outcome,
        "winner": winner,
        "final_price": from_cents(final_cents),
        "next_round_id": next_id,
    }


async def close_bidding(conn: aiosqlite.Connection, round_id: int, now: Optional[datetime] = None) -> None:
    """bidding -> finalizing; bids are refused from here on."""
    now = now or utcnow()
    async with dbmod.tx(conn):
        await _close_bidding(conn, round_id, now)
    log.info("[auction] round %s -> finalizing", round_id)


async def complete_round(conn: aiosqlite.Connection, round_id: int, now: Optional[datetime] = None) -> dict:
    """
    finalizing -> completed. History row first, then settlement, then the
    status flip, then the next round, all in one transaction.
    """
    now = now or utcnow()
    async with dbmod.tx(conn):
        result = await _complete_round(conn, round_id, now)
    log.info(
        "[auction] round %s completed (%s) winner=%s price=%s",
        round_id, result["outcome"], result["winner"], result["final_price"],
    )
    return result


async def finalize_auction(conn: aiosqlite.Connection, round_id: int, now: Optional[datetime] = None) -> dict:
    """
    Drive a due bidding (or stranded finalizing) round to completed in one
    transaction: no committed state has the round closed without its
    history row and successor.
    """
    now = now or utcnow()
    async with dbmod.tx(conn):
        rnd = await get_round(conn, round_id)
        if rnd["status"] == BIDDING:
            await _close_bidding(conn, round_id, now)
        result = await _complete_round(conn, round_id, now)
    log.info(
        "[auction] round %s finalized (%s) winner=%s price=%s",
        round_id, result["outcome"], result["winner"], result["final_price"],
    )
    return result
