# db.py

"""
NEBULA: db.py
Canonical schema + async (aiosqlite) helpers.
Target DB path: /data/nebula.db

Connections run in autocommit mode; multi-statement work goes through tx(),
which takes the SQLite write lock up front (BEGIN IMMEDIATE) so that
read-check-write sequences cannot interleave across connections.
"""

from __future__ import annotations
from typing import Any, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import json
import logging
import os
import aiosqlite

from utils import rfc3339, utcnow

log = logging.getLogger(__name__)

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

-- Mutual exclusion for externally triggered jobs (auction tick)
CREATE TABLE IF NOT EXISTS job_locks (
  name        TEXT PRIMARY KEY,
  owner       TEXT NOT NULL,
  acquired_at TEXT NOT NULL,
  expires_at  TEXT NOT NULL
);

-- Inventory parts (minted elsewhere; auctions only move and lock them)
CREATE TABLE IF NOT EXISTS parts (
  id             TEXT PRIMARY KEY,
  owner_wallet   TEXT NOT NULL,
  name           TEXT NOT NULL,
  section_name   TEXT NOT NULL,
  rarity         TEXT NOT NULL,
  rarity_tier_id INTEGER NOT NULL,
  part_value     INTEGER NOT NULL DEFAULT 0,
  total_power    INTEGER NOT NULL DEFAULT 0,
  serial_number  INTEGER,
  is_shiny       INTEGER NOT NULL DEFAULT 0,
  is_locked      INTEGER NOT NULL DEFAULT 0,
  created_at     TEXT NOT NULL
);

-- FLUX ledger in cents; bids are escrowed here
CREATE TABLE IF NOT EXISTS flux_balances (
  wallet        TEXT PRIMARY KEY,
  balance_cents INTEGER NOT NULL DEFAULT 0 CHECK (balance_cents >= 0),
  updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS auction_rounds (
  id                        INTEGER PRIMARY KEY AUTOINCREMENT,
  status                    TEXT NOT NULL CHECK (status IN
                              ('accepting_submissions','bidding','finalizing','completed','no_submissions')),
  starts_at                 TEXT NOT NULL,
  submission_ends_at        TEXT NOT NULL,
  ends_at                   TEXT NOT NULL,
  bidding_opens_at          TEXT,
  finalized_at              TEXT,
  part_id                   TEXT REFERENCES parts(id),
  submission_id             INTEGER,
  seller_wallet             TEXT,
  current_highest_bid_cents INTEGER NOT NULL DEFAULT 0,
  highest_bidder            TEXT,
  bid_count                 INTEGER NOT NULL DEFAULT 0,
  created_at                TEXT NOT NULL,
  updated_at                TEXT NOT NULL
);

-- At most one active round (accepting_submissions | bidding)
CREATE UNIQUE INDEX IF NOT EXISTS uq_auction_rounds_active
  ON auction_rounds((status IN ('accepting_submissions','bidding')))
  WHERE status IN ('accepting_submissions','bidding');

CREATE TABLE IF NOT EXISTS auction_submissions (
  id             INTEGER PRIMARY KEY AUTOINCREMENT,
  round_id       INTEGER NOT NULL REFERENCES auction_rounds(id),
  wallet         TEXT NOT NULL,
  part_id        TEXT NOT NULL REFERENCES parts(id),
  rarity_tier_id INTEGER NOT NULL,
  part_value     INTEGER NOT NULL DEFAULT 0,
  status         TEXT NOT NULL DEFAULT 'submitted',   -- submitted | selected | returned
  created_at     TEXT NOT NULL,
  UNIQUE(round_id, wallet)
);

CREATE TABLE IF NOT EXISTS auction_bids (
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  round_id        INTEGER NOT NULL REFERENCES auction_rounds(id),
  wallet          TEXT NOT NULL,
  amount_cents    INTEGER NOT NULL,
  idempotency_key TEXT UNIQUE,
  created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS auction_history (
  round_id          INTEGER PRIMARY KEY REFERENCES auction_rounds(id),
  status            TEXT NOT NULL,                    -- completed | no_submissions
  outcome           TEXT NOT NULL,                    -- sold | no_bids | no_submissions
  starts_at         TEXT NOT NULL,
  ends_at           TEXT NOT NULL,
  final_price_cents INTEGER NOT NULL DEFAULT 0,
  winner_wallet     TEXT,
  seller_wallet     TEXT,
  part_id           TEXT,
  part_name         TEXT,
  section_name      TEXT,
  rarity            TEXT,
  part_value        INTEGER,
  total_power       INTEGER,
  serial_number     INTEGER,
  is_shiny          INTEGER,
  created_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS eth_lock_submissions (
  id                    INTEGER PRIMARY KEY AUTOINCREMENT,
  wallet_address        TEXT NOT NULL UNIQUE,
  auth_user_id          TEXT,
  tx_hash               TEXT,
  chain_id              INTEGER,
  from_address          TEXT,
  to_address            TEXT,
  amount_wei            TEXT,
  status                TEXT NOT NULL DEFAULT 'pending' CHECK (status IN
                          ('pending','sent','verifying','error','confirmed')),
  verification_attempts INTEGER NOT NULL DEFAULT 0,
  block_number          INTEGER,
  receipt               TEXT,
  last_error            TEXT,
  tx_submitted_at       TEXT,
  verifying_started_at  TEXT,
  confirmed_at          TEXT,
  created_at            TEXT NOT NULL,
  updated_at            TEXT NOT NULL
);

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS app_logs (
  id             INTEGER PRIMARY KEY AUTOINCREMENT,
  event_name     TEXT NOT NULL,
  wallet_address TEXT,
  auth_user_id   TEXT,
  payload        TEXT,
  user_agent     TEXT,
  created_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rounds_status       ON auction_rounds(status);
CREATE INDEX IF NOT EXISTS idx_submissions_round   ON auction_submissions(round_id);
CREATE INDEX IF NOT EXISTS idx_bids_round          ON auction_bids(round_id);
CREATE INDEX IF NOT EXISTS idx_parts_owner         ON parts(owner_wallet);
CREATE INDEX IF NOT EXISTS idx_app_logs_event      ON app_logs(event_name);
""".strip()

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "/data/nebula.db")


async def connect(db_path: str = DB_PATH, apply_schema: bool = False) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers; sets PRAGMAs (optionally ensures schema).
    """
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = await aiosqlite.connect(db_path, isolation_level=None)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA busy_timeout=5000")

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row

    if apply_schema:
        await ensure_schema(conn)
    return conn


async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)


@asynccontextmanager
async def tx(conn: aiosqlite.Connection):
    """
    Transactional context manager holding the write lock for its whole body.
    Usage:
        async with tx(conn):
            await conn.execute(...)
            await conn.execute(...)
    """
    await conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except Exception:
        await conn.rollback()
        raise
    await conn.commit()


async def fetch_one(conn: aiosqlite.Connection, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
    async with conn.execute(sql, params) as cur:
        return await cur.fetchone()


async def fetch_all(conn: aiosqlite.Connection, sql: str, params: tuple = ()) -> list:
    async with conn.execute(sql, params) as cur:
        return list(await cur.fetchall())


async def execute(conn: aiosqlite.Connection, sql: str, params: tuple = ()) -> int:
    """Run a write statement; returns rows affected."""
    async with conn.execute(sql, params) as cur:
        return cur.rowcount


async def insert(conn: aiosqlite.Connection, sql: str, params: tuple = ()) -> int:
    """Run an INSERT; returns the new rowid."""
    async with conn.execute(sql, params) as cur:
        return cur.lastrowid


# =========================================================
# Job locks
# =========================================================
async def try_acquire_lock(
    conn: aiosqlite.Connection,
    name: str,
    owner: str,
    ttl_seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Take the named lock if it is free or its holder's lease expired.
    A single conditional upsert, so two callers can never both win.
    """
    now = now or utcnow()
    acquired_at = rfc3339(now)
    expires_at = rfc3339(now + timedelta(seconds=ttl_seconds))
    changed = await execute(
        conn,
        "INSERT INTO job_locks(name, owner, acquired_at, expires_at) VALUES(?, ?, ?, ?) "
        "ON CONFLICT(name) DO UPDATE SET owner=excluded.owner, "
        "acquired_at=excluded.acquired_at, expires_at=excluded.expires_at "
        "WHERE job_locks.expires_at <= excluded.acquired_at",
        (name, owner, acquired_at, expires_at),
    )
    return changed == 1


async def release_lock(conn: aiosqlite.Connection, name: str, owner: str) -> None:
    await execute(conn, "DELETE FROM job_locks WHERE name=? AND owner=?", (name, owner))


# =========================================================
# Audit log
# =========================================================
async def log_event(
    conn: aiosqlite.Connection,
    event_name: str,
    payload: dict[str, Any],
    wallet_address: Optional[str] = None,
    auth_user_id: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> None:
    """
    Append an app_logs row. Failures are logged, never raised: the state
    transition being audited has already been persisted.
    """
    try:
        await execute(
            conn,
            "INSERT INTO app_logs(event_name, wallet_address, auth_user_id, payload, user_agent, created_at) "
            "VALUES(?, ?, ?, ?, ?, ?)",
            (event_name, wallet_address, auth_user_id, json.dumps(payload), user_agent, rfc3339(utcnow())),
        )
    except Exception as e:
        log.error("[app_logs] failed to write %s entry: %s", event_name, e)
