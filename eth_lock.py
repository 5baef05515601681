# eth_lock.py
"""
NEBULA: ETH lock submissions and their on-chain verification.

Submission status:

    pending/sent -> verifying -> confirmed
                        |  ^
                        v  |   (client may retry with a corrected claim)
                       error

`confirmed` is terminal. Every write to a submission is guarded by
`status != 'confirmed'`, so a concurrent verifier that loses the race
simply observes the confirmed row.
"""

from __future__ import annotations
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import aiosqlite

import db as dbmod
from config import Settings, settings as default_settings
from errors import Conflict, NotFound, ValidationError
from eth_rpc import EthRpcClient, EthRpcError
from utils import (
    is_record,
    normalize_address,
    normalize_tx_hash,
    parse_amount_wei,
    parse_hex_int,
    rfc3339,
    utcnow,
)

log = logging.getLogger(__name__)

CONFIRMED = "confirmed"
VERIFYING = "verifying"
ERROR = "error"
SENT = "sent"

PENDING_MESSAGE = "Transaction pending confirmation."
AUDIT_USER_AGENT = "verify-eth-lock"


class LockMismatch(ValueError):
    """The fetched transaction does not satisfy the lock requirements."""


@dataclass
class VerificationResult:
    status: str
    message: str
    confirmations: Optional[int] = None
    http_status: int = 200

    def as_response(self) -> dict:
        if self.status == ERROR:
            return {"status": ERROR, "error": self.message}
        body: dict[str, Any] = {"status": self.status, "message": self.message}
        if self.confirmations is not None:
            body["confirmations"] = self.confirmations
        return body


# =========================================================
# Input shaping
# =========================================================
def extract_verification_input(raw: Any) -> tuple[str, str]:
    """
    Accept {walletAddress, txHash} or the webhook shape
    {record: {wallet_address, tx_hash}}; return normalized (wallet, hash).
    """
    if not is_record(raw):
        raise ValidationError("Request body must be a JSON object.")

    wallet = normalize_address(raw.get("walletAddress"))
    tx_hash = normalize_tx_hash(raw.get("txHash"))
    if wallet and tx_hash:
        return wallet, tx_hash

    record = raw.get("record")
    if is_record(record):
        wallet = normalize_address(record.get("wallet_address"))
        tx_hash = normalize_tx_hash(record.get("tx_hash"))
        if wallet and tx_hash:
            return wallet, tx_hash

    raise ValidationError("walletAddress and txHash are required.")


# =========================================================
# Store
# =========================================================
def _row_to_dict(row: aiosqlite.Row) -> dict:
    out = dict(row)
    if out.get("receipt"):
        out["receipt"] = json.loads(out["receipt"])
    return out


async def get_eth_lock_submission(conn: aiosqlite.Connection, wallet_address: str) -> Optional[dict]:
    wallet = normalize_address(wallet_address)
    if not wallet:
        raise ValidationError("Invalid wallet address.")
    row = await dbmod.fetch_one(conn, "SELECT * FROM eth_lock_submissions WHERE wallet_address=?", (wallet,))
    return _row_to_dict(row) if row else None


async def record_eth_lock_sent(
    conn: aiosqlite.Connection,
    wallet_address: str,
    tx_hash: str,
    to_address: str,
    amount_wei: Any,
    chain_id: Optional[int] = None,
    from_address: Optional[str] = None,
    auth_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Record that the wallet broadcast its lock transaction. Creates the
    submission on first use. A failed claim may be replaced by a new hash;
    a pending or confirmed one may not.
    """
    wallet = normalize_address(wallet_address)
    normalized_hash = normalize_tx_hash(tx_hash)
    recipient = normalize_address(to_address)
    sender = normalize_address(from_address) if from_address is not None else wallet
    amount = parse_amount_wei(str(amount_wei) if amount_wei is not None else None)
    if not wallet or not normalized_hash:
        raise ValidationError("Invalid wallet address or transaction hash.")
    if not recipient or not sender:
        raise ValidationError("Invalid sender or recipient address.")
    if sender != wallet:
        raise ValidationError("The signing wallet does not match the submission wallet.")
    if amount is None:
        raise ValidationError("amountWei must be a positive integer string.")

    now_iso = rfc3339(now or utcnow())
    async with dbmod.tx(conn):
        existing = await dbmod.fetch_one(
            conn, "SELECT * FROM eth_lock_submissions WHERE wallet_address=?", (wallet,)
        )
        if existing is None:
            await dbmod.insert(
                conn,
                "INSERT INTO eth_lock_submissions(wallet_address, auth_user_id, tx_hash, chain_id, from_address, "
                "to_address, amount_wei, status, tx_submitted_at, created_at, updated_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?)",
                (wallet, auth_user_id, normalized_hash, chain_id, sender, recipient, str(amount),
                 SENT, now_iso, now_iso, now_iso),
            )
        else:
            if existing["status"] == CONFIRMED:
                raise Conflict("ETH lock already confirmed for this wallet.")
            if existing["tx_hash"] and existing["tx_hash"] != normalized_hash and existing["status"] != ERROR:
                raise Conflict("A different lock transaction is already pending for this wallet.")
            await dbmod.execute(
                conn,
                "UPDATE eth_lock_submissions SET tx_hash=?, chain_id=?, from_address=?, to_address=?, amount_wei=?, "
                "auth_user_id=COALESCE(?, auth_user_id), status=?, last_error=NULL, tx_submitted_at=?, updated_at=? "
                "WHERE id=? AND status != ?",
                (normalized_hash, chain_id, sender, recipient, str(amount), auth_user_id, SENT,
                 now_iso, now_iso, existing["id"], CONFIRMED),
            )
        row = await dbmod.fetch_one(conn, "SELECT * FROM eth_lock_submissions WHERE wallet_address=?", (wallet,))
        await dbmod.log_event(
            conn,
            "eth_lock_sent",
            {"submission_id": row["id"], "tx_hash": normalized_hash, "amount_wei": str(amount), "to": recipient},
            wallet_address=wallet,
            auth_user_id=row["auth_user_id"],
            user_agent=AUDIT_USER_AGENT,
        )
    return _row_to_dict(row)


# =========================================================
# Verifier
# =========================================================
class LockVerifier:
    """
    Verify one wallet's lock transaction against the chain.

    The poll loop is the only wait: a bounded number of receipt lookups
    separated by a fixed delay. "No receipt yet" is a pending result, not an
    exception. `sleep` is injectable so callers (and tests) control the delay.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        rpc: EthRpcClient,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.conn = conn
        self.rpc = rpc
        self.settings = settings or default_settings
        self.sleep = sleep

    # ---------- persistence ----------
    async def _load(self, wallet: str) -> aiosqlite.Row:
        row = await dbmod.fetch_one(
            self.conn, "SELECT * FROM eth_lock_submissions WHERE wallet_address=?", (wallet,)
        )
        if not row:
            raise NotFound("ETH lock submission not found for wallet.")
        return row

    async def _update(self, submission_id: int, fields: dict[str, Any]) -> bool:
        """Guarded update: never touches a confirmed row."""
        cols = ", ".join(f"{k}=?" for k in fields)
        changed = await dbmod.execute(
            self.conn,
            f"UPDATE eth_lock_submissions SET {cols} WHERE id=? AND status != ?",
            (*fields.values(), submission_id, CONFIRMED),
        )
        return changed == 1

    async def _mark_verifying(self, sub: aiosqlite.Row, tx_hash: str, now_iso: str) -> bool:
        changed = await dbmod.execute(
            self.conn,
            "UPDATE eth_lock_submissions SET status=?, last_error=NULL, verifying_started_at=?, "
            "verification_attempts=verification_attempts+1, tx_hash=COALESCE(tx_hash, ?), updated_at=? "
            "WHERE id=? AND status != ? AND (tx_hash IS NULL OR tx_hash=?)",
            (VERIFYING, now_iso, tx_hash, now_iso, sub["id"], CONFIRMED, tx_hash),
        )
        return changed == 1

    def _checks(self, confirmations: Optional[int] = None) -> dict:
        checks: dict[str, Any] = {"min_confirmations": self.settings.ETH_LOCK_MIN_CONFIRMATIONS}
        if confirmations is not None:
            checks["confirmations"] = confirmations
        return checks

    async def _fail(self, sub: aiosqlite.Row, tx_hash: str, message: str, tx_result: Any, receipt: Any) -> VerificationResult:
        failed_at = rfc3339(utcnow())
        await self._update(sub["id"], {
            "status": ERROR,
            "last_error": message,
            "receipt": json.dumps({
                "transaction": tx_result if is_record(tx_result) else None,
                "receipt": receipt if is_record(receipt) else None,
                "checks": self._checks(),
                "failed_at": failed_at,
            }),
            "updated_at": failed_at,
        })
        await dbmod.log_event(
            self.conn,
            "eth_lock_error",
            {"submission_id": sub["id"], "tx_hash": tx_hash, "error": message},
            wallet_address=sub["wallet_address"],
            auth_user_id=sub["auth_user_id"],
            user_agent=AUDIT_USER_AGENT,
        )
        log.warning("[verify_eth_lock] %s: %s", sub["wallet_address"], message)
        return VerificationResult(ERROR, message, http_status=422)

    # ---------- chain ----------
    async def _poll(self, tx_hash: str) -> tuple[Any, Any]:
        attempts = int(self.settings.ETH_LOCK_VERIFY_POLL_ATTEMPTS)
        tx_result = receipt = None
        for attempt in range(attempts):
            tx_result = await self.rpc.get_transaction(tx_hash)
            receipt = await self.rpc.get_receipt(tx_hash)
            if is_record(receipt):
                break
            if attempt < attempts - 1:
                await self.sleep(self.settings.poll_interval_seconds)
        return tx_result, receipt

    def _validate(self, sub: aiosqlite.Row, wallet: str, tx_hash: str, tx_result: Any, receipt: dict) -> dict:
        """Checks in order; the first mismatch raises with its user-facing message."""
        if not is_record(tx_result):
            raise LockMismatch("Transaction details are unavailable.")

        fetched_hash = normalize_tx_hash(tx_result.get("hash"))
        tx_from = normalize_address(tx_result.get("from"))
        tx_to = normalize_address(tx_result.get("to"))

        if not fetched_hash or fetched_hash != tx_hash:
            raise LockMismatch("Transaction hash mismatch.")

        expected_from = normalize_address(sub["from_address"]) or wallet
        if not tx_from or tx_from != expected_from:
            raise LockMismatch("Transaction sender does not match the wallet lock submission.")

        if not tx_to or tx_to != self.settings.ETH_LOCK_RECIPIENT:
            raise LockMismatch("Transaction recipient does not match ETH_LOCK_RECIPIENT.")

        value_wei = parse_hex_int(tx_result.get("value"), "transaction value")
        lock_amount = int(self.settings.ETH_LOCK_AMOUNT_WEI)
        expected_wei = parse_amount_wei(sub["amount_wei"]) or lock_amount
        if value_wei != expected_wei or value_wei != lock_amount:
            raise LockMismatch("Transaction amount does not match required ETH lock amount.")

        if parse_hex_int(receipt.get("status"), "receipt status") != 1:
            raise LockMismatch("Transaction reverted on-chain.")

        return {
            "from": tx_from,
            "to": tx_to,
            "value_wei": value_wei,
            "block_number": parse_hex_int(receipt.get("blockNumber"), "receipt block number"),
        }

    # ---------- entry point ----------
    async def verify(self, wallet_address: str, tx_hash: str) -> VerificationResult:
        wallet = normalize_address(wallet_address)
        tx_hash = normalize_tx_hash(tx_hash)
        if not wallet or not tx_hash:
            raise ValidationError("walletAddress and txHash are required.")

        sub = await self._load(wallet)
        if sub["tx_hash"] and sub["tx_hash"] != tx_hash:
            raise Conflict("Wallet submission tx hash does not match the requested tx hash.")
        if sub["status"] == CONFIRMED:
            return VerificationResult(CONFIRMED, "ETH lock already confirmed.")

        cap = int(self.settings.ETH_LOCK_MAX_VERIFICATION_ATTEMPTS or 0)
        if cap > 0 and int(sub["verification_attempts"] or 0) >= cap:
            message = f"Verification attempt limit reached ({cap})."
            await self._update(sub["id"], {"status": ERROR, "last_error": message, "updated_at": rfc3339(utcnow())})
            return VerificationResult(ERROR, message, http_status=422)

        if not await self._mark_verifying(sub, tx_hash, rfc3339(utcnow())):
            # lost a race: either confirmed meanwhile or another hash was recorded
            sub = await self._load(wallet)
            if sub["status"] == CONFIRMED:
                return VerificationResult(CONFIRMED, "ETH lock already confirmed.")
            raise Conflict("Wallet submission tx hash does not match the requested tx hash.")

        try:
            tx_result, receipt = await self._poll(tx_hash)
        except EthRpcError as e:
            await self._update(sub["id"], {"last_error": str(e), "updated_at": rfc3339(utcnow())})
            log.error("[verify_eth_lock] RPC failure for %s: %s", wallet, e)
            raise

        if not is_record(receipt):
            await self._update(sub["id"], {
                "status": VERIFYING,
                "last_error": PENDING_MESSAGE,
                "receipt": json.dumps({
                    "transaction": tx_result if is_record(tx_result) else None,
                    "receipt": None,
                    "checks": self._checks(0),
                }),
                "updated_at": rfc3339(utcnow()),
            })
            return VerificationResult(VERIFYING, "Transaction is pending confirmation.", http_status=202)

        try:
            verified = self._validate(sub, wallet, tx_hash, tx_result, receipt)
        except ValueError as e:
            return await self._fail(sub, tx_hash, str(e), tx_result, receipt)

        try:
            latest = parse_hex_int(await self.rpc.block_number(), "latest block number")
        except EthRpcError as e:
            await self._update(sub["id"], {"last_error": str(e), "updated_at": rfc3339(utcnow())})
            log.error("[verify_eth_lock] RPC failure for %s: %s", wallet, e)
            raise
        except ValueError as e:
            return await self._fail(sub, tx_hash, str(e), tx_result, receipt)

        block_number = verified["block_number"]
        confirmations = latest - block_number + 1 if latest >= block_number else 0
        required = int(self.settings.ETH_LOCK_MIN_CONFIRMATIONS)

        if confirmations < required:
            message = f"Waiting for confirmations ({confirmations}/{required})."
            await self._update(sub["id"], {
                "status": VERIFYING,
                "block_number": block_number,
                "last_error": message,
                "receipt": json.dumps({
                    "transaction": tx_result,
                    "receipt": receipt,
                    "checks": self._checks(confirmations),
                }),
                "updated_at": rfc3339(utcnow()),
            })
            return VerificationResult(VERIFYING, message, confirmations, http_status=202)

        confirm_time = rfc3339(utcnow())
        landed = await self._update(sub["id"], {
            "status": CONFIRMED,
            "block_number": block_number,
            "from_address": verified["from"],
            "to_address": verified["to"],
            "amount_wei": str(verified["value_wei"]),
            "receipt": json.dumps({
                "transaction": tx_result,
                "receipt": receipt,
                "checks": self._checks(confirmations),
                "verified_at": confirm_time,
            }),
            "last_error": None,
            "confirmed_at": confirm_time,
            "updated_at": confirm_time,
        })
        if landed:
            await dbmod.log_event(
                self.conn,
                "eth_lock_confirmed",
                {
                    "submission_id": sub["id"],
                    "tx_hash": tx_hash,
                    "confirmations": confirmations,
                    "min_confirmations": required,
                    "block_number": block_number,
                    "amount_wei": str(verified["value_wei"]),
                    "to": verified["to"],
                },
                wallet_address=wallet,
                auth_user_id=sub["auth_user_id"],
                user_agent=AUDIT_USER_AGENT,
            )
            log.info("[verify_eth_lock] confirmed %s for %s at block %s", tx_hash, wallet, block_number)
        return VerificationResult(CONFIRMED, "ETH lock transaction confirmed and verified.", confirmations)
