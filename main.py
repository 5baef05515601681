# main.py
# =========================================================
# NEBULA Backend (FastAPI)
# =========================================================
from __future__ import annotations

import logging
import time
from typing import Optional, Union

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

import auctions
import db as dbmod
from config import settings
from errors import AppError, NotFound, TickBusy, Unauthorized, ValidationError
from eth_lock import LockVerifier, extract_verification_input, get_eth_lock_submission, record_eth_lock_sent
from eth_rpc import EthRpcClient
from tick import run_auction_tick
from utils import normalize_address

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("nebula")

VERSION = "0.1.0"

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="NEBULA Backend", version=VERSION)

# ----------------------------- CORS ---------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = (settings.API_PREFIX or "/api").rstrip("/")


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


# =========================================================
# Dependencies
# =========================================================
async def get_db():
    """One connection per request; transactions never interleave across requests."""
    conn = await dbmod.connect(settings.DB_PATH)
    try:
        yield conn
    finally:
        await conn.close()


async def get_rpc():
    async with EthRpcClient(settings.ETH_RPC_URL, timeout=settings.ETH_RPC_TIMEOUT_SECONDS) as rpc:
        yield rpc


_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(creds: Optional[HTTPAuthorizationCredentials] = Depends(_auth_scheme)):
    if not settings.ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if settings.DEBUG:
            return True
        raise Unauthorized("ADMIN_TOKEN required in production")
    if not creds or creds.credentials != settings.ADMIN_TOKEN:
        raise Unauthorized("Unauthorized")
    return True


def tick_guard(creds: Optional[HTTPAuthorizationCredentials] = Depends(_auth_scheme)):
    if not creds:
        raise Unauthorized("Authorization header must be Bearer <token>.")
    if creds.credentials not in settings.tick_tokens:
        raise Unauthorized("Invalid authorization token.")
    return True


def _wallet(value: str) -> str:
    wallet = normalize_address(value)
    if not wallet:
        raise ValidationError("Invalid wallet address.")
    return wallet


# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    # Ensure schema + an active round so the first tick has something to advance
    conn = await dbmod.connect(settings.DB_PATH, apply_schema=True)
    try:
        started = await auctions.start_auction_round(conn)
        if started:
            log.info("[startup] opened auction round %s", started)
    finally:
        await conn.close()


# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": "NEBULA", "version": VERSION}


# =========================================================
# Models
# =========================================================
class SubmitPartReq(BaseModel):
    wallet_address: str
    part_id: str = Field(min_length=1)


class PlaceBidReq(BaseModel):
    wallet_address: str
    round_id: int = Field(ge=1)
    amount: Union[str, int, float]
    idempotency_key: Optional[str] = None


class EthLockSentReq(BaseModel):
    wallet_address: str
    tx_hash: str
    to_address: str
    amount_wei: Union[str, int]
    chain_id: Optional[int] = None
    from_address: Optional[str] = None
    auth_user_id: Optional[str] = None


class NewPartReq(BaseModel):
    owner_wallet: str
    name: str
    section_name: str
    rarity: str
    part_value: int = Field(default=0, ge=0)
    total_power: int = Field(default=0, ge=0)
    serial_number: Optional[int] = None
    is_shiny: bool = False
    part_id: Optional[str] = None


class FluxCreditReq(BaseModel):
    wallet_address: str
    amount: Union[str, int, float]


# =========================================================
# Endpoints - Auction tick (external scheduler)
# =========================================================
@app.post(f"{API}/auction/tick")
async def auction_tick(auth: bool = Depends(tick_guard), conn=Depends(get_db)):
    """Advance every due round once. 429 when another tick holds the lock."""
    try:
        report = await run_auction_tick(conn)
    except TickBusy as e:
        return JSONResponse({"error": e.message}, status_code=429)
    except Exception as e:
        log.exception("[auction_tick] failed")
        return JSONResponse({"error": str(e) or "Auction tick failed."}, status_code=500)
    return report


# =========================================================
# Endpoints - Auction
# =========================================================
@app.get(f"{API}/auction/active")
async def auction_active(conn=Depends(get_db)):
    active = await auctions.get_active_auction(conn)
    if active is None:
        return {"status": "no_active_round"}
    return active


@app.get(f"{API}/auction/history")
async def auction_history(limit: int = Query(20), offset: int = Query(0), conn=Depends(get_db)):
    n = max(1, min(100, int(limit)))
    return {"rows": await auctions.get_auction_history(conn, limit=n, offset=max(0, int(offset)))}


@app.post(f"{API}/auction/submissions")
async def auction_submit(body: SubmitPartReq, conn=Depends(get_db)):
    return await auctions.submit_auction_item(conn, _wallet(body.wallet_address), body.part_id)


@app.post(f"{API}/auction/bids")
async def auction_bid(body: PlaceBidReq, conn=Depends(get_db)):
    return await auctions.place_auction_bid(
        conn,
        _wallet(body.wallet_address),
        body.round_id,
        body.amount,
        idempotency_key=body.idempotency_key,
    )


@app.get(f"{API}/flux/{{wallet}}")
async def flux_balance(wallet: str, conn=Depends(get_db)):
    w = _wallet(wallet)
    cents = await auctions.get_balance_cents(conn, w)
    return {"wallet": w, "balance": auctions.from_cents(cents)}


# =========================================================
# Endpoints - ETH lock
# =========================================================
@app.post(f"{API}/eth-lock/submissions")
async def eth_lock_record_sent(body: EthLockSentReq, conn=Depends(get_db)):
    return await record_eth_lock_sent(
        conn,
        wallet_address=body.wallet_address,
        tx_hash=body.tx_hash,
        to_address=body.to_address,
        amount_wei=body.amount_wei,
        chain_id=body.chain_id,
        from_address=body.from_address,
        auth_user_id=body.auth_user_id,
    )


@app.get(f"{API}/eth-lock/submissions/{{wallet}}")
async def eth_lock_get(wallet: str, conn=Depends(get_db)):
    sub = await get_eth_lock_submission(conn, wallet)
    if sub is None:
        raise NotFound("ETH lock submission not found for wallet.")
    return sub


@app.post(f"{API}/eth-lock/verify")
async def verify_eth_lock(request: Request, conn=Depends(get_db), rpc=Depends(get_rpc)):
    """
    Body: {walletAddress, txHash} or a DB webhook {record: {wallet_address, tx_hash}}.
    200 confirmed, 202 still verifying (retry later), 4xx terminal.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body.")
    wallet, tx_hash = extract_verification_input(payload)

    verifier = LockVerifier(conn, rpc, settings)
    try:
        result = await verifier.verify(wallet, tx_hash)
    except AppError:
        raise
    except Exception as e:
        log.exception("[verify_eth_lock] unexpected failure for %s", wallet)
        return JSONResponse({"error": str(e) or "ETH lock verification failed."}, status_code=500)
    return JSONResponse(result.as_response(), status_code=result.http_status)


# =========================================================
# Admin Helpers
# =========================================================
@app.post(f"{API}/admin/parts")
async def admin_create_part(body: NewPartReq, auth: bool = Depends(admin_guard), conn=Depends(get_db)):
    """Seed an inventory part (parts are normally minted by the box flow)."""
    return await auctions.create_part(
        conn,
        owner_wallet=_wallet(body.owner_wallet),
        name=body.name,
        section_name=body.section_name,
        rarity=body.rarity,
        part_value=body.part_value,
        total_power=body.total_power,
        serial_number=body.serial_number,
        is_shiny=body.is_shiny,
        part_id=body.part_id,
    )


@app.post(f"{API}/admin/flux/credit")
async def admin_credit_flux(body: FluxCreditReq, auth: bool = Depends(admin_guard), conn=Depends(get_db)):
    wallet = _wallet(body.wallet_address)
    balance = await auctions.credit_flux(conn, wallet, body.amount)
    return {"ok": True, "wallet": wallet, "balance": balance}
