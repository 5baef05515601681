# config.py
"""
NEBULA: Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
import re
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".nebula.env",
        env_prefix="",            # read raw names (e.g., ETH_RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    # =========================
    # CORS (optional)
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # Auth
    # =========================
    ADMIN_TOKEN: Optional[str] = None
    # Comma-separated bearer tokens accepted by the tick endpoint
    # (service key + optional fallback)
    AUCTION_TICK_TOKENS: str = ""

    # =========================
    # Auction timing / rules
    # =========================
    AUCTION_ROUND_SECONDS: int = 14_400
    AUCTION_SUBMISSION_SECONDS: int = 3_600
    AUCTION_MIN_INCREMENT_BPS: int = 500
    AUCTION_MIN_RARITY_TIER: int = 3           # "Rare" and above
    AUCTION_MAX_BID_FLUX: int = 1_000_000
    AUCTION_TICK_LOCK_TTL_SECONDS: int = 120

    # =========================
    # ETH lock verification
    # =========================
    ETH_RPC_URL: str = "https://ethereum-rpc.publicnode.com"
    ETH_RPC_TIMEOUT_SECONDS: float = 15.0
    ETH_LOCK_RECIPIENT: str = "0x8c80dd6327ed5889be09e77f9ca49d5bad2b0bf7"
    ETH_LOCK_AMOUNT_WEI: int = 50_000_000_000_000_000   # 0.05 ETH
    ETH_LOCK_MIN_CONFIRMATIONS: int = 1
    ETH_LOCK_VERIFY_POLL_ATTEMPTS: int = 8
    ETH_LOCK_VERIFY_POLL_INTERVAL_MS: int = 3_000
    # 0 = retry forever
    ETH_LOCK_MAX_VERIFICATION_ATTEMPTS: int = 0

    @field_validator("ETH_LOCK_RECIPIENT")
    @classmethod
    def _norm_recipient(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not _ADDRESS_RE.match(v):
            raise ValueError("ETH_LOCK_RECIPIENT must be a valid 0x address.")
        return v

    @field_validator("ETH_LOCK_AMOUNT_WEI", mode="before")
    @classmethod
    def _parse_wei(cls, v):
        # env values arrive as strings; fall back to the default unless a positive integer
        if isinstance(v, str):
            v = v.strip()
            if not (v.isascii() and v.isdigit()) or int(v) <= 0:
                return 50_000_000_000_000_000
            return int(v)
        return v

    @field_validator(
        "ETH_LOCK_MIN_CONFIRMATIONS",
        "ETH_LOCK_VERIFY_POLL_ATTEMPTS",
        "ETH_LOCK_VERIFY_POLL_INTERVAL_MS",
        "AUCTION_TICK_LOCK_TTL_SECONDS",
    )
    @classmethod
    def _positive_or_default(cls, v: int, info):
        if v > 0:
            return v
        return cls.model_fields[info.field_name].default

    # =========================
    # Database
    # =========================
    DB_PATH: str = "/data/nebula.db"

    # =========================
    # External trigger (scheduler.py)
    # =========================
    TICK_URL: str = "http://127.0.0.1:8000/api/auction/tick"
    TICK_INTERVAL_SECONDS: int = 30

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def tick_tokens(self) -> List[str]:
        """Allowed tick bearer tokens, blanks dropped."""
        return [t.strip() for t in (self.AUCTION_TICK_TOKENS or "").split(",") if t.strip()]

    @property
    def poll_interval_seconds(self) -> float:
        """Verifier poll interval in seconds."""
        return self.ETH_LOCK_VERIFY_POLL_INTERVAL_MS / 1000.0


# Instantiate global settings (values resolved from environment)
settings = Settings()
