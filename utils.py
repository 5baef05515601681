# utils.py
"""
NEBULA: shared helpers: timestamps, address / hash normalizers, shape guards.
"""

from __future__ import annotations
import re
from datetime import datetime, timezone
from typing import Any, Optional

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")
_HEX_QUANTITY_RE = re.compile(r"^0x[0-9a-fA-F]+$")


# =========================================================
# Time
# =========================================================
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rfc3339(dt: Optional[datetime]) -> Optional[str]:
    """
    Return an RFC3339-style UTC timestamp ending with 'Z'.
    Accepts naive or aware datetimes and normalizes to UTC (no offset).

    Stored timestamps all use this shape, so they compare correctly as strings.
    """
    if dt is None:
        return None
    # if naive, treat as UTC
    if dt.tzinfo is None:
        dt_utc = dt.replace(microsecond=0)
    else:
        dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0, tzinfo=None)
    return dt_utc.isoformat() + "Z"


def parse_iso_z(s: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339-ish string into an aware UTC datetime. Accepts trailing 'Z'."""
    if not s:
        return None
    s2 = str(s).strip()
    if s2.endswith("Z"):
        s2 = s2[:-1] + "+00:00"
    dt = datetime.fromisoformat(s2)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# =========================================================
# Ethereum shapes
# =========================================================
def normalize_address(value: Any) -> Optional[str]:
    """Lowercased 0x address, or None when the value is not one."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if _ADDRESS_RE.match(normalized) else None


def normalize_tx_hash(value: Any) -> Optional[str]:
    """Lowercased 0x transaction hash, or None when the value is not one."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if _TX_HASH_RE.match(normalized) else None


def parse_hex_int(value: Any, field: str) -> int:
    """Decode a JSON-RPC hex quantity ('0x1a') into an int."""
    if not isinstance(value, str) or not _HEX_QUANTITY_RE.match(value):
        raise ValueError(f"Missing or invalid {field}.")
    return int(value, 16)


def parse_amount_wei(value: Any) -> Optional[int]:
    """Positive decimal wei string -> int; anything else -> None."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value if value > 0 else None
    if not isinstance(value, str) or not (value.isascii() and value.isdigit()):
        return None
    parsed = int(value)
    return parsed if parsed > 0 else None


def is_record(value: Any) -> bool:
    return isinstance(value, dict)
