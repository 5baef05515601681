# errors.py
"""
NEBULA: domain errors.
Each carries the HTTP status the API answers with; main.py renders them as {"error": message}.
"""

from __future__ import annotations


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


# ---------- validation (no store mutation) ----------
class ValidationError(AppError):
    status_code = 400


class InvalidAmount(ValidationError):
    pass


class AmountTooLarge(ValidationError):
    pass


# ---------- auth ----------
class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


# ---------- lookups / conflicts ----------
class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class RoundClosed(Conflict):
    pass


class BidTooLow(Conflict):
    pass


class InsufficientBalance(Conflict):
    pass


class Ineligible(AppError):
    status_code = 422


# ---------- concurrency guard ----------
class TickBusy(AppError):
    status_code = 429

    def __init__(self, message: str = "Auction tick is already running."):
        super().__init__(message)
