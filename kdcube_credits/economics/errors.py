# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/errors.py
from __future__ import annotations


class CreditLedgerError(RuntimeError):
    """Base of every typed ledger failure. `code` is stable; `data` is structured detail."""
    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, data: dict | None = None):
        super().__init__(message)
        if code:
            self.code = code
        self.data = data or {}


class InvalidAmount(CreditLedgerError):
    code = "invalid_amount"

    def __init__(self, amount, *, op: str):
        super().__init__(f"{op}: amount must be a positive integer, got {amount!r}",
                         data={"op": op, "amount": amount})


class InsufficientCredits(CreditLedgerError):
    code = "insufficient_credits"

    def __init__(self, *, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        self.shortfall = max(self.required - self.available, 0)
        super().__init__(
            f"Insufficient credits, {self.available} < {self.required}",
            data={"required": self.required, "available": self.available, "shortfall": self.shortfall},
        )


class TooManyFragments(CreditLedgerError):
    code = "too_many_fragments"

    def __init__(self, *, user_id: str, max_pages: int, page_size: int, still_needed: int):
        super().__init__(
            f"Too many grant pages for user {user_id}: > {max_pages} pages of {page_size}",
            data={"user_id": user_id, "max_pages": max_pages, "page_size": page_size,
                  "still_needed": still_needed},
        )


class NotFound(CreditLedgerError):
    code = "not_found"

    def __init__(self, entry_id: str, what: str = "ledger entry"):
        super().__init__(f"{what} not found: {entry_id}", data={"entry_id": entry_id})


class AlreadyReversed(CreditLedgerError):
    code = "already_reversed"

    def __init__(self, entry_id: str):
        super().__init__(f"consume entry already reversed: {entry_id}", data={"entry_id": entry_id})


class LedgerConflict(CreditLedgerError):
    """Lock timeout, deadlock or serialization failure. Nothing was committed; safe to retry."""
    code = "ledger_conflict"
    retryable = True


class LedgerIntegrityError(CreditLedgerError):
    code = "ledger_integrity"


class InvalidReferral(CreditLedgerError):
    code = "invalid_referral"


class InvalidTimestamp(CreditLedgerError):
    """Naive datetime where a timezone-aware one is required."""
    code = "invalid_timestamp"

    def __init__(self, value, *, field: str):
        super().__init__(f"{field} must be timezone-aware, got {value!r}",
                         data={"field": field, "value": str(value)})
