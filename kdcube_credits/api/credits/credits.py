# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/api/credits/credits.py

"""
Credits API

REST endpoints over the credit ledger:
1. Balance + history reads
2. Grants, consumption, refunds (exact and simple)
3. Referral rewards
4. Housekeeping (expiry sweep, leaderboard)

Ledger failures map to HTTP status codes; the body is always
{"detail": {"code", "message", "data"}}.
"""

from typing import Optional, Dict, Any
import logging

from pydantic import AwareDatetime, BaseModel, Field, StrictInt
from fastapi import HTTPException, APIRouter, Query

from kdcube_credits.economics.errors import (
    CreditLedgerError,
    InvalidAmount,
    InvalidReferral,
    InvalidTimestamp,
    NotFound,
    InsufficientCredits,
    AlreadyReversed,
    LedgerConflict,
    TooManyFragments,
)
from kdcube_credits.economics.expiration import compute_expiration
from kdcube_credits.economics.models import EntryKind, EntryStatus, Scene

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()

# ============================================================================
# Request Models
# ============================================================================

class GrantRequest(BaseModel):
    user_id: str = Field(..., description="User ID")
    amount: StrictInt = Field(..., description="Credits to grant (> 0)")
    scene: str = Field(Scene.PAYMENT, description="payment|subscription|renewal|gift|award|redemption|refund|...")
    validity_days: Optional[int] = Field(None, description="Days until expiry; <= 0 means never")
    period_end: Optional[AwareDatetime] = Field(None, description="Billing period end; wins over validity_days (requires validity_days)")
    expires_at: Optional[AwareDatetime] = Field(None, description="Explicit expiry; exclusive with validity_days and period_end")
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    transaction_no: Optional[str] = Field(None, description="Caller id (e.g. order number); repeats are idempotent")


class ConsumeRequest(BaseModel):
    user_id: str = Field(..., description="User ID")
    amount: StrictInt = Field(..., description="Credits to spend (> 0)")
    scene: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RefundSimpleRequest(BaseModel):
    user_id: str = Field(..., description="User ID")
    amount: StrictInt = Field(..., description="Credits to give back (> 0)")
    description: Optional[str] = Field(None, description="Defaults to 'Refund for failed generation'")
    expires_at: Optional[AwareDatetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReferralRewardRequest(BaseModel):
    referral_code: str = Field(..., description="Invite code the invitee signed up with")
    inviter_id: str = Field(..., description="Owner of the invite code")
    invitee_id: str = Field(..., description="Newly registered user")


# ============================================================================
# Helpers
# ============================================================================

_STATUS_BY_ERROR = (
    (InvalidAmount, 400),
    (InvalidReferral, 400),
    (InvalidTimestamp, 400),
    (NotFound, 404),
    (InsufficientCredits, 402),
    (AlreadyReversed, 409),
    (LedgerConflict, 503),
    (TooManyFragments, 500),
)


def _http_error(e: CreditLedgerError) -> HTTPException:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(e, cls)), 500)
    headers = {"Retry-After": "1"} if e.retryable else None
    return HTTPException(
        status_code=status,
        detail={"code": e.code, "message": str(e), "data": e.data},
        headers=headers,
    )


def _ledger(ctx):
    ledger = getattr(ctx.state, "ledger", None)
    if ledger is None:
        raise HTTPException(status_code=503, detail="Credit ledger not initialized")
    return ledger


def _rewards(ctx):
    rewards = getattr(ctx.state, "rewards", None)
    if rewards is None:
        raise HTTPException(status_code=503, detail="Reward distributor not initialized")
    return rewards


# ============================================================================
# Reads
# ============================================================================

@router.get("/users/{user_id}/balance")
async def get_user_balance(
        user_id: str,
        fresh: bool = Query(False, description="Bypass the display cache"),
):
    ledger = _ledger(router)
    try:
        if fresh:
            balance = await ledger.get_balance(user_id)
        else:
            balance = await ledger.get_display_balance(user_id)
        return {"user_id": user_id, "balance": balance}
    except CreditLedgerError as e:
        raise _http_error(e)


@router.get("/users/{user_id}/entries")
async def list_user_entries(
        user_id: str,
        page: int = Query(1, ge=1),
        limit: int = Query(30, ge=1, le=500),
        kind: Optional[EntryKind] = Query(None),
        status: Optional[EntryStatus] = Query(None),
):
    ledger = _ledger(router)
    try:
        items = await ledger.list_entries(user_id=user_id, kind=kind, status=status, page=page, limit=limit)
        total = await ledger.count_entries(user_id=user_id, kind=kind, status=status)
        return {
            "user_id": user_id,
            "page": page,
            "limit": limit,
            "total": total,
            "items": [e.to_dict() for e in items],
        }
    except CreditLedgerError as e:
        raise _http_error(e)


@router.get("/entries/{entry_id}")
async def get_entry(entry_id: str):
    ledger = _ledger(router)
    try:
        return (await ledger.get_entry(entry_id)).to_dict()
    except CreditLedgerError as e:
        raise _http_error(e)


@router.get("/leaderboard")
async def leaderboard(limit: int = Query(10, ge=1, le=100)):
    ledger = _ledger(router)
    rows = await ledger.top_balances(limit=limit)
    return {"items": [{"user_id": r.user_id, "balance": r.balance} for r in rows]}


# ============================================================================
# Writes
# ============================================================================

@router.post("/grant", status_code=201)
async def grant_credits(payload: GrantRequest):
    ledger = _ledger(router)
    conflict = None
    if payload.expires_at is not None and (payload.validity_days is not None or payload.period_end is not None):
        conflict = "expires_at cannot be combined with validity_days or period_end"
    elif payload.period_end is not None and payload.validity_days is None:
        conflict = "period_end requires validity_days"
    if conflict:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_expiry", "message": conflict, "data": {
                "validity_days": payload.validity_days,
                "period_end": payload.period_end.isoformat() if payload.period_end else None,
                "expires_at": payload.expires_at.isoformat() if payload.expires_at else None,
            }},
        )
    try:
        expires_at = payload.expires_at
        if payload.validity_days is not None:
            expires_at = compute_expiration(payload.validity_days, payload.period_end)

        entry = await ledger.grant(
            payload.user_id,
            payload.amount,
            payload.scene,
            expires_at=expires_at,
            description=payload.description,
            metadata=payload.metadata,
            transaction_no=payload.transaction_no,
        )
        logger.info(f"[grant] {payload.user_id}: +{payload.amount} ({payload.scene}) entry={entry.id}")
        return {"status": "ok", "entry": entry.to_dict()}
    except CreditLedgerError as e:
        raise _http_error(e)


@router.post("/consume", status_code=201)
async def consume_credits(payload: ConsumeRequest):
    ledger = _ledger(router)
    try:
        entry = await ledger.consume(
            payload.user_id,
            payload.amount,
            scene=payload.scene,
            description=payload.description,
            metadata=payload.metadata,
        )
        return {"status": "ok", "entry": entry.to_dict()}
    except CreditLedgerError as e:
        if isinstance(e, (TooManyFragments, LedgerConflict)):
            logger.warning(f"[consume] {payload.user_id}: {e.code} {e}")
        raise _http_error(e)


@router.post("/refund/exact/{entry_id}")
async def refund_exact(entry_id: str):
    ledger = _ledger(router)
    try:
        entry = await ledger.refund_exact(entry_id)
        return {"status": "ok", "entry": entry.to_dict()}
    except CreditLedgerError as e:
        raise _http_error(e)


@router.post("/refund/simple", status_code=201)
async def refund_simple(payload: RefundSimpleRequest):
    ledger = _ledger(router)
    try:
        kwargs = {"description": payload.description} if payload.description else {}
        entry = await ledger.refund_simple(
            payload.user_id,
            payload.amount,
            expires_at=payload.expires_at,
            metadata=payload.metadata,
            **kwargs,
        )
        return {"status": "ok", "entry": entry.to_dict()}
    except CreditLedgerError as e:
        raise _http_error(e)


@router.post("/rewards/referral")
async def reward_referral(payload: ReferralRewardRequest):
    rewards = _rewards(router)
    try:
        outcome = await rewards.reward_referral(
            payload.referral_code,
            payload.inviter_id,
            payload.invitee_id,
        )
        return outcome.to_dict()
    except CreditLedgerError as e:
        raise _http_error(e)


@router.post("/expire")
async def expire_grants():
    ledger = _ledger(router)
    n = await ledger.expire_grants()
    return {"status": "ok", "expired": n}
