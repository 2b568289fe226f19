# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/models.py
from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EntryKind(str, Enum):
    GRANT = "grant"
    CONSUME = "consume"


class EntryStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    DELETED = "deleted"


class Scene:
    """
    Well-known scene tags. Scenes are open strings: callers may pass any value,
    the engine only looks at REFUND (refund bookkeeping) and AWARD (reward idempotency).
    """
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    GIFT = "gift"
    AWARD = "award"
    REDEMPTION = "redemption"
    REFUND = "refund"


@dataclass(frozen=True)
class ConsumedItem:
    grant_entry_id: str
    amount_drawn: int
    transaction_no: Optional[str] = None
    expires_at: Optional[datetime] = None
    remaining_before: Optional[int] = None
    remaining_after: Optional[int] = None
    page_no: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if self.expires_at:
            d["expires_at"] = self.expires_at.isoformat()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ConsumedItem":
        exp = d.get("expires_at")
        if isinstance(exp, str):
            exp = datetime.fromisoformat(exp)
        return cls(
            grant_entry_id=str(d["grant_entry_id"]),
            amount_drawn=int(d["amount_drawn"]),
            transaction_no=d.get("transaction_no"),
            expires_at=exp,
            remaining_before=d.get("remaining_before"),
            remaining_after=d.get("remaining_after"),
            page_no=d.get("page_no"),
        )


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    user_id: str
    transaction_no: str
    kind: EntryKind
    amount: int
    remaining: int = 0
    status: EntryStatus = EntryStatus.ACTIVE
    scene: Optional[str] = None
    expires_at: Optional[datetime] = None
    consumed_detail: List[ConsumedItem] = field(default_factory=list)
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_grant(self) -> bool:
        return self.kind == EntryKind.GRANT

    @property
    def is_consume(self) -> bool:
        return self.kind == EntryKind.CONSUME

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_spendable(self, now: datetime) -> bool:
        return (
                self.kind == EntryKind.GRANT
                and self.status == EntryStatus.ACTIVE
                and self.remaining > 0
                and not self.is_expired(now)
        )

    def with_changes(self, **changes) -> "LedgerEntry":
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row) -> "LedgerEntry":
        d = dict(row)
        detail = d.get("consumed_detail") or []
        if isinstance(detail, str):
            detail = json.loads(detail)
        meta = d.get("metadata") or {}
        if isinstance(meta, str):
            meta = json.loads(meta)
        return cls(
            id=str(d["id"]),
            user_id=d["user_id"],
            transaction_no=d["transaction_no"],
            kind=EntryKind(d["kind"]),
            amount=int(d["amount"]),
            remaining=int(d.get("remaining") or 0),
            status=EntryStatus(d["status"]),
            scene=d.get("scene"),
            expires_at=d.get("expires_at"),
            consumed_detail=[ConsumedItem.from_dict(x) for x in detail],
            description=d.get("description"),
            metadata=meta,
            created_at=d["created_at"],
            updated_at=d["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "transaction_no": self.transaction_no,
            "kind": self.kind.value,
            "scene": self.scene,
            "amount": self.amount,
            "remaining": self.remaining,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "consumed_detail": [x.to_dict() for x in self.consumed_detail],
            "description": self.description,
            "metadata": dict(self.metadata or {}),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class UserBalance:
    user_id: str
    balance: int


def fifo_key(e: LedgerEntry):
    # expires_at ASC NULLS LAST, created_at ASC, id ASC
    return (e.expires_at is None, e.expires_at or e.created_at, e.created_at, e.id)
