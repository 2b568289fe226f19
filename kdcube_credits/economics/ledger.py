# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/ledger.py
"""
Credit ledger engine.

Balance is never stored: it is the sum of `remaining` over the user's spendable
grants. Every write goes through one store transaction:

  - grant / refund_simple  -> plain insert of a grant
  - consume                -> user-scoped transaction; grants drained FIFO by expiry,
                              one consume entry recording which grants were drawn
  - refund_exact           -> replays a consume entry's detail back onto its grants

Expired grants are filtered by timestamp on read; `expire_grants` only flips status
for bookkeeping.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable

from kdcube_credits.economics.balance_cache import BalanceCache
from kdcube_credits.economics.errors import (
    InvalidAmount,
    InsufficientCredits,
    TooManyFragments,
    NotFound,
    AlreadyReversed,
    LedgerConflict,
    LedgerIntegrityError,
)
from kdcube_credits.economics.expiration import require_aware
from kdcube_credits.economics.ids import new_entry_id, new_transaction_no
from kdcube_credits.economics.models import (
    LedgerEntry,
    ConsumedItem,
    EntryKind,
    EntryStatus,
    Scene,
    UserBalance,
)
from kdcube_credits.economics.store import LedgerStore, LedgerTx

logger = logging.getLogger(__name__)

DEFAULT_REFUND_DESCRIPTION = "Refund for failed generation"

# amount and remaining are BIGINT columns
MAX_AMOUNT = 2 ** 63 - 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_positive(amount, *, op: str) -> int:
    # bool is an int subclass; True is not "1 credit"
    if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount <= MAX_AMOUNT:
        raise InvalidAmount(amount, op=op)
    return int(amount)


class CreditLedger:
    def __init__(
            self,
            store: LedgerStore,
            *,
            page_size: int = 1000,
            max_pages: int = 10,
            balance_cache: Optional[BalanceCache] = None,
            clock: Optional[Callable[[], datetime]] = None,
    ):
        if page_size <= 0 or max_pages <= 0:
            raise ValueError("page_size and max_pages must be positive")
        self.store = store
        self.page_size = int(page_size)
        self.max_pages = int(max_pages)
        self.balance_cache = balance_cache
        self._clock = clock or _utcnow

    @classmethod
    def from_settings(cls, store: LedgerStore, settings=None, *, balance_cache: Optional[BalanceCache] = None):
        from kdcube_credits.config import get_settings
        s = settings or get_settings()
        return cls(
            store,
            page_size=s.CONSUME_PAGE_SIZE,
            max_pages=s.CONSUME_MAX_PAGES,
            balance_cache=balance_cache,
        )

    def now(self) -> datetime:
        """Current time from the ledger clock (UTC, aware)."""
        return self._clock()

    def _now(self, now: Optional[datetime]) -> datetime:
        return require_aware(now, field="now") or self._clock()

    async def invalidate_balance(self, user_id: str) -> None:
        if self.balance_cache is not None:
            await self.balance_cache.invalidate(user_id)

    # ---------- balance ----------

    async def get_balance(self, user_id: str, *, now: Optional[datetime] = None) -> int:
        return await self.store.sum_balance(user_id, now=self._now(now))

    async def get_display_balance(self, user_id: str) -> int:
        """Balance for UI; may be up to BALANCE_CACHE_TTL seconds stale."""
        if self.balance_cache is not None:
            cached = await self.balance_cache.get(user_id)
            if cached is not None:
                return cached
        balance = await self.get_balance(user_id)
        if self.balance_cache is not None:
            await self.balance_cache.set(user_id, balance)
        return balance

    # ---------- grants ----------

    async def grant_with(
            self,
            tx: LedgerTx,
            *,
            user_id: str,
            amount: int,
            scene: Optional[str],
            now: datetime,
            expires_at: Optional[datetime] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            transaction_no: Optional[str] = None,
    ) -> LedgerEntry:
        """Insert a grant inside an open transaction. A known transaction_no returns the stored grant."""
        amount = _require_positive(amount, op="grant")
        require_aware(now, field="now")
        require_aware(expires_at, field="expires_at")
        entry = LedgerEntry(
            id=new_entry_id(),
            user_id=user_id,
            transaction_no=transaction_no or new_transaction_no(),
            kind=EntryKind.GRANT,
            amount=amount,
            remaining=amount,
            status=EntryStatus.ACTIVE,
            scene=scene,
            expires_at=expires_at,
            description=description,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        stored = await tx.insert_entry(entry)
        if stored is not None:
            return stored

        existing = await tx.get_by_transaction_no(entry.transaction_no)
        if existing is None:
            # taken by a transaction that has not committed yet
            raise LedgerConflict(
                f"transaction_no {entry.transaction_no} is being written concurrently",
                data={"transaction_no": entry.transaction_no},
            )
        if existing.kind != EntryKind.GRANT or existing.user_id != user_id or existing.amount != amount:
            logger.error(
                "transaction_no %s reused with different payload (stored user=%s amount=%s, got user=%s amount=%s)",
                entry.transaction_no, existing.user_id, existing.amount, user_id, amount,
            )
            raise LedgerIntegrityError(
                f"transaction_no {entry.transaction_no} already used for a different grant",
                data={"transaction_no": entry.transaction_no, "entry_id": existing.id},
            )
        logger.warning("Duplicate grant transaction_no=%s for user %s; returning stored entry %s",
                       entry.transaction_no, user_id, existing.id)
        return existing

    async def grant(
            self,
            user_id: str,
            amount: int,
            scene: Optional[str],
            *,
            expires_at: Optional[datetime] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            transaction_no: Optional[str] = None,
            now: Optional[datetime] = None,
    ) -> LedgerEntry:
        amount = _require_positive(amount, op="grant")
        now = self._now(now)
        async with self.store.transaction() as tx:
            entry = await self.grant_with(
                tx,
                user_id=user_id,
                amount=amount,
                scene=scene,
                now=now,
                expires_at=expires_at,
                description=description,
                metadata=metadata,
                transaction_no=transaction_no,
            )
        logger.info(f"Granted {entry.amount} credits to {user_id} "
                    f"(scene={scene}, expires_at={expires_at}, txno={entry.transaction_no})")
        await self.invalidate_balance(user_id)
        return entry

    async def refund_simple(
            self,
            user_id: str,
            amount: int,
            *,
            description: str = DEFAULT_REFUND_DESCRIPTION,
            expires_at: Optional[datetime] = None,
            metadata: Optional[Dict[str, Any]] = None,
            now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Compensating grant. Does not restore the original grants' expirations."""
        amount = _require_positive(amount, op="refund")
        return await self.grant(
            user_id,
            amount,
            Scene.REFUND,
            expires_at=expires_at,
            description=description,
            metadata=metadata,
            now=now,
        )

    # ---------- consumption ----------

    async def consume(
            self,
            user_id: str,
            amount: int,
            *,
            scene: Optional[str] = None,
            description: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None,
            now: Optional[datetime] = None,
    ) -> LedgerEntry:
        amount = _require_positive(amount, op="consume")
        now = self._now(now)

        async with self.store.transaction(user_id=user_id) as tx:
            available = await tx.sum_balance(user_id, now=now)
            if available < amount:
                raise InsufficientCredits(required=amount, available=available)

            still_needed = amount
            detail: List[ConsumedItem] = []
            page_no = 0
            while still_needed > 0:
                if page_no >= self.max_pages:
                    logger.error(
                        "Consume for %s needs more than %d pages of %d grants (still needed %d)",
                        user_id, self.max_pages, self.page_size, still_needed,
                    )
                    raise TooManyFragments(
                        user_id=user_id,
                        max_pages=self.max_pages,
                        page_size=self.page_size,
                        still_needed=still_needed,
                    )
                page_no += 1

                # always the head of the eligible set: drained grants have left the remaining > 0 filter
                grants = await tx.lock_eligible_grants(user_id, now=now, limit=self.page_size)
                if not grants:
                    # drained or expired since the balance check
                    available = await tx.sum_balance(user_id, now=now)
                    raise InsufficientCredits(required=amount, available=available)

                updates = []
                for g in grants:
                    if still_needed <= 0:
                        break
                    take = min(g.remaining, still_needed)
                    after = g.remaining - take
                    updates.append((g.id, after))
                    detail.append(ConsumedItem(
                        grant_entry_id=g.id,
                        amount_drawn=take,
                        transaction_no=g.transaction_no,
                        expires_at=g.expires_at,
                        remaining_before=g.remaining,
                        remaining_after=after,
                        page_no=page_no,
                    ))
                    still_needed -= take
                await tx.set_remaining_many(updates, now=now)

            entry = LedgerEntry(
                id=new_entry_id(),
                user_id=user_id,
                transaction_no=new_transaction_no(),
                kind=EntryKind.CONSUME,
                amount=-amount,
                remaining=0,
                status=EntryStatus.ACTIVE,
                scene=scene,
                consumed_detail=detail,
                description=description,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            stored = await tx.insert_entry(entry)
            if stored is None:
                raise LedgerIntegrityError(f"transaction_no collision {entry.transaction_no}")

        logger.info(f"Consumed {amount} credits from {user_id} across {len(detail)} grant(s), "
                    f"{page_no} page(s); entry={stored.id}")
        await self.invalidate_balance(user_id)
        return stored

    # ---------- exact reversal ----------

    async def refund_exact(self, consume_entry_id: str, *, now: Optional[datetime] = None) -> LedgerEntry:
        """
        Put every credit a consume entry drew back onto the grant it came from
        (expired grants included) and mark the consume entry deleted.
        Returns the reversed (deleted) consume entry.
        """
        now = self._now(now)
        async with self.store.transaction() as tx:
            entry = await tx.lock_entry(consume_entry_id)
            if entry is None or entry.kind != EntryKind.CONSUME:
                raise NotFound(consume_entry_id, what="consume entry")
            if entry.status != EntryStatus.ACTIVE:
                raise AlreadyReversed(consume_entry_id)

            drawn = sum(x.amount_drawn for x in entry.consumed_detail)
            if drawn != -entry.amount:
                logger.error("Consume entry %s detail sums to %d, amount is %d",
                             entry.id, drawn, entry.amount)
                raise LedgerIntegrityError(
                    f"consume entry {entry.id} detail does not match its amount",
                    data={"entry_id": entry.id, "detail_sum": drawn, "amount": entry.amount},
                )

            per_grant: Dict[str, int] = OrderedDict()
            for item in entry.consumed_detail:
                per_grant[item.grant_entry_id] = per_grant.get(item.grant_entry_id, 0) + item.amount_drawn

            grants = await tx.lock_entries(per_grant.keys())
            for grant_id in sorted(per_grant):
                if grant_id not in grants:
                    raise LedgerIntegrityError(
                        f"grant {grant_id} referenced by {entry.id} is missing",
                        data={"entry_id": entry.id, "grant_entry_id": grant_id},
                    )
                if not await tx.restore_remaining(grant_id, per_grant[grant_id], now=now):
                    logger.error("Restoring %d onto grant %s would exceed its amount (consume %s)",
                                 per_grant[grant_id], grant_id, entry.id)
                    raise LedgerIntegrityError(
                        f"restore onto grant {grant_id} exceeds its original amount",
                        data={"entry_id": entry.id, "grant_entry_id": grant_id,
                              "amount": per_grant[grant_id]},
                    )

            await tx.set_status(entry.id, EntryStatus.DELETED, now=now)

        logger.info(f"Reversed consume {entry.id}: {drawn} credits back to {entry.user_id} "
                    f"across {len(per_grant)} grant(s)")
        await self.invalidate_balance(entry.user_id)
        return entry.with_changes(status=EntryStatus.DELETED, updated_at=now)

    # ---------- reads / housekeeping ----------

    async def get_entry(self, entry_id: str) -> LedgerEntry:
        entry = await self.store.get_entry(entry_id)
        if entry is None:
            raise NotFound(entry_id)
        return entry

    async def list_entries(
            self,
            *,
            user_id: Optional[str] = None,
            kind: Optional[EntryKind] = None,
            status: Optional[EntryStatus] = None,
            page: int = 1,
            limit: int = 30,
    ) -> List[LedgerEntry]:
        page = max(int(page), 1)
        limit = max(int(limit), 1)
        return await self.store.list_entries(
            user_id=user_id, kind=kind, status=status, limit=limit, offset=(page - 1) * limit,
        )

    async def count_entries(
            self,
            *,
            user_id: Optional[str] = None,
            kind: Optional[EntryKind] = None,
            status: Optional[EntryStatus] = None,
    ) -> int:
        return await self.store.count_entries(user_id=user_id, kind=kind, status=status)

    async def top_balances(self, *, limit: int = 10, now: Optional[datetime] = None) -> List[UserBalance]:
        return await self.store.top_balances(limit=max(int(limit), 1), now=self._now(now))

    async def expire_grants(self, *, now: Optional[datetime] = None) -> int:
        n = await self.store.expire_grants(now=self._now(now))
        if n:
            logger.info("Marked %d grant(s) expired", n)
        return n
