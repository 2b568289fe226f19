# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/store.py
"""
Ledger entry store contract + in-process implementation.

A store hands out transactions. Everything the engine does to the ledger on the
write path happens through a LedgerTx, inside exactly one transaction:

    async with store.transaction(user_id=...) as tx:
        ...

  - user_id given -> the transaction holds a user-scoped lock until it ends
                     (concurrent consumes for the same user serialize)
  - lock_* methods  -> row locks held until the transaction ends
  - leaving the block with an exception rolls everything back

InMemoryLedgerStore keeps the same semantics with asyncio locks and staged
writes; PgLedgerStore (pg_store.py) maps them onto asyncpg transactions.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Tuple, AsyncIterator

from kdcube_credits.economics.errors import LedgerConflict
from kdcube_credits.economics.models import LedgerEntry, EntryKind, EntryStatus, UserBalance, fifo_key

logger = logging.getLogger(__name__)


class LedgerTx:
    """Operations available inside one store transaction."""

    async def sum_balance(self, user_id: str, *, now: datetime) -> int:
        raise NotImplementedError

    async def lock_eligible_grants(self, user_id: str, *, now: datetime, limit: int) -> List[LedgerEntry]:
        """
        Head of the spendable set, soonest-to-expire first (never-expiring last).
        Rows are locked in id order; the result is returned in FIFO order.
        """
        raise NotImplementedError

    async def set_remaining_many(self, updates: Iterable[Tuple[str, int]], *, now: datetime) -> None:
        raise NotImplementedError

    async def insert_entry(self, entry: LedgerEntry) -> Optional[LedgerEntry]:
        """Insert; returns None when the transaction_no is already taken."""
        raise NotImplementedError

    async def get_by_transaction_no(self, transaction_no: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    async def lock_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    async def lock_entries(self, entry_ids: Iterable[str]) -> Dict[str, LedgerEntry]:
        """Row-lock a set of entries in id order."""
        raise NotImplementedError

    async def restore_remaining(self, entry_id: str, amount: int, *, now: datetime) -> bool:
        """remaining += amount on a grant; False (no write) if it would exceed the grant's amount."""
        raise NotImplementedError

    async def set_status(self, entry_id: str, status: EntryStatus, *, now: datetime) -> None:
        raise NotImplementedError

    async def find_entries(
            self,
            *,
            user_id: Optional[str] = None,
            kind: Optional[EntryKind] = None,
            scene: Optional[str] = None,
            metadata_match: Optional[Dict[str, Any]] = None,
            limit: int = 1,
    ) -> List[LedgerEntry]:
        raise NotImplementedError

    async def sum_granted(
            self,
            *,
            user_id: str,
            scene: str,
            since: datetime,
            until: datetime,
            metadata_match: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Sum of original grant amounts (not remaining) created in [since, until), deleted excluded."""
        raise NotImplementedError


class LedgerStore:
    """Store contract: transactions plus lock-free snapshot reads."""

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def transaction(self, *, user_id: Optional[str] = None):
        raise NotImplementedError

    async def sum_balance(self, user_id: str, *, now: datetime) -> int:
        raise NotImplementedError

    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    async def list_entries(
            self,
            *,
            user_id: Optional[str] = None,
            kind: Optional[EntryKind] = None,
            status: Optional[EntryStatus] = None,
            limit: int = 30,
            offset: int = 0,
    ) -> List[LedgerEntry]:
        raise NotImplementedError

    async def count_entries(
            self,
            *,
            user_id: Optional[str] = None,
            kind: Optional[EntryKind] = None,
            status: Optional[EntryStatus] = None,
    ) -> int:
        raise NotImplementedError

    async def top_balances(self, *, limit: int, now: datetime) -> List[UserBalance]:
        raise NotImplementedError

    async def expire_grants(self, *, now: datetime) -> int:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# In-process store
# -----------------------------------------------------------------------------

def _matches(e: LedgerEntry, match: Optional[Dict[str, Any]]) -> bool:
    if not match:
        return True
    meta = e.metadata or {}
    return all(meta.get(k) == v for k, v in match.items())


async def _round_trip() -> None:
    # every store call yields, like a database round-trip would
    await asyncio.sleep(0)


class _MemoryTx(LedgerTx):
    def __init__(self, store: "InMemoryLedgerStore"):
        self._store = store
        self._staged: Dict[str, LedgerEntry] = {}
        self._new_txnos: set[str] = set()
        self._held: List[asyncio.Lock] = []
        self._held_ids: set[str] = set()

    # ---------- view: staged writes over committed state ----------
    def _get(self, entry_id: str) -> Optional[LedgerEntry]:
        if entry_id in self._staged:
            return self._staged[entry_id]
        return self._store._entries.get(entry_id)

    def _all(self) -> List[LedgerEntry]:
        merged = dict(self._store._entries)
        merged.update(self._staged)
        return list(merged.values())

    async def _acquire(self, lock: asyncio.Lock, what: str) -> None:
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._store.lock_timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise LedgerConflict(f"lock timeout on {what}", data={"lock": what})
        self._held.append(lock)

    async def _lock_row(self, entry_id: str) -> None:
        if entry_id in self._held_ids:
            return
        await self._acquire(self._store._row_lock(entry_id), f"row {entry_id}")
        self._held_ids.add(entry_id)

    async def _lock_user(self, user_id: str) -> None:
        await self._acquire(self._store._user_lock(user_id), f"user {user_id}")

    def _release(self) -> None:
        while self._held:
            self._held.pop().release()
        self._held_ids.clear()

    def _commit(self) -> None:
        for e in self._staged.values():
            self._store._entries[e.id] = e
            self._store._by_txno[e.transaction_no] = e.id
        self._store._pending_txnos -= self._new_txnos

    def _rollback(self) -> None:
        self._store._pending_txnos -= self._new_txnos
        self._staged.clear()

    # ---------- LedgerTx ----------
    async def sum_balance(self, user_id: str, *, now: datetime) -> int:
        await _round_trip()
        return sum(e.remaining for e in self._all() if e.user_id == user_id and e.is_spendable(now))

    async def lock_eligible_grants(self, user_id: str, *, now: datetime, limit: int) -> List[LedgerEntry]:
        await _round_trip()
        candidates = sorted(
            (e for e in self._all() if e.user_id == user_id and e.is_spendable(now)),
            key=fifo_key,
        )[:int(limit)]
        for entry_id in sorted(e.id for e in candidates):
            await self._lock_row(entry_id)
        # re-check after the lock wait, as FOR UPDATE does
        rows = [self._get(e.id) for e in candidates]
        return sorted((e for e in rows if e is not None and e.is_spendable(now)), key=fifo_key)

    async def set_remaining_many(self, updates: Iterable[Tuple[str, int]], *, now: datetime) -> None:
        await _round_trip()
        for entry_id, remaining in updates:
            e = self._get(entry_id)
            if e is None:
                continue
            self._staged[entry_id] = e.with_changes(remaining=int(remaining), updated_at=now)

    async def insert_entry(self, entry: LedgerEntry) -> Optional[LedgerEntry]:
        await _round_trip()
        txno = entry.transaction_no
        if txno in self._store._by_txno or txno in self._store._pending_txnos:
            return None
        self._store._pending_txnos.add(txno)
        self._new_txnos.add(txno)
        self._staged[entry.id] = entry
        self._held_ids.add(entry.id)
        return entry

    async def get_by_transaction_no(self, transaction_no: str) -> Optional[LedgerEntry]:
        await _round_trip()
        for e in self._staged.values():
            if e.transaction_no == transaction_no:
                return e
        entry_id = self._store._by_txno.get(transaction_no)
        return self._get(entry_id) if entry_id else None

    async def lock_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        await _round_trip()
        if self._get(entry_id) is None:
            return None
        await self._lock_row(entry_id)
        return self._get(entry_id)

    async def lock_entries(self, entry_ids: Iterable[str]) -> Dict[str, LedgerEntry]:
        await _round_trip()
        out: Dict[str, LedgerEntry] = {}
        for entry_id in sorted(set(entry_ids)):
            if self._get(entry_id) is None:
                continue
            await self._lock_row(entry_id)
            out[entry_id] = self._get(entry_id)
        return out

    async def restore_remaining(self, entry_id: str, amount: int, *, now: datetime) -> bool:
        await _round_trip()
        e = self._get(entry_id)
        if e is None or e.kind != EntryKind.GRANT or e.remaining + int(amount) > e.amount:
            return False
        self._staged[entry_id] = e.with_changes(remaining=e.remaining + int(amount), updated_at=now)
        return True

    async def set_status(self, entry_id: str, status: EntryStatus, *, now: datetime) -> None:
        await _round_trip()
        e = self._get(entry_id)
        if e is not None:
            self._staged[entry_id] = e.with_changes(status=status, updated_at=now)

    async def find_entries(self, *, user_id=None, kind=None, scene=None, metadata_match=None, limit: int = 1):
        await _round_trip()
        rows = [
            e for e in self._all()
            if (user_id is None or e.user_id == user_id)
               and (kind is None or e.kind == kind)
               and (scene is None or e.scene == scene)
               and _matches(e, metadata_match)
        ]
        rows.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return rows[:int(limit)]

    async def sum_granted(self, *, user_id, scene, since, until, metadata_match=None) -> int:
        await _round_trip()
        return sum(
            e.amount for e in self._all()
            if e.user_id == user_id
               and e.kind == EntryKind.GRANT
               and e.scene == scene
               and e.status != EntryStatus.DELETED
               and since <= e.created_at < until
               and _matches(e, metadata_match)
        )


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger (dev + tests). Same locking/rollback semantics as
    the PostgreSQL store, but not shared between processes.
    """

    def __init__(self, *, lock_timeout_ms: int = 5000):
        self.lock_timeout_ms = int(lock_timeout_ms)
        self._entries: Dict[str, LedgerEntry] = {}
        self._by_txno: Dict[str, str] = {}
        self._pending_txnos: set[str] = set()
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._row_locks: Dict[str, asyncio.Lock] = {}

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        return self._user_locks.setdefault(user_id, asyncio.Lock())

    def _row_lock(self, entry_id: str) -> asyncio.Lock:
        return self._row_locks.setdefault(entry_id, asyncio.Lock())

    @asynccontextmanager
    async def transaction(self, *, user_id: Optional[str] = None) -> AsyncIterator[LedgerTx]:
        tx = _MemoryTx(self)
        try:
            if user_id is not None:
                await tx._lock_user(user_id)
            yield tx
        except BaseException:
            tx._rollback()
            raise
        else:
            tx._commit()
        finally:
            tx._release()

    # ---------- snapshot reads ----------
    async def sum_balance(self, user_id: str, *, now: datetime) -> int:
        await _round_trip()
        return sum(e.remaining for e in self._entries.values() if e.user_id == user_id and e.is_spendable(now))

    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        await _round_trip()
        return self._entries.get(entry_id)

    def _filter(self, user_id, kind, status) -> List[LedgerEntry]:
        return [
            e for e in self._entries.values()
            if (user_id is None or e.user_id == user_id)
               and (kind is None or e.kind == kind)
               and (status is None or e.status == status)
        ]

    async def list_entries(self, *, user_id=None, kind=None, status=None, limit: int = 30, offset: int = 0):
        await _round_trip()
        rows = sorted(self._filter(user_id, kind, status), key=lambda e: (e.created_at, e.id), reverse=True)
        return rows[int(offset):int(offset) + int(limit)]

    async def count_entries(self, *, user_id=None, kind=None, status=None) -> int:
        await _round_trip()
        return len(self._filter(user_id, kind, status))

    async def top_balances(self, *, limit: int, now: datetime) -> List[UserBalance]:
        await _round_trip()
        totals: Dict[str, int] = {}
        for e in self._entries.values():
            if e.is_spendable(now):
                totals[e.user_id] = totals.get(e.user_id, 0) + e.remaining
        ranked = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))[:int(limit)]
        return [UserBalance(user_id=u, balance=b) for u, b in ranked]

    async def expire_grants(self, *, now: datetime) -> int:
        await _round_trip()
        n = 0
        for entry_id, e in list(self._entries.items()):
            lock = self._row_locks.get(entry_id)
            if lock is not None and lock.locked():
                # SKIP LOCKED: an open transaction owns this row
                continue
            if e.kind == EntryKind.GRANT and e.status == EntryStatus.ACTIVE and e.is_expired(now):
                self._entries[entry_id] = e.with_changes(status=EntryStatus.EXPIRED, updated_at=now)
                n += 1
        return n
