# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/pg_store.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Tuple, AsyncIterator

import asyncpg

from kdcube_credits.economics.errors import LedgerConflict
from kdcube_credits.economics.models import LedgerEntry, EntryKind, EntryStatus, UserBalance, fifo_key
from kdcube_credits.economics.store import LedgerStore, LedgerTx

logger = logging.getLogger(__name__)

# Lock timeout (55P03), deadlock (40P01), serialization failure (40001), statement timeout (57014)
_RETRYABLE = (
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.QueryCanceledError,
)

_COLUMNS = (
    "id, user_id, transaction_no, kind, scene, amount, remaining, status, "
    "description, metadata, consumed_detail, expires_at, created_at, updated_at"
)

_SPENDABLE = (
    "kind='grant' AND status='active' AND remaining > 0 "
    "AND (expires_at IS NULL OR expires_at > {now})"
)


def _rows(rows) -> List[LedgerEntry]:
    return [LedgerEntry.from_row(r) for r in rows]


def _where(user_id, kind, status) -> Tuple[str, list]:
    clauses, args = [], []
    if user_id is not None:
        args.append(user_id)
        clauses.append(f"user_id=${len(args)}")
    if kind is not None:
        args.append(EntryKind(kind).value)
        clauses.append(f"kind=${len(args)}")
    if status is not None:
        args.append(EntryStatus(status).value)
        clauses.append(f"status=${len(args)}")
    return (("WHERE " + " AND ".join(clauses)) if clauses else ""), args


def _affected(status_line: str) -> int:
    # asyncpg returns e.g. "UPDATE 3"
    try:
        return int(str(status_line).split()[-1])
    except (ValueError, IndexError):
        return 0


class _PgTx(LedgerTx):
    def __init__(self, table: str, conn: asyncpg.Connection):
        self.table = table
        self.conn = conn

    async def sum_balance(self, user_id: str, *, now: datetime) -> int:
        v = await self.conn.fetchval(f"""
            SELECT COALESCE(SUM(remaining), 0)
            FROM {self.table}
            WHERE user_id=$1 AND {_SPENDABLE.format(now="$2")}
        """, user_id, now)
        return int(v or 0)

    async def lock_eligible_grants(self, user_id: str, *, now: datetime, limit: int) -> List[LedgerEntry]:
        # pick the FIFO head, lock it in id order (same order as refund_exact), re-sort FIFO
        rows = await self.conn.fetch(f"""
            SELECT {_COLUMNS}
            FROM {self.table}
            WHERE id IN (
                SELECT id FROM {self.table}
                WHERE user_id=$1 AND {_SPENDABLE.format(now="$2")}
                ORDER BY expires_at ASC NULLS LAST, created_at ASC, id ASC
                LIMIT $3
            )
              AND {_SPENDABLE.format(now="$2")}
            ORDER BY id
            FOR UPDATE
        """, user_id, now, int(limit))
        return sorted(_rows(rows), key=fifo_key)

    async def set_remaining_many(self, updates: Iterable[Tuple[str, int]], *, now: datetime) -> None:
        args = [(entry_id, int(remaining), now) for entry_id, remaining in updates]
        if not args:
            return
        await self.conn.executemany(f"""
            UPDATE {self.table}
            SET remaining=$2, updated_at=$3
            WHERE id=$1 AND kind='grant'
        """, args)

    async def insert_entry(self, entry: LedgerEntry) -> Optional[LedgerEntry]:
        row = await self.conn.fetchrow(f"""
            INSERT INTO {self.table} ({_COLUMNS})
            VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10::jsonb,$11::jsonb,$12,$13,$14)
            ON CONFLICT (transaction_no) DO NOTHING
            RETURNING {_COLUMNS}
        """,
                                       entry.id, entry.user_id, entry.transaction_no,
                                       entry.kind.value, entry.scene, int(entry.amount), int(entry.remaining),
                                       entry.status.value, entry.description,
                                       dict(entry.metadata or {}),
                                       [x.to_dict() for x in entry.consumed_detail],
                                       entry.expires_at, entry.created_at, entry.updated_at)
        return LedgerEntry.from_row(row) if row else None

    async def get_by_transaction_no(self, transaction_no: str) -> Optional[LedgerEntry]:
        row = await self.conn.fetchrow(
            f"SELECT {_COLUMNS} FROM {self.table} WHERE transaction_no=$1", transaction_no
        )
        return LedgerEntry.from_row(row) if row else None

    async def lock_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        row = await self.conn.fetchrow(
            f"SELECT {_COLUMNS} FROM {self.table} WHERE id=$1 FOR UPDATE", entry_id
        )
        return LedgerEntry.from_row(row) if row else None

    async def lock_entries(self, entry_ids: Iterable[str]) -> Dict[str, LedgerEntry]:
        ids = sorted(set(entry_ids))
        if not ids:
            return {}
        rows = await self.conn.fetch(f"""
            SELECT {_COLUMNS}
            FROM {self.table}
            WHERE id = ANY($1::text[])
            ORDER BY id
            FOR UPDATE
        """, ids)
        return {e.id: e for e in _rows(rows)}

    async def restore_remaining(self, entry_id: str, amount: int, *, now: datetime) -> bool:
        row = await self.conn.fetchrow(f"""
            UPDATE {self.table}
            SET remaining = remaining + $2, updated_at=$3
            WHERE id=$1 AND kind='grant' AND remaining + $2 <= amount
            RETURNING id
        """, entry_id, int(amount), now)
        return row is not None

    async def set_status(self, entry_id: str, status: EntryStatus, *, now: datetime) -> None:
        await self.conn.execute(
            f"UPDATE {self.table} SET status=$2, updated_at=$3 WHERE id=$1",
            entry_id, EntryStatus(status).value, now,
        )

    async def find_entries(self, *, user_id=None, kind=None, scene=None, metadata_match=None, limit: int = 1):
        where, args = _where(user_id, kind, None)
        clauses = [where[len("WHERE "):]] if where else []
        if scene is not None:
            args.append(scene)
            clauses.append(f"scene=${len(args)}")
        if metadata_match:
            args.append(dict(metadata_match))
            clauses.append(f"metadata @> ${len(args)}::jsonb")
        args.append(int(limit))
        cond = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = await self.conn.fetch(f"""
            SELECT {_COLUMNS}
            FROM {self.table}
            {cond}
            ORDER BY created_at DESC, id DESC
            LIMIT ${len(args)}
        """, *args)
        return _rows(rows)

    async def sum_granted(self, *, user_id, scene, since, until, metadata_match=None) -> int:
        v = await self.conn.fetchval(f"""
            SELECT COALESCE(SUM(amount), 0)
            FROM {self.table}
            WHERE user_id=$1 AND kind='grant' AND scene=$2
              AND status <> 'deleted'
              AND created_at >= $3 AND created_at < $4
              AND metadata @> $5::jsonb
        """, user_id, scene, since, until, dict(metadata_match or {}))
        return int(v or 0)


class PgLedgerStore(LedgerStore):
    """
    PostgreSQL ledger (asyncpg). One table, `<schema>.credit_ledger`.

    Transactions run READ COMMITTED with `SET LOCAL lock_timeout`; a user-scoped
    transaction additionally takes `pg_advisory_xact_lock` on the user so that the
    balance check and the debit see the same state.
    """
    TABLE = "credit_ledger"

    def __init__(
            self,
            pg_pool: Optional[asyncpg.Pool] = None,
            *,
            schema: str = "kdcube_credits",
            lock_timeout_ms: int = 5000,
    ):
        self._pg_pool = pg_pool
        self._owns_pool = pg_pool is None
        self.schema = schema
        self.lock_timeout_ms = int(lock_timeout_ms)

    @property
    def table(self) -> str:
        return f"{self.schema}.{self.TABLE}"

    async def init(self) -> None:
        if not self._pg_pool:
            from kdcube_credits.infra.relational.psql.pool import create_pg_pool
            self._pg_pool = await create_pg_pool()
            self._owns_pool = True

    async def close(self) -> None:
        if self._owns_pool and self._pg_pool:
            await self._pg_pool.close()

    def _pool(self) -> asyncpg.Pool:
        if not self._pg_pool:
            raise RuntimeError("PostgreSQL pool not initialized")
        return self._pg_pool

    async def ensure_schema(self) -> None:
        # rely on external DDL execution; this makes sure the table exists in dev
        t = self.table
        ddl = f"""
        CREATE SCHEMA IF NOT EXISTS {self.schema};

        CREATE TABLE IF NOT EXISTS {t} (
          id              TEXT PRIMARY KEY,
          user_id         TEXT NOT NULL,
          transaction_no  TEXT NOT NULL,
          kind            TEXT NOT NULL CHECK (kind IN ('grant', 'consume')),
          scene           TEXT,
          amount          BIGINT NOT NULL CHECK (amount <> 0),
          remaining       BIGINT NOT NULL DEFAULT 0,
          status          TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'expired', 'deleted')),
          description     TEXT,
          metadata        JSONB NOT NULL DEFAULT '{{}}'::jsonb,
          consumed_detail JSONB NOT NULL DEFAULT '[]'::jsonb,
          expires_at      TIMESTAMPTZ,
          created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
          CONSTRAINT credit_ledger_remaining_chk CHECK (
            (kind = 'grant'   AND amount > 0 AND remaining >= 0 AND remaining <= amount)
            OR
            (kind = 'consume' AND amount < 0 AND remaining = 0)
          )
        );

        CREATE UNIQUE INDEX IF NOT EXISTS credit_ledger_transaction_no_uq
          ON {t} (transaction_no);
        CREATE INDEX IF NOT EXISTS credit_ledger_user_created_idx
          ON {t} (user_id, created_at);
        CREATE INDEX IF NOT EXISTS credit_ledger_user_remaining_expires_idx
          ON {t} (user_id, remaining, expires_at);
        CREATE INDEX IF NOT EXISTS credit_ledger_metadata_gin
          ON {t} USING GIN (metadata jsonb_path_ops)
        """
        async with self._pool().acquire() as con:
            for stmt in [s.strip() for s in ddl.split(";") if s.strip()]:
                await con.execute(stmt)

    @asynccontextmanager
    async def transaction(self, *, user_id: Optional[str] = None) -> AsyncIterator[LedgerTx]:
        async with self._pool().acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(f"SET LOCAL lock_timeout = '{self.lock_timeout_ms}ms'")
                    if user_id is not None:
                        await conn.execute(
                            "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))",
                            f"{self.table}:{user_id}",
                        )
                    yield _PgTx(self.table, conn)
            except _RETRYABLE as e:
                logger.warning("Ledger transaction conflict (user=%s): %s", user_id, e)
                raise LedgerConflict(
                    f"ledger transaction conflict: {e.__class__.__name__}",
                    data={"user_id": user_id, "sqlstate": getattr(e, "sqlstate", None)},
                ) from e

    # ---------- snapshot reads ----------
    async def sum_balance(self, user_id: str, *, now: datetime) -> int:
        async with self._pool().acquire() as conn:
            return await _PgTx(self.table, conn).sum_balance(user_id, now=now)

    async def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        async with self._pool().acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM {self.table} WHERE id=$1", entry_id)
        return LedgerEntry.from_row(row) if row else None

    async def list_entries(self, *, user_id=None, kind=None, status=None, limit: int = 30, offset: int = 0):
        where, args = _where(user_id, kind, status)
        args += [int(limit), int(offset)]
        async with self._pool().acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {_COLUMNS}
                FROM {self.table}
                {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ${len(args) - 1} OFFSET ${len(args)}
            """, *args)
        return _rows(rows)

    async def count_entries(self, *, user_id=None, kind=None, status=None) -> int:
        where, args = _where(user_id, kind, status)
        async with self._pool().acquire() as conn:
            v = await conn.fetchval(f"SELECT COUNT(*) FROM {self.table} {where}", *args)
        return int(v or 0)

    async def top_balances(self, *, limit: int, now: datetime) -> List[UserBalance]:
        async with self._pool().acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT user_id, SUM(remaining) AS balance
                FROM {self.table}
                WHERE {_SPENDABLE.format(now="$1")}
                GROUP BY user_id
                ORDER BY SUM(remaining) DESC, user_id ASC
                LIMIT $2
            """, now, int(limit))
        return [UserBalance(user_id=r["user_id"], balance=int(r["balance"] or 0)) for r in rows]

    async def expire_grants(self, *, now: datetime) -> int:
        async with self._pool().acquire() as conn:
            res = await conn.execute(f"""
                UPDATE {self.table}
                SET status='expired', updated_at=$1
                WHERE id IN (
                    SELECT id FROM {self.table}
                    WHERE kind='grant' AND status='active'
                      AND expires_at IS NOT NULL AND expires_at <= $1
                    FOR UPDATE SKIP LOCKED
                )
            """, now)
        return _affected(res)
