# SPDX-License-Identifier: MIT

import asyncio

import pytest

from kdcube_credits.economics.errors import InsufficientCredits, LedgerConflict
from kdcube_credits.economics.models import EntryKind, EntryStatus, Scene
from kdcube_credits.economics.tests.helpers import at, make_ledger


@pytest.mark.asyncio
async def test_concurrent_consumes_never_overdraw():
    ledger = make_ledger(page_size=3)
    for i in range(10):
        await ledger.grant("u1", 10, Scene.PAYMENT, expires_at=at(days=i + 1))

    results = await asyncio.gather(
        *[ledger.consume("u1", 10) for _ in range(20)],
        return_exceptions=True,
    )

    ok = [r for r in results if not isinstance(r, BaseException)]
    short = [r for r in results if isinstance(r, InsufficientCredits)]
    assert len(ok) == 10
    assert len(short) == 10
    assert await ledger.get_balance("u1") == 0

    drawn = {}
    for entry in ok:
        for item in entry.consumed_detail:
            drawn[item.grant_entry_id] = drawn.get(item.grant_entry_id, 0) + item.amount_drawn
    assert all(v == 10 for v in drawn.values())
    assert len(drawn) == 10


@pytest.mark.asyncio
async def test_concurrent_consumes_for_different_users_are_independent():
    ledger = make_ledger()
    users = [f"u{i}" for i in range(8)]
    for u in users:
        await ledger.grant(u, 30, Scene.PAYMENT)

    await asyncio.gather(*[ledger.consume(u, 30) for u in users])

    for u in users:
        assert await ledger.get_balance(u) == 0


@pytest.mark.asyncio
async def test_consume_and_exact_refund_interleave_consistently():
    ledger = make_ledger()
    await ledger.grant("u1", 100, Scene.PAYMENT)
    first = await ledger.consume("u1", 40)

    results = await asyncio.gather(
        ledger.refund_exact(first.id),
        ledger.consume("u1", 50),
        ledger.consume("u1", 50),
        return_exceptions=True,
    )

    assert not any(isinstance(r, LedgerConflict) for r in results)
    consumes = await ledger.list_entries(user_id="u1", kind=EntryKind.CONSUME, status=EntryStatus.ACTIVE)
    live = sum(-c.amount for c in consumes)
    assert await ledger.get_balance("u1") == 100 - live
    assert await ledger.get_balance("u1") >= 0


@pytest.mark.asyncio
async def test_lock_wait_timeout_raises_conflict():
    ledger = make_ledger(lock_timeout_ms=50)
    await ledger.grant("u1", 10, Scene.PAYMENT)

    async with ledger.store.transaction(user_id="u1"):
        with pytest.raises(LedgerConflict) as ei:
            await ledger.consume("u1", 5)

    assert ei.value.retryable is True
    assert await ledger.get_balance("u1") == 10
    # the lock is free again once the holder commits
    await ledger.consume("u1", 5)
    assert await ledger.get_balance("u1") == 5
