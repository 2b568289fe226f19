# SPDX-License-Identifier: MIT

import pytest

from kdcube_credits.economics.errors import AlreadyReversed, NotFound, LedgerIntegrityError
from kdcube_credits.economics.models import EntryKind, EntryStatus, Scene
from kdcube_credits.economics.tests.helpers import at, make_ledger


@pytest.mark.asyncio
async def test_exact_refund_restores_original_grants():
    ledger = make_ledger()
    g1 = await ledger.grant("u1", 50, Scene.PAYMENT, expires_at=at(days=1))
    g2 = await ledger.grant("u1", 50, Scene.PAYMENT, expires_at=at(days=10))
    consumed = await ledger.consume("u1", 60)

    reversed_entry = await ledger.refund_exact(consumed.id)

    assert reversed_entry.status == EntryStatus.DELETED
    assert (await ledger.get_entry(consumed.id)).status == EntryStatus.DELETED
    assert (await ledger.get_entry(g1.id)).remaining == 50
    assert (await ledger.get_entry(g2.id)).remaining == 50
    assert await ledger.get_balance("u1") == 100
    # no new entry is written for an exact reversal
    assert await ledger.count_entries(user_id="u1") == 3


@pytest.mark.asyncio
async def test_exact_refund_twice_is_rejected():
    ledger = make_ledger()
    await ledger.grant("u1", 20, Scene.PAYMENT)
    consumed = await ledger.consume("u1", 5)

    await ledger.refund_exact(consumed.id)
    with pytest.raises(AlreadyReversed):
        await ledger.refund_exact(consumed.id)

    assert await ledger.get_balance("u1") == 20


@pytest.mark.asyncio
async def test_exact_refund_needs_a_consume_entry():
    ledger = make_ledger()
    g = await ledger.grant("u1", 20, Scene.PAYMENT)

    with pytest.raises(NotFound):
        await ledger.refund_exact("no-such-entry")
    with pytest.raises(NotFound):
        await ledger.refund_exact(g.id)


@pytest.mark.asyncio
async def test_exact_refund_into_expired_grant_keeps_it_expired():
    ledger = make_ledger()
    g = await ledger.grant("u1", 40, Scene.PAYMENT, expires_at=at(hours=1))
    consumed = await ledger.consume("u1", 25)

    later = at(hours=3)
    await ledger.refund_exact(consumed.id, now=later)

    assert (await ledger.get_entry(g.id)).remaining == 40
    assert await ledger.get_balance("u1", now=later) == 0


@pytest.mark.asyncio
async def test_exact_refund_aborts_when_grant_would_overflow():
    ledger = make_ledger()
    g = await ledger.grant("u1", 30, Scene.PAYMENT)
    consumed = await ledger.consume("u1", 10)

    # corrupt the grant: remaining already back at its amount
    store = ledger.store
    store._entries[g.id] = store._entries[g.id].with_changes(remaining=30)

    with pytest.raises(LedgerIntegrityError):
        await ledger.refund_exact(consumed.id)

    assert (await ledger.get_entry(consumed.id)).status == EntryStatus.ACTIVE
    assert (await ledger.get_entry(g.id)).remaining == 30


@pytest.mark.asyncio
async def test_simple_refund_is_a_new_refund_grant():
    ledger = make_ledger()
    await ledger.grant("u1", 10, Scene.PAYMENT, expires_at=at(days=1))
    consumed = await ledger.consume("u1", 10)

    refund = await ledger.refund_simple("u1", 10, metadata={"consume_entry_id": consumed.id})

    assert refund.kind == EntryKind.GRANT
    assert refund.scene == Scene.REFUND
    assert refund.description == "Refund for failed generation"
    assert refund.expires_at is None
    assert refund.remaining == 10
    assert refund.metadata["consume_entry_id"] == consumed.id
    # the original consume stays on the books
    assert (await ledger.get_entry(consumed.id)).status == EntryStatus.ACTIVE
    assert await ledger.get_balance("u1", now=at(days=2)) == 10
