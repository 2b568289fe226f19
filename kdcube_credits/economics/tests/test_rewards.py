# SPDX-License-Identifier: MIT

import logging
from datetime import datetime, timezone

import pytest

from kdcube_credits.economics.errors import InvalidReferral, InvalidTimestamp
from kdcube_credits.economics.models import EntryKind, Scene
from kdcube_credits.economics.rewards import ReferralRewardDistributor
from kdcube_credits.economics.tests.helpers import T0, at, make_ledger


def _distributor(**kw):
    ledger = make_ledger()
    return ledger, ReferralRewardDistributor(ledger, **kw)


@pytest.mark.asyncio
async def test_referral_pays_both_sides_with_one_month_expiry():
    ledger, rewards = _distributor(reward_amount=100)

    outcome = await rewards.reward_referral("abc123", "inviter", "invitee")

    assert outcome.accepted and outcome.action == "granted"
    assert outcome.referral_code == "ABC123"
    assert outcome.inviter_amount == 100 and not outcome.inviter_capped
    assert await ledger.get_balance("invitee") == 100
    assert await ledger.get_balance("inviter") == 100

    expected_expiry = datetime(2025, 4, 10, 23, 59, 59, 999000, tzinfo=timezone.utc)
    assert outcome.invitee_entry.expires_at == expected_expiry
    assert outcome.inviter_entry.expires_at == expected_expiry
    assert outcome.invitee_entry.scene == Scene.AWARD
    assert outcome.invitee_entry.metadata["role"] == "invitee"
    assert outcome.inviter_entry.metadata["role"] == "inviter"


@pytest.mark.asyncio
async def test_referral_is_paid_once_per_invitee():
    ledger, rewards = _distributor()

    await rewards.reward_referral("abc123", "inviter", "invitee")
    again = await rewards.reward_referral("ABC123 ", "inviter", "invitee")

    assert again.accepted and again.action == "duplicate"
    assert again.invitee_entry is None and again.inviter_entry is None
    assert await ledger.get_balance("invitee") == 100
    assert await ledger.get_balance("inviter") == 100
    assert await ledger.count_entries(kind=EntryKind.GRANT) == 2


@pytest.mark.asyncio
async def test_self_referral_is_rejected():
    ledger, rewards = _distributor()

    with pytest.raises(InvalidReferral):
        await rewards.reward_referral("abc123", "same", "same")
    with pytest.raises(InvalidReferral):
        await rewards.reward_referral("  ", "inviter", "invitee")

    assert await ledger.count_entries() == 0


@pytest.mark.asyncio
async def test_monthly_cap_skip_policy(caplog):
    ledger, rewards = _distributor(reward_amount=100, monthly_cap=250, cap_policy="skip")

    await rewards.reward_referral("code", "inviter", "n1")
    await rewards.reward_referral("code", "inviter", "n2")
    with caplog.at_level(logging.WARNING, logger="kdcube_credits.economics.rewards"):
        third = await rewards.reward_referral("code", "inviter", "n3")

    assert third.accepted and third.action == "granted"
    assert third.inviter_capped and third.inviter_amount == 0
    assert third.inviter_entry is None
    assert await ledger.get_balance("n3") == 100
    assert await ledger.get_balance("inviter") == 200
    assert any("cap" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_monthly_cap_clip_policy():
    ledger, rewards = _distributor(reward_amount=100, monthly_cap=250, cap_policy="clip")

    for n in ("n1", "n2", "n3", "n4"):
        await rewards.reward_referral("code", "inviter", n)

    assert await ledger.get_balance("inviter") == 250
    assert all([await ledger.get_balance(n) == 100 for n in ("n1", "n2", "n3", "n4")])


@pytest.mark.asyncio
async def test_monthly_cap_resets_next_month():
    ledger, rewards = _distributor(reward_amount=100, monthly_cap=100)

    await rewards.reward_referral("code", "inviter", "n1", now=T0)
    capped = await rewards.reward_referral("code", "inviter", "n2", now=at(days=1))
    next_month = await rewards.reward_referral("code", "inviter", "n3", now=datetime(2025, 4, 1, tzinfo=timezone.utc))

    assert capped.inviter_capped
    assert not next_month.inviter_capped and next_month.inviter_amount == 100


@pytest.mark.asyncio
async def test_spending_invitee_rewards_does_not_free_inviter_cap():
    ledger, rewards = _distributor(reward_amount=100, monthly_cap=100)

    await rewards.reward_referral("code", "inviter", "n1")
    await ledger.consume("inviter", 100)
    capped = await rewards.reward_referral("code", "inviter", "n2")

    assert capped.inviter_capped and capped.inviter_amount == 0


@pytest.mark.asyncio
async def test_referral_time_comes_from_the_ledger_clock():
    ledger, rewards = _distributor()
    assert ledger.now() == T0

    outcome = await rewards.reward_referral("code", "inviter", "n1")
    assert outcome.invitee_entry.created_at == T0

    with pytest.raises(InvalidTimestamp):
        await rewards.reward_referral("code", "inviter", "n2", now=datetime(2025, 3, 10))
