# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/rewards.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Literal

from kdcube_credits.economics.errors import InvalidReferral, InvalidAmount
from kdcube_credits.economics.expiration import add_one_month, end_of_day, month_window, require_aware
from kdcube_credits.economics.ledger import CreditLedger
from kdcube_credits.economics.models import LedgerEntry, EntryKind, Scene

logger = logging.getLogger(__name__)

CapPolicy = Literal["skip", "clip"]


@dataclass(frozen=True)
class RewardOutcome:
    accepted: bool
    action: str                      # "granted" | "duplicate"
    referral_code: str
    inviter_id: str
    invitee_id: str
    invitee_entry: Optional[LedgerEntry] = None
    inviter_entry: Optional[LedgerEntry] = None
    inviter_amount: int = 0
    inviter_capped: bool = False

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "action": self.action,
            "referral_code": self.referral_code,
            "inviter_id": self.inviter_id,
            "invitee_id": self.invitee_id,
            "invitee_entry": self.invitee_entry.to_dict() if self.invitee_entry else None,
            "inviter_entry": self.inviter_entry.to_dict() if self.inviter_entry else None,
            "inviter_amount": self.inviter_amount,
            "inviter_capped": self.inviter_capped,
        }


class ReferralRewardDistributor:
    """
    Pays both sides of an accepted referral.

      - invitee always receives `reward_amount`
      - inviter receives `reward_amount` while the calendar-month (UTC) total of inviter
        rewards stays within `monthly_cap`; past it, `skip` pays nothing and `clip`
        pays the remaining headroom
      - one (referral_code, invitee) pairing pays at most once
      - reward credits expire at the end of the day one month after the referral
    """

    def __init__(
            self,
            ledger: CreditLedger,
            *,
            reward_amount: int = 100,
            monthly_cap: Optional[int] = 1000,
            cap_policy: CapPolicy = "skip",
    ):
        if isinstance(reward_amount, bool) or not isinstance(reward_amount, int) or reward_amount <= 0:
            raise InvalidAmount(reward_amount, op="reward")
        if cap_policy not in ("skip", "clip"):
            raise ValueError(f"unknown cap policy: {cap_policy!r}")
        self.ledger = ledger
        self.reward_amount = reward_amount
        self.monthly_cap = monthly_cap if monthly_cap and monthly_cap > 0 else None
        self.cap_policy = cap_policy

    @classmethod
    def from_settings(cls, ledger: CreditLedger, settings=None) -> "ReferralRewardDistributor":
        from kdcube_credits.config import get_settings
        s = settings or get_settings()
        return cls(
            ledger,
            reward_amount=s.REWARD_AMOUNT,
            monthly_cap=s.REWARD_MONTHLY_CAP,
            cap_policy=s.REWARD_CAP_POLICY,
        )

    def _inviter_amount(self, already: int) -> int:
        if self.monthly_cap is None or already + self.reward_amount <= self.monthly_cap:
            return self.reward_amount
        if self.cap_policy == "clip":
            return max(self.monthly_cap - already, 0)
        return 0

    async def reward_referral(
            self,
            referral_code: str,
            inviter_id: str,
            invitee_id: str,
            *,
            now: Optional[datetime] = None,
    ) -> RewardOutcome:
        code = (referral_code or "").strip().upper()
        if not code:
            raise InvalidReferral("referral code is empty")
        if not inviter_id or not invitee_id:
            raise InvalidReferral("inviter and invitee are required",
                                  data={"inviter_id": inviter_id, "invitee_id": invitee_id})
        if inviter_id == invitee_id:
            raise InvalidReferral(f"user {invitee_id} cannot refer themselves",
                                  data={"referral_code": code, "user_id": invitee_id})

        now = require_aware(now, field="now") or self.ledger.now()
        expires_at = end_of_day(add_one_month(now))
        pairing = {"referral_code": code, "invitee_id": invitee_id}

        inviter_entry = None
        async with self.ledger.store.transaction(user_id=inviter_id) as tx:
            seen = await tx.find_entries(kind=EntryKind.GRANT, scene=Scene.AWARD, metadata_match=pairing, limit=1)
            if seen:
                logger.warning("Referral %s for invitee %s already rewarded (entry %s)", code, invitee_id, seen[0].id)
                return RewardOutcome(
                    accepted=True,
                    action="duplicate",
                    referral_code=code,
                    inviter_id=inviter_id,
                    invitee_id=invitee_id,
                )

            invitee_entry = await self.ledger.grant_with(
                tx,
                user_id=invitee_id,
                amount=self.reward_amount,
                scene=Scene.AWARD,
                now=now,
                expires_at=expires_at,
                description="Referral reward (invitee)",
                metadata={**pairing, "role": "invitee", "inviter_id": inviter_id},
                transaction_no=f"referral:{code}:{invitee_id}:invitee",
            )

            since, until = month_window(now)
            already = await tx.sum_granted(
                user_id=inviter_id, scene=Scene.AWARD, since=since, until=until,
                metadata_match={"role": "inviter"},
            )
            inviter_amount = self._inviter_amount(already)
            capped = inviter_amount < self.reward_amount
            if capped:
                logger.warning(
                    "Inviter %s monthly reward cap %s reached (already %d this month); policy=%s, paying %d",
                    inviter_id, self.monthly_cap, already, self.cap_policy, inviter_amount,
                )
            if inviter_amount > 0:
                inviter_entry = await self.ledger.grant_with(
                    tx,
                    user_id=inviter_id,
                    amount=inviter_amount,
                    scene=Scene.AWARD,
                    now=now,
                    expires_at=expires_at,
                    description="Referral reward (inviter)",
                    metadata={**pairing, "role": "inviter"},
                    transaction_no=f"referral:{code}:{invitee_id}:inviter",
                )

        logger.info(f"Referral {code}: invitee {invitee_id} +{self.reward_amount}, "
                    f"inviter {inviter_id} +{inviter_amount}")
        await self.ledger.invalidate_balance(invitee_id)
        await self.ledger.invalidate_balance(inviter_id)
        return RewardOutcome(
            accepted=True,
            action="granted",
            referral_code=code,
            inviter_id=inviter_id,
            invitee_id=invitee_id,
            invitee_entry=invitee_entry,
            inviter_entry=inviter_entry,
            inviter_amount=inviter_amount,
            inviter_capped=capped,
        )
