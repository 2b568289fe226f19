# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

from kdcube_credits.economics.errors import (
    CreditLedgerError,
    InvalidAmount,
    InsufficientCredits,
    TooManyFragments,
    NotFound,
    AlreadyReversed,
    LedgerConflict,
    LedgerIntegrityError,
    InvalidReferral,
    InvalidTimestamp,
)
from kdcube_credits.economics.models import LedgerEntry, ConsumedItem, EntryKind, EntryStatus, Scene, UserBalance
from kdcube_credits.economics.expiration import compute_expiration, end_of_month, add_one_month
from kdcube_credits.economics.store import LedgerStore, InMemoryLedgerStore
from kdcube_credits.economics.ledger import CreditLedger
from kdcube_credits.economics.rewards import ReferralRewardDistributor, RewardOutcome
