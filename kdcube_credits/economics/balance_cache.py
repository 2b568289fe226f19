# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/balance_cache.py
from __future__ import annotations

import logging
from typing import Optional

from redis.asyncio import Redis

from kdcube_credits.infra.namespaces import REDIS, ns_key

logger = logging.getLogger(__name__)


class BalanceCache:
    """
    Short-lived display cache for balances. Never read on the write path:
    consume always re-derives the balance inside its transaction.
    Redis failures are logged and treated as a miss.
    """

    def __init__(
            self,
            redis: Redis,
            *,
            ttl: int = 10,
            tenant: Optional[str] = None,
            project: Optional[str] = None,
    ):
        self.r = redis
        self.ttl = int(ttl)
        self.tenant = tenant
        self.project = project

    def _key(self, user_id: str) -> str:
        return ns_key(f"{REDIS.CREDITS.BALANCE_CACHE}:{user_id}", tenant=self.tenant, project=self.project)

    async def get(self, user_id: str) -> Optional[int]:
        try:
            raw = await self.r.get(self._key(user_id))
        except Exception as e:
            logger.warning("Balance cache read failed for %s: %s", user_id, e)
            return None
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    async def set(self, user_id: str, balance: int) -> None:
        try:
            await self.r.set(self._key(user_id), int(balance), ex=self.ttl)
        except Exception as e:
            logger.warning("Balance cache write failed for %s: %s", user_id, e)

    async def invalidate(self, user_id: str) -> None:
        try:
            await self.r.delete(self._key(user_id))
        except Exception as e:
            logger.warning("Balance cache invalidate failed for %s: %s", user_id, e)
