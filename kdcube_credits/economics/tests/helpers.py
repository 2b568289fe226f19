# SPDX-License-Identifier: MIT

from datetime import datetime, timedelta, timezone

from kdcube_credits.economics.ledger import CreditLedger
from kdcube_credits.economics.store import InMemoryLedgerStore

T0 = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def at(**delta) -> datetime:
    return T0 + timedelta(**delta)


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.data = {}
        self.ttls = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = str(value)
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0


def make_ledger(*, page_size: int = 1000, max_pages: int = 10, balance_cache=None,
                lock_timeout_ms: int = 5000) -> CreditLedger:
    store = InMemoryLedgerStore(lock_timeout_ms=lock_timeout_ms)
    return CreditLedger(
        store,
        page_size=page_size,
        max_pages=max_pages,
        balance_cache=balance_cache,
        clock=lambda: T0,
    )
