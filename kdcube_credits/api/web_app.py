# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/api/web_app.py
"""
FastAPI credits service: ledger store + optional Redis balance cache, mounted under /credits.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv())

import kdcube_credits.utils.logging_config as logging_config
logging_config.configure_logging()

from kdcube_credits.config import Settings, get_settings
from kdcube_credits.api.credits import mount_credits_router
from kdcube_credits.economics.balance_cache import BalanceCache
from kdcube_credits.economics.ledger import CreditLedger
from kdcube_credits.economics.rewards import ReferralRewardDistributor
from kdcube_credits.economics.store import LedgerStore, InMemoryLedgerStore

logger = logging.getLogger(__name__)


async def open_store(settings: Settings) -> LedgerStore:
    if settings.LEDGER_BACKEND == "memory":
        logger.warning("Using in-memory credit ledger; balances are lost on restart")
        store = InMemoryLedgerStore(lock_timeout_ms=settings.LOCK_TIMEOUT_MS)
        await store.init()
        return store

    from kdcube_credits.economics.pg_store import PgLedgerStore
    from kdcube_credits.infra.relational.psql.pool import create_pg_pool

    pool = await create_pg_pool(settings)
    store = PgLedgerStore(pool, schema=settings.LEDGER_SCHEMA, lock_timeout_ms=settings.LOCK_TIMEOUT_MS)
    await store.init()
    await store.ensure_schema()
    return store


def create_app(settings: Optional[Settings] = None, store: Optional[LedgerStore] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Credits service starting on port {settings.PORT} (backend={settings.LEDGER_BACKEND})")

        app.state.store = store or await open_store(settings)

        balance_cache = None
        if settings.REDIS_URL:
            from kdcube_credits.infra.redis.client import get_async_redis_client
            balance_cache = BalanceCache(
                get_async_redis_client(settings.REDIS_URL),
                ttl=settings.BALANCE_CACHE_TTL,
                tenant=settings.TENANT,
                project=settings.PROJECT,
            )

        app.state.ledger = CreditLedger.from_settings(app.state.store, settings, balance_cache=balance_cache)
        app.state.rewards = ReferralRewardDistributor.from_settings(app.state.ledger, settings)

        yield

        # Shutdown
        if store is None:
            await app.state.store.close()
        if balance_cache is not None:
            from kdcube_credits.infra.redis.client import close_async_redis_clients
            await close_async_redis_clients()
        logger.info("Credits service stopped")

    app = FastAPI(
        title="Credits API",
        description="Prepaid credit ledger: grants, FIFO consumption, refunds, referral rewards",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    mount_credits_router(app)
    return app


app = create_app()

# ================================
# RUN APPLICATION
# ================================

def main():
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=get_settings().PORT,
        log_config=None,   # logging_config owns the handlers
        log_level=None,
    )


if __name__ == "__main__":
    main()
