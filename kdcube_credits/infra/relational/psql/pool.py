# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/infra/relational/psql/pool.py
from __future__ import annotations

import json
import logging
from typing import Optional

import asyncpg

from kdcube_credits.config import Settings, get_settings

logger = logging.getLogger(__name__)


async def _init_conn(conn: asyncpg.Connection):
    # Encode/decode json & jsonb as Python dicts automatically
    await conn.set_type_codec('json',  encoder=json.dumps, decoder=json.loads, schema='pg_catalog')
    await conn.set_type_codec('jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog')


async def create_pg_pool(settings: Optional[Settings] = None, **pool_kwargs) -> asyncpg.Pool:
    _settings = settings or get_settings()
    pool = await asyncpg.create_pool(
        host=_settings.PGHOST,
        port=_settings.PGPORT,
        user=_settings.PGUSER,
        password=_settings.PGPASSWORD,
        database=_settings.PGDATABASE,
        ssl=_settings.PGSSL,
        init=_init_conn,
        **pool_kwargs,
    )
    logger.info("Created PostgreSQL pool %s:%s/%s", _settings.PGHOST, _settings.PGPORT, _settings.PGDATABASE)
    return pool
