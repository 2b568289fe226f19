# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

"""
Shared async Redis client helpers. One client (pool) per (url, decode_responses, max_connections).
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.asyncio import Redis as AsyncRedis

logger = logging.getLogger(__name__)

_ASYNC_CLIENTS: Dict[Tuple[str, bool, Optional[int]], AsyncRedis] = {}


def _build_client_name(kind: str) -> str:
    base = os.getenv("SERVICE_NAME") or "kdcube-credits"
    instance = os.getenv("INSTANCE_ID") or os.getenv("HOSTNAME") or "local"
    raw = f"{base}:{instance}:{os.getpid()}:{kind}"
    return "".join(ch if (ch.isalnum() or ch in {"-", "_", ":", "."}) else "_" for ch in raw)[:128]


def _safe_redis_url(url: str) -> str:
    if not url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    if "@" not in rest:
        return url
    _, host = rest.split("@", 1)
    return f"{scheme}://***@{host}"


def get_async_redis_client(
    redis_url: str,
    *,
    decode_responses: bool = True,
    max_connections: Optional[int] = None,
) -> AsyncRedis:
    key = (redis_url, decode_responses, max_connections)
    client = _ASYNC_CLIENTS.get(key)
    if client is not None:
        return client

    kwargs = {"decode_responses": decode_responses}
    if max_connections is not None:
        kwargs["max_connections"] = max_connections
    kwargs["client_name"] = _build_client_name("async_decode" if decode_responses else "async")
    client = aioredis.from_url(redis_url, **kwargs)
    _ASYNC_CLIENTS[key] = client
    logger.info(
        "Created async Redis client pool url=%s decode_responses=%s max_connections=%s",
        _safe_redis_url(redis_url),
        decode_responses,
        max_connections,
    )
    return client


async def close_async_redis_clients() -> None:
    for client in list(_ASYNC_CLIENTS.values()):
        try:
            await client.aclose()
        except Exception:
            logger.debug("Failed to close async Redis client", exc_info=True)
    _ASYNC_CLIENTS.clear()
