# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# logging_config.py
import logging
import os


def _to_level(name: str, default: int) -> int:
    try:
        return getattr(logging, (name or "").upper())
    except Exception:
        return default

def configure_logging():
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format = os.getenv("LOG_FORMAT",
                           "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    level = _to_level(log_level_name, logging.INFO)

    logging.basicConfig(level=level, format=log_format, force=True)
    logging.captureWarnings(True)

    desired_levels = {
        # uvicorn runs with log_config=None
        "uvicorn": os.getenv("UVICORN_LEVEL", log_level_name),
        "uvicorn.error": os.getenv("UVICORN_ERROR_LEVEL", log_level_name),
        "uvicorn.access": os.getenv("UVICORN_ACCESS_LEVEL", "WARNING"),
        "asyncio": os.getenv("ASYNCIO_LEVEL", "WARNING"),
        "asyncpg": os.getenv("ASYNCPG_LEVEL", "WARNING"),
        "redis": os.getenv("REDIS_LEVEL", "WARNING"),
        # per-request ledger chatter
        "kdcube_credits.economics": os.getenv("LEDGER_LOG_LEVEL", log_level_name),
    }

    for name, lvl_name in desired_levels.items():
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(_to_level(lvl_name, level))
