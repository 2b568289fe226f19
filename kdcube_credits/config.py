# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/config.py
from __future__ import annotations
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    # API
    PORT: int = 8015
    CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    # Postgres
    PGHOST: str = Field(default="localhost", alias="POSTGRES_HOST")
    PGPORT: int = Field(default=5434, alias="POSTGRES_PORT")
    PGDATABASE: str = Field(default="postgres", alias="POSTGRES_DATABASE")
    PGUSER: str = Field(default="postgres", alias="POSTGRES_USER")
    PGPASSWORD: str = Field(default="postgres", alias="POSTGRES_PASSWORD")
    PGSSL: bool = Field(default=False, alias="POSTGRES_SSL")

    # Redis (balance display cache only; never consulted on the write path)
    REDIS_URL: str | None = None
    BALANCE_CACHE_TTL: int = 10

    TENANT: str = Field(default="home", alias="TENANT_ID")
    PROJECT: str = Field(default="default-project", alias="DEFAULT_PROJECT_NAME")

    # Ledger
    LEDGER_BACKEND: Literal["postgres", "memory"] = "postgres"
    LEDGER_SCHEMA: str = "kdcube_credits"
    CONSUME_PAGE_SIZE: int = 1000
    CONSUME_MAX_PAGES: int = 10
    LOCK_TIMEOUT_MS: int = 5000

    # Referral rewards
    REWARD_AMOUNT: int = 100
    REWARD_MONTHLY_CAP: int = 1000
    REWARD_CAP_POLICY: Literal["skip", "clip"] = "skip"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
