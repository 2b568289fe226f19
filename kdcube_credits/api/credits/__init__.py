# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

"""
Credits API router.
File: api/credits/__init__.py
"""
from fastapi import FastAPI

from .credits import router as credits_router


def mount_credits_router(app: FastAPI):
    """
    Mount the credits router to the FastAPI app.
    Handlers read `ledger` and `rewards` from app.state.
    """
    credits_router.state = app.state
    app.include_router(
        credits_router,
        prefix="/credits",
        tags=["credits"],
    )
    return app


__all__ = ["mount_credits_router"]
