# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/infra/namespaces.py


def tp_prefix(tenant: str | None = None, project: str | None = None) -> str:
    from kdcube_credits.config import get_settings
    s = get_settings()
    t = tenant or s.TENANT
    p = project or s.PROJECT
    return f"{t}:{p}"


def ns_key(base: str, *, tenant: str | None = None, project: str | None = None) -> str:
    return f"{tp_prefix(tenant, project)}:{base}"


class REDIS:
    class CREDITS:
        # {tenant}:{project}:kdcube:credits:balance:{user_id}
        BALANCE_CACHE = "kdcube:credits:balance"
