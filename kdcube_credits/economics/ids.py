# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/ids.py
from __future__ import annotations

import os
import threading
import time
import uuid

# Snowflake layout: 41 bits ms since epoch | 10 bits worker | 12 bits sequence
_EPOCH_MS = 1704067200000  # 2024-01-01T00:00:00Z
_WORKER_BITS = 10
_SEQ_BITS = 12
_MAX_SEQ = (1 << _SEQ_BITS) - 1


def new_entry_id() -> str:
    return str(uuid.uuid4())


class SnowflakeGenerator:
    """Time-ordered 63-bit ids, unique per (worker_id, ms, sequence)."""

    def __init__(self, worker_id: int | None = None):
        if worker_id is None:
            worker_id = (os.getpid() ^ uuid.getnode()) & ((1 << _WORKER_BITS) - 1)
        self.worker_id = int(worker_id) & ((1 << _WORKER_BITS) - 1)
        self._lock = threading.Lock()
        self._last_ms = -1
        self._seq = 0

    def next_id(self) -> int:
        with self._lock:
            ms = int(time.time() * 1000)
            if ms < self._last_ms:
                # clock went backwards; stay on the last timestamp
                ms = self._last_ms
            if ms == self._last_ms:
                self._seq = (self._seq + 1) & _MAX_SEQ
                if self._seq == 0:
                    while ms <= self._last_ms:
                        ms = int(time.time() * 1000)
            else:
                self._seq = 0
            self._last_ms = ms
            return ((ms - _EPOCH_MS) << (_WORKER_BITS + _SEQ_BITS)) | (self.worker_id << _SEQ_BITS) | self._seq


_default = SnowflakeGenerator()


def new_transaction_no() -> str:
    return str(_default.next_id())
