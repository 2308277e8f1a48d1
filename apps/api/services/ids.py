"""Snowflake-style transaction ids for ledger entries."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from config import settings


# 2024-01-01T00:00:00Z
EPOCH_MS = 1704067200000
NODE_BITS = 10
SEQUENCE_BITS = 12
MAX_NODE_ID = (1 << NODE_BITS) - 1
SEQUENCE_MASK = (1 << SEQUENCE_BITS) - 1


class SnowflakeGenerator:
    """Time-ordered 63-bit ids: milliseconds since EPOCH_MS, node id, per-ms sequence."""

    def __init__(self, node_id: int, clock: Callable[[], float] = time.time) -> None:
        if not 0 <= node_id <= MAX_NODE_ID:
            raise ValueError(f"node_id must be within 0..{MAX_NODE_ID}")
        self.node_id = node_id
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000) - EPOCH_MS

    def next_int(self) -> int:
        with self._lock:
            now_ms = self._now_ms()
            # Never step backwards if the wall clock does.
            if now_ms < self._last_ms:
                now_ms = self._last_ms
            if now_ms == self._last_ms:
                self._sequence = (self._sequence + 1) & SEQUENCE_MASK
                if self._sequence == 0:
                    while now_ms <= self._last_ms:
                        now_ms = max(self._now_ms(), self._last_ms + 1)
            else:
                self._sequence = 0
            self._last_ms = now_ms
            return (now_ms << (NODE_BITS + SEQUENCE_BITS)) | (self.node_id << SEQUENCE_BITS) | self._sequence

    def next_id(self) -> str:
        # Fixed width so string order in the database matches numeric order.
        return f"{self.next_int():019d}"


_default_generator: Optional[SnowflakeGenerator] = None
_default_lock = threading.Lock()


def new_transaction_id() -> str:
    """Next id from the process-wide generator for NODE_ID."""
    global _default_generator
    if _default_generator is None:
        with _default_lock:
            if _default_generator is None:
                _default_generator = SnowflakeGenerator(int(settings.NODE_ID) & MAX_NODE_ID)
    return _default_generator.next_id()
