"""ResumeCache: short-TTL, in-process store for the second (scope) human gate.

NON-DURABLE. Entries vanish on restart, on TTL expiry and on eviction, so
nothing that must survive a process boundary may depend on it. The durable
CheckpointStore remains the source of truth for paused runs.

Bounded map with eviction of the oldest entry when full, plus an optional
background sweep task that purges expired entries.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from typing import Any

logger = logging.getLogger(__name__)


class ResumeCache:
    def __init__(self, ttl_seconds: float = 900.0, max_entries: int = 100, clock=time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, dict[str, Any]]] = OrderedDict()
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def make_token(run_id: str, gate_id: str) -> str:
        return json.dumps({"run_id": run_id, "gate_id": gate_id, "created_at": time.time()})

    @staticmethod
    def parse_token(token: str) -> tuple[str, str] | None:
        """(run_id, gate_id) or None for a malformed token."""
        try:
            data = json.loads(token)
            return str(data["run_id"]), str(data["gate_id"])
        except (ValueError, KeyError, TypeError):
            return None

    def put(self, token: str, value: dict[str, Any]) -> None:
        self.sweep()
        if token in self._entries:
            del self._entries[token]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
            logger.debug("Resume cache full, evicted oldest entry")
        self._entries[token] = (self._clock(), value)

    def get(self, token: str) -> dict[str, Any] | None:
        entry = self._entries.get(token)
        if entry is None:
            return None
        created, value = entry
        if self._clock() - created > self.ttl_seconds:
            del self._entries[token]
            return None
        return value

    def pop(self, token: str) -> dict[str, Any] | None:
        value = self.get(token)
        if value is not None:
            del self._entries[token]
        return value

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [t for t, (created, _) in self._entries.items() if now - created > self.ttl_seconds]
        for token in expired:
            del self._entries[token]
        return len(expired)

    # === Background sweep ===

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("Resume cache sweep removed %d expired entries", removed)

    def start_sweeper(self, interval_seconds: float = 60.0) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval_seconds))

    def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
