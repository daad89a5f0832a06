from __future__ import annotations

"""
Short-lived cache for fee and balance simulations.

Keys are the JSON serialization of the simulation parameters (sorted keys),
values live for ``ttl`` seconds and a background task sweeps stale entries
every ``ttl`` seconds.

There is no request coalescing: two concurrent misses on the same key both
run ``compute`` and the later write wins. Simulations are read-only RPC
calls, so the duplicate work costs latency, never correctness.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationCacheEntry:
    key: str
    value: Any
    inserted_at: float


def cache_key(params: Mapping[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)


class SimulationCache:
    def __init__(self, ttl: float = 60.0, *, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._entries: Dict[str, SimulationCacheEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def _is_live(self, entry: SimulationCacheEntry, now: float) -> bool:
        return now - entry.inserted_at <= self.ttl

    def get(self, params: Mapping[str, Any]) -> Optional[Any]:
        entry = self._entries.get(cache_key(params))
        if entry is None or not self._is_live(entry, self._clock()):
            return None
        return entry.value

    async def get_or_execute(self, params: Mapping[str, Any], compute: Callable[[], Awaitable[Any]]) -> Any:
        key = cache_key(params)
        entry = self._entries.get(key)
        if entry is not None and self._is_live(entry, self._clock()):
            return entry.value

        value = await compute()
        self._entries[key] = SimulationCacheEntry(key=key, value=value, inserted_at=self._clock())
        return value

    def sweep(self) -> int:
        now = self._clock()
        stale = [k for k, e in self._entries.items() if not self._is_live(e, now)]
        for k in stale:
            self._entries.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ttl)
            removed = self.sweep()
            if removed:
                log.debug("simulation cache swept %d entries", removed)

    async def destroy(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()
