from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Awaitable, Callable, Optional


def report_fingerprint(wallet: str, chain: str, window_start_ms: int, window_end_ms: int) -> str:
    raw = f"{wallet.lower()}|{chain.lower()}|{window_start_ms}|{window_end_ms}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CacheRecord:
    key: str
    value: Any
    stored_at: float


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ReportCache:
    """TTL memoization for finished reports, outside the pure core.

    ``get_or_compute`` holds one asyncio lock per key so concurrent requests
    for the same fingerprint run the computation once. The lock is dropped as
    soon as no request is using it, and expired records are purged on every
    ``put``.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: dict[str, CacheRecord] = {}
        self._lock = Lock()
        self._inflight: dict[str, _KeyLock] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def _expired(self, rec: CacheRecord, now: float) -> bool:
        return now - rec.stored_at >= self.ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            rec = self._records.get(key)
            if rec is None:
                return None
            if self._expired(rec, self._clock()):
                self._records.pop(key, None)
                return None
            return rec.value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            now = self._clock()
            for stale in [k for k, rec in self._records.items() if self._expired(rec, now)]:
                del self._records[stale]
            self._records[key] = CacheRecord(key=key, value=value, stored_at=now)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def _acquire_key(self, key: str) -> _KeyLock:
        with self._lock:
            entry = self._inflight.get(key)
            if entry is None:
                entry = _KeyLock()
                self._inflight[key] = entry
            entry.users += 1
            return entry

    def _release_key(self, key: str, entry: _KeyLock) -> None:
        with self._lock:
            entry.users -= 1
            if entry.users == 0 and self._inflight.get(key) is entry:
                del self._inflight[key]

    async def get_or_compute(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached

        entry = self._acquire_key(key)
        try:
            async with entry.lock:
                cached = self.get(key)
                if cached is not None:
                    return cached
                value = await factory()
                self.put(key, value)
                return value
        finally:
            self._release_key(key, entry)
