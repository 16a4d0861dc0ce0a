"""
Idempotency cache for event publishing.

Suppresses re-delivery of the same logical event within a TTL window:
- Lazy expiry: stale records are ignored on lookup
- Active expiry: a sweeper task removes them on a fixed interval
- Per-key guards so concurrent publishes of one key serialize

The cache is per process. Duplicates arriving at another instance are not
detected; that needs an external store.

Usage:
    cache = IdempotencyCache(default_ttl_seconds=300)
    await cache.start()
    async with cache.guard(key):
        if not cache.check_and_reserve(key).is_duplicate:
            await deliver()
            cache.record(key)
    await cache.stop()
"""

from __future__ import annotations
import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from threading import Lock
from typing import AsyncIterator, Callable, Dict, Optional

from matchrelay.infrastructure.logging import get_logger
from matchrelay.infrastructure.metrics import metrics

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class IdempotencyRecord:
    """A key that was delivered, and for how long it stays suppressed."""
    key: str
    first_seen_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.first_seen_at > self.ttl_seconds


@dataclass(frozen=True)
class DuplicateCheck:
    """Result of a cache lookup."""
    is_duplicate: bool
    record: Optional[IdempotencyRecord] = None


class _KeyGuard:
    __slots__ = ("lock", "waiters")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.waiters = 0


class IdempotencyCache:
    """
    In-process map of idempotency key -> IdempotencyRecord.

    Features:
    - Thread-safe map operations
    - Reference-counted per-key asyncio locks
    - Explicitly owned background sweeper
    """

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")

        self.default_ttl_seconds = default_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = Lock()
        self._guards: Dict[str, _KeyGuard] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def is_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def check_and_reserve(self, key: str, ttl_seconds: Optional[float] = None) -> DuplicateCheck:
        """
        Report whether key was delivered within the TTL window.

        Nothing is written here; the record is only created by record()
        after a confirmed delivery. ttl_seconds overrides the stored TTL for
        this lookup, so a caller can ask for a narrower or wider window.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(key)

        if record is None:
            return DuplicateCheck(is_duplicate=False)

        ttl = ttl_seconds if ttl_seconds is not None else record.ttl_seconds
        if now - record.first_seen_at > ttl:
            return DuplicateCheck(is_duplicate=False)

        logger.warning(
            "Duplicate event detected within TTL window",
            idempotency_key=key,
            age_seconds=round(now - record.first_seen_at, 3),
            ttl_seconds=ttl,
        )
        return DuplicateCheck(is_duplicate=True, record=record)

    def record(self, key: str, ttl_seconds: Optional[float] = None) -> IdempotencyRecord:
        """Remember a delivered key. Re-recording an expired key restarts its window."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        now = self._clock()
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and not existing.is_expired(now):
                return existing
            record = IdempotencyRecord(key=key, first_seen_at=now, ttl_seconds=ttl)
            self._records[key] = record
            size = len(self._records)

        metrics.update_cache_size(size)
        return record

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._records.get(key)

    def sweep(self) -> int:
        """Remove expired records. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for k in expired:
                del self._records[k]
            remaining = len(self._records)

        metrics.update_cache_size(remaining)
        if expired:
            logger.debug(
                "Cleaned expired events from cache",
                cleaned_count=len(expired),
                remaining_count=remaining,
            )
        return len(expired)

    @asynccontextmanager
    async def guard(self, key: str) -> AsyncIterator[None]:
        """Hold the per-key lock; other keys are never blocked."""
        entry = self._guards.get(key)
        if entry is None:
            entry = self._guards[key] = _KeyGuard()
        entry.waiters += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.waiters -= 1
            if entry.waiters == 0:
                self._guards.pop(key, None)

    async def start(self):
        """Start the periodic sweeper."""
        if self.is_running:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="idempotency-sweeper")
        logger.info("Idempotency sweeper started", interval_seconds=self.sweep_interval_seconds)

    async def stop(self):
        """Cancel the sweeper and wait for it to finish."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Idempotency sweeper stopped", entries=len(self))

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Idempotency sweep failed", error=str(e))

    def stats(self) -> Dict[str, float]:
        """Get cache statistics."""
        with self._lock:
            size = len(self._records)
        return {
            "entries": size,
            "active_guards": len(self._guards),
            "default_ttl_seconds": self.default_ttl_seconds,
            "sweeper_running": self.is_running,
        }
