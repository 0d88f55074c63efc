"""Result cache: key derivation, an in-process TTL store, and fire-and-forget writes."""

from __future__ import annotations

import asyncio
import hashlib
import json
import threading
import time
from typing import Dict, Optional, Protocol, Set, Tuple

from loguru import logger

from .config import RankingOutcome, RankingRequest

# keep strong references so pending writes are not garbage-collected mid-flight
_PENDING_WRITES: Set[asyncio.Task] = set()


class CacheGateway(Protocol):
    async def get(self, key: str) -> Optional[RankingOutcome]:
        ...

    async def put(self, key: str, outcome: RankingOutcome, ttl_s: float) -> None:
        ...


def generate_cache_key(request: RankingRequest) -> str:
    """
    sha256 over normalised intent, sorted handles, result count and the
    constraint payload (sorted keys, sorted term lists).
    """
    intent = (request.user_intent or "").strip().lower()
    handles = ",".join(sorted(c.handle for c in request.candidates))

    hc = request.hard_constraints
    constraints = {
        "variant_constraints": request.variant_constraints.model_dump() if request.variant_constraints else {},
        "variant_preferences": dict(request.variant_preferences),
        "include_terms": sorted(request.include_terms),
        "avoid_terms": sorted(request.avoid_terms),
        "hard_constraints": hc.model_dump() if hc is not None else None,
        "strict_gate": sorted(c.handle for c in request.strict_gate) if request.strict_gate is not None else None,
        "shop_id": request.shop_id,
    }
    variant_hash = json.dumps(constraints, sort_keys=True, default=str)
    cache_input = f"{intent}|{handles}|{request.result_count}|{variant_hash}"
    return hashlib.sha256(cache_input.encode("utf-8")).hexdigest()


class InMemoryRankingCache:
    """Process-local TTL cache. Safe to share across threads and event loops."""

    def __init__(self, max_entries: int = 10_000):
        self._entries: Dict[str, Tuple[float, RankingOutcome]] = {}
        self._lock = threading.Lock()
        self._max_entries = max_entries

    async def get(self, key: str) -> Optional[RankingOutcome]:
        now = time.monotonic()
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            expires_at, outcome = hit
            if expires_at <= now:
                del self._entries[key]
                return None
            return outcome.model_copy(deep=True)

    async def put(self, key: str, outcome: RankingOutcome, ttl_s: float) -> None:
        with self._lock:
            if len(self._entries) >= self._max_entries:
                self._evict_expired()
            if len(self._entries) >= self._max_entries:
                # drop the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            self._entries[key] = (time.monotonic() + ttl_s, outcome.model_copy(deep=True))

    def _evict_expired(self) -> None:
        now = time.monotonic()
        for k in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[k]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


async def read_cache(cache: CacheGateway, key: str, timeout_s: float) -> Optional[RankingOutcome]:
    """Bounded cache read; any failure or slowness counts as a miss."""
    try:
        return await asyncio.wait_for(cache.get(key), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning("Cache read exceeded {:.2f}s; treating as miss", timeout_s)
    except Exception as e:
        logger.warning("Cache read failed; treating as miss: {}", e)
    return None


def _log_write_result(task: asyncio.Task) -> None:
    _PENDING_WRITES.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Cache write failed (non-blocking): {}", exc)


def schedule_cache_write(cache: CacheGateway, key: str, outcome: RankingOutcome, ttl_s: float) -> asyncio.Task:
    """Start a background write; the caller never awaits it."""
    task = asyncio.create_task(cache.put(key, outcome, ttl_s))
    _PENDING_WRITES.add(task)
    task.add_done_callback(_log_write_result)
    return task


async def drain_pending_writes() -> None:
    """Wait for in-flight background writes (service shutdown, tests)."""
    pending = [t for t in _PENDING_WRITES if not t.done()]
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
