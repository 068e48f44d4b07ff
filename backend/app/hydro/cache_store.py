"""
In-process snapshot cache with TTL expiry, statistics and request coalescing.

═══════════════════════════════════════════════════════════════════════════
SEMANTICS
═══════════════════════════════════════════════════════════════════════════

Entries are whole snapshots keyed by "hydro", "hydro2" or "merged".
``set`` replaces an entry atomically; nothing ever patches a payload.

    get(key)          entry regardless of expiry (caller inspects it)
    get_fresh(key)    entry only while fresh; counts a hit or a miss
    set(key, p, ttl)  replace; hits=0, fetched_at=now, expires_at=now+ttl
    is_expired(key)   absent keys count as expired
    cleanup_expired() drop expired entries, except those served as a
                      stale fallback within the grace window

Stampede protection
───────────────────
``coalesce(key, producer)`` keeps one in-flight task per key. The first
caller starts the producer as its own task; every caller, the first one
included, awaits it through ``asyncio.shield`` and receives the same
result (or the same exception). Cancelling one caller never cancels the
refresh. The slot is released once the task settles, so the next expiry
triggers a new refresh.

Everything runs on one event loop; there is no cross-thread sharing.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from backend.app.hydro.models import CacheEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(value)


class CacheStore:
    """
    Keyed snapshot cache owned by the SmartDataService.

    Usage:
        cache = CacheStore(stale_grace_seconds=3600)
        cache.set("merged", stations, ttl=600)
        entry = cache.get_fresh("merged")
    """

    def __init__(
        self,
        *,
        stale_grace_seconds: float = 3600,
        clock: Clock = utc_now,
    ):
        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._clock = clock
        self.stale_grace = timedelta(seconds=stale_grace_seconds)
        self.hits = 0
        self.misses = 0
        self.refreshes = 0

    def now(self) -> datetime:
        return self._clock()

    # ── Reads ──

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def get_fresh(self, key: str) -> Optional[CacheEntry]:
        """Return the entry only while it is fresh, counting hit/miss."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self.now()):
            self.misses += 1
            logger.debug("Cache MISS for %s", key, extra={"cache_key": key})
            return None
        entry.hits += 1
        self.hits += 1
        logger.debug(
            "Cache HIT for %s (age: %.0fs)", key, entry.age_seconds(self.now()),
            extra={"cache_key": key},
        )
        return entry

    def is_expired(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.is_expired(self.now())

    def keys(self) -> List[str]:
        return list(self._entries)

    def expired_keys(self) -> List[str]:
        now = self.now()
        return [key for key, entry in self._entries.items() if entry.is_expired(now)]

    # ── Writes ──

    def set(self, key: str, payload: Sequence[Any], ttl: float) -> CacheEntry:
        now = self.now()
        entry = CacheEntry(
            key=key,
            payload=tuple(payload),
            fetched_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        self._entries[key] = entry
        self.refreshes += 1
        logger.info(
            "Cached %d items for %s (TTL: %.0fs)", len(entry.payload), key, ttl,
            extra={"cache_key": key, "stations": len(entry.payload)},
        )
        return entry

    def mark_stale_served(self, key: str) -> None:
        """Record that an expired entry was just used as a fallback."""
        entry = self._entries.get(key)
        if entry is not None:
            entry.stale_served_at = self.now()

    def invalidate(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info("Cache invalidated for %s", key, extra={"cache_key": key})
        return removed

    def clear_all(self) -> int:
        size = len(self._entries)
        self._entries.clear()
        logger.info("Cleared %d cache entries", size)
        return size

    def cleanup_expired(self) -> int:
        """Remove expired entries not used as a stale fallback recently."""
        now = self.now()
        removable = []
        for key, entry in self._entries.items():
            if entry.expires_at >= now:
                continue
            if entry.stale_served_at is not None and now - entry.stale_served_at <= self.stale_grace:
                continue
            removable.append(key)

        for key in removable:
            del self._entries[key]

        if removable:
            logger.info("Cleaned up %d expired cache entries", len(removable))
        return len(removable)

    # ── Request coalescing ──

    def is_refreshing(self, key: str) -> bool:
        return key in self._in_flight

    async def coalesce(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        """Run ``producer`` once per key at a time; concurrent callers share it."""
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(producer())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
        else:
            logger.debug("Joining in-flight refresh for %s", key, extra={"cache_key": key})
        # A cancelled caller leaves the refresh running for everyone else
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Retrieved here so a failure nobody awaited is not reported as unhandled
            task.exception()

    # ── Statistics ──

    def size_bytes(self) -> int:
        """Approximate serialised size of all cached payloads."""
        total = 0
        for key, entry in self._entries.items():
            total += len(key.encode("utf-8"))
            total += len(json.dumps(list(entry.payload), default=_json_default).encode("utf-8"))
        return total

    def stats(self) -> Dict[str, Any]:
        now = self.now()
        entries = list(self._entries.values())
        newest = max(entries, key=lambda e: e.fetched_at, default=None)
        next_expiry = min(entries, key=lambda e: e.expires_at, default=None)

        return {
            "totalEntries": len(entries),
            "hits": self.hits,
            "misses": self.misses,
            "refreshes": self.refreshes,
            "sizeBytes": self.size_bytes(),
            "lastUpdate": newest.fetched_at.isoformat() if newest else None,
            "nextUpdate": next_expiry.expires_at.isoformat() if next_expiry else None,
            "inFlight": sorted(self._in_flight),
            "entries": {
                e.key: {
                    "items": len(e.payload),
                    "ageSeconds": round(e.age_seconds(now), 1),
                    "expiresAt": e.expires_at.isoformat(),
                    "expired": e.is_expired(now),
                    "hits": e.hits,
                    "staleServedAt": e.stale_served_at.isoformat() if e.stale_served_at else None,
                }
                for e in entries
            },
        }
