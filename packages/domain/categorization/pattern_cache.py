"""
Pattern Cache - Two-tier cache of active patterns per scope

Read path:
1. In-process tier (TTL 5 min by default)
2. Shared tier (Redis, TTL 24 h) behind a circuit breaker and a short timeout
3. Pattern store (source of truth)

Keys: "cat:patterns:v1:{scope}:{YYYYMMDD}" so shared entries roll over daily.
User preferences (merchant → category) are cached in the in-process tier only.

Shared-tier problems never fail a fetch; they are logged, counted against the
circuit breaker, and the read falls through to the store. Only a store
failure raises (DependencyUnavailable).
"""
import asyncio
import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import structlog

from packages.common.circuit_breaker import CircuitBreaker
from packages.common.shared_cache import SharedCache
from packages.domain.categorization.errors import DependencyUnavailable
from packages.domain.categorization.pattern_repository import ALL_SCOPES, PatternStore
from packages.domain.categorization.schemas import Pattern, UserPreference

logger = structlog.get_logger()

PatternSnapshot = Tuple[Pattern, ...]


@dataclass(frozen=True)
class _MemoryEntry:
    day: str
    expires_at: float
    patterns: PatternSnapshot


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PatternCache:
    """
    Cache of active patterns keyed by scope.

    The in-process tier is guarded by a lock that is held only for dict
    operations, never across an await.
    """

    def __init__(
        self,
        store: PatternStore,
        shared: Optional[SharedCache] = None,
        *,
        breaker: Optional[CircuitBreaker] = None,
        memory_ttl: float = 300,
        shared_ttl: int = 86400,
        shared_timeout: float = 0.25,
        key_prefix: str = "cat:patterns:v1",
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.shared = shared
        self.breaker = breaker or CircuitBreaker("pattern_cache_shared")
        self.memory_ttl = memory_ttl
        self.shared_ttl = shared_ttl
        self.shared_timeout = shared_timeout
        self.key_prefix = key_prefix
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._memory: Dict[str, _MemoryEntry] = {}
        self._preferences: Dict[str, Tuple[float, Optional[UserPreference]]] = {}
        self._generation = 0
        self._closed = False
        self._stats = {
            "memory_hits": 0,
            "preference_hits": 0,
            "shared_hits": 0,
            "misses": 0,
            "store_errors": 0,
            "shared_errors": 0,
            "invalidations": 0,
        }

    async def fetch(self, scope: Optional[str] = ALL_SCOPES) -> PatternSnapshot:
        """
        Active patterns visible in scope (scope's own plus global ones).

        Returns:
            Immutable tuple of Patterns

        Raises:
            DependencyUnavailable: pattern store could not be read
        """
        scope = scope or ALL_SCOPES
        day = self._day_bucket()

        with self._lock:
            entry = self._memory.get(scope)
            generation = self._generation
            if entry and entry.day == day and entry.expires_at > self._clock():
                self._stats["memory_hits"] += 1
                return entry.patterns

        key = self._key(scope, day)
        patterns = await self._read_shared(key)
        if patterns is not None:
            self._count("shared_hits")
            self._remember(scope, day, patterns, generation)
            return patterns

        self._count("misses")
        try:
            patterns = tuple(await self.store.list_active(scope))
        except Exception as e:
            self._count("store_errors")
            logger.error("pattern_store_unavailable", scope=scope, error=str(e), exc_info=True)
            raise DependencyUnavailable("pattern store unavailable", scope=scope) from e

        logger.debug("pattern_cache_miss", scope=scope, patterns=len(patterns))
        if self._remember(scope, day, patterns, generation):
            await self._write_shared(key, patterns)
        return patterns

    async def fetch_preference(self, merchant_key: str) -> Optional[UserPreference]:
        """
        The user's preferred category for a normalized merchant, if any.

        Held in the in-process tier only (absent preferences too).

        Raises:
            DependencyUnavailable: pattern store could not be read
        """
        with self._lock:
            cached = self._preferences.get(merchant_key)
            generation = self._generation
            if cached is not None and cached[0] > self._clock():
                self._stats["preference_hits"] += 1
                return cached[1]

        try:
            preference = await self.store.get_preference(merchant_key)
        except Exception as e:
            self._count("store_errors")
            logger.error("preference_lookup_failed", merchant_key=merchant_key, error=str(e))
            raise DependencyUnavailable("pattern store unavailable", merchant_key=merchant_key) from e

        with self._lock:
            if generation == self._generation:
                self._preferences[merchant_key] = (self._clock() + self.memory_ttl, preference)
        return preference

    def forget_preference(self, merchant_key: str) -> None:
        with self._lock:
            self._generation += 1
            self._preferences.pop(merchant_key, None)

    async def invalidate(self, scope: Optional[str] = None) -> None:
        """
        Drop cached entries for scope and for the all-scopes view.

        None flushes every scope. Never raises.
        """
        with self._lock:
            self._generation += 1
            if scope is None:
                self._memory.clear()
                self._preferences.clear()
            else:
                self._memory.pop(scope, None)
                self._memory.pop(ALL_SCOPES, None)
        self._count("invalidations")

        if scope is None:
            prefixes = [f"{self.key_prefix}:"]
        else:
            prefixes = [f"{self.key_prefix}:{scope}:", f"{self.key_prefix}:{ALL_SCOPES}:"]

        for prefix in dict.fromkeys(prefixes):
            await self._shared_call(
                "delete",
                lambda p=prefix: self.shared.delete_matching(p),
                prefix=prefix,
            )
        logger.info("pattern_cache_invalidated", scope=scope or "*")

    async def warm(self, scopes: Iterable[str] = (ALL_SCOPES,)) -> Dict[str, Any]:
        """Best-effort pre-population; failures are logged, not raised"""
        warmed, failed, patterns = 0, 0, 0
        for scope in scopes:
            try:
                patterns += len(await self.fetch(scope))
                warmed += 1
            except DependencyUnavailable as e:
                failed += 1
                logger.warning("pattern_cache_warm_failed", scope=scope, error=str(e))
        logger.info("pattern_cache_warmed", scopes=warmed, failed=failed, patterns=patterns)
        return {"scopes_warmed": warmed, "scopes_failed": failed, "patterns": patterns}

    async def shutdown(self) -> None:
        """Release the shared tier client; idempotent"""
        if self._closed:
            return
        self._closed = True
        with self._lock:
            self._memory.clear()
            self._preferences.clear()
        if self.shared is not None:
            try:
                await self.shared.close()
            except Exception as e:
                logger.warning("shared_cache_close_failed", error=str(e))

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            entries = len(self._memory)
        hits = stats["memory_hits"] + stats["shared_hits"]
        lookups = hits + stats["misses"]
        return {
            **stats,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
            "entries": entries,
            "shared_enabled": self.shared is not None,
            "circuit_breaker": self.breaker.snapshot(),
        }

    def _count(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1

    def _key(self, scope: str, day: str) -> str:
        return f"{self.key_prefix}:{scope}:{day}"

    def _day_bucket(self) -> str:
        return self._wall_clock().strftime("%Y%m%d")

    def _remember(self, scope: str, day: str, patterns: PatternSnapshot, generation: int) -> bool:
        """Store in memory unless an invalidation happened since the read began"""
        with self._lock:
            if generation != self._generation:
                return False
            self._memory[scope] = _MemoryEntry(day, self._clock() + self.memory_ttl, patterns)
            return True

    async def _read_shared(self, key: str) -> Optional[PatternSnapshot]:
        raw = await self._shared_call("get", lambda: self.shared.get(key), key=key)
        if raw is None:
            return None
        try:
            return tuple(Pattern.model_validate(item) for item in json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning("shared_cache_entry_corrupt", key=key, error=str(e))
            return None

    async def _write_shared(self, key: str, patterns: PatternSnapshot) -> None:
        payload = json.dumps([p.model_dump(mode="json") for p in patterns]).encode()
        await self._shared_call(
            "set",
            lambda: self.shared.set(key, payload, self.shared_ttl),
            key=key,
        )

    async def _shared_call(self, operation: str, call: Callable, **log_fields) -> Any:
        if self.shared is None or self._closed or not self.breaker.allow_request():
            return None
        try:
            result = await asyncio.wait_for(call(), timeout=self.shared_timeout)
        except asyncio.CancelledError:
            self.breaker.release_trial()
            raise
        except Exception as e:
            self._count("shared_errors")
            self.breaker.record_failure()
            logger.warning("shared_cache_degraded",
                           operation=operation,
                           error=str(e) or type(e).__name__,
                           breaker_state=self.breaker.state.value,
                           **log_fields)
            return None
        self.breaker.record_success()
        return result
