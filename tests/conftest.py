"""
Shared fixtures and in-memory fakes for the pattern store and shared cache
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

import pytest

from packages.common.config import Settings
from packages.domain.categorization.errors import ConflictError, ValidationError
from packages.domain.categorization.factory import assemble_engine
from packages.domain.categorization.pattern_repository import ALL_SCOPES, rank_similar
from packages.domain.categorization.pattern_validator import validate_pattern
from packages.domain.categorization.schemas import (
    ExpenseSnapshot,
    LearningEvent,
    Pattern,
    PatternType,
    UserPreference,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)  # a Monday


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryPatternStore:
    """PatternStore with snapshot/restore transactions and injectable faults"""

    def __init__(self):
        self.patterns: Dict[str, Pattern] = {}
        self.tallies: Dict[Tuple[str, str], int] = {}
        self.preferences: Dict[str, UserPreference] = {}
        self.events: List[LearningEvent] = []
        self.list_active_calls = 0
        self.fail_reads = False
        self.fail_on_create = False
        self.conflicts_to_inject = 0
        self._in_transaction = False

    def seed(self, pattern_value: str, category_id: str, pattern_type=PatternType.MERCHANT, **fields) -> Pattern:
        pattern = Pattern(
            id=fields.pop("id", str(uuid4())),
            category_id=category_id,
            pattern_type=pattern_type,
            pattern_value=pattern_value,
            created_at=fields.pop("created_at", utcnow()),
            updated_at=fields.pop("updated_at", utcnow()),
            **fields,
        )
        self.patterns[pattern.id] = pattern
        return pattern

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield
            return
        snapshot = (dict(self.patterns), dict(self.tallies), dict(self.preferences), list(self.events))
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self.patterns, self.tallies = dict(snapshot[0]), dict(snapshot[1])
            self.preferences, self.events = dict(snapshot[2]), list(snapshot[3])
            raise
        finally:
            self._in_transaction = False

    async def list_active(self, scope: str = ALL_SCOPES) -> List[Pattern]:
        self.list_active_calls += 1
        if self.fail_reads:
            raise ConnectionError("database unreachable")
        patterns = [p for p in self.patterns.values() if p.active]
        if scope and scope != ALL_SCOPES:
            patterns = [p for p in patterns if p.scope in (scope, None)]
        return sorted(patterns, key=lambda p: p.created_at)

    async def get(self, pattern_id: str) -> Optional[Pattern]:
        return self.patterns.get(pattern_id)

    async def create(self, pattern: Pattern) -> Pattern:
        if self.fail_on_create:
            raise RuntimeError("insert failed")
        pattern = validate_pattern(pattern)
        for existing in self.patterns.values():
            if (
                existing.active
                and existing.pattern_type == pattern.pattern_type
                and existing.pattern_value == pattern.pattern_value
                and existing.category_id == pattern.category_id
            ):
                raise ValidationError("duplicate active pattern")
        stored = pattern.evolve(
            id=pattern.id or str(uuid4()),
            created_at=pattern.created_at or utcnow(),
            updated_at=utcnow(),
            lock_version=0,
        )
        self.patterns[stored.id] = stored
        return stored

    async def update(self, pattern: Pattern) -> Pattern:
        stored = self.patterns.get(pattern.id)
        if self.conflicts_to_inject and stored is not None:
            self.conflicts_to_inject -= 1
            self.patterns[pattern.id] = stored.evolve(lock_version=stored.lock_version + 1)
            raise ConflictError("concurrent writer", pattern_id=pattern.id)
        if stored is None or stored.lock_version != pattern.lock_version:
            raise ConflictError("stale lock_version", pattern_id=pattern.id)
        updated = validate_pattern(pattern).evolve(
            updated_at=utcnow(),
            lock_version=pattern.lock_version + 1,
        )
        self.patterns[updated.id] = updated
        return updated

    async def retire(self, pattern_id: str) -> Optional[Pattern]:
        stored = self.patterns.get(pattern_id)
        if stored is None or not stored.active:
            return None
        retired = stored.evolve(active=False, lock_version=stored.lock_version + 1)
        self.patterns[pattern_id] = retired
        return retired

    async def find_similar(self, pattern_type, pattern_value, category_id, threshold) -> List[Pattern]:
        candidates = [
            p for p in self.patterns.values()
            if p.active and p.pattern_type == pattern_type and p.category_id == category_id
        ]
        return rank_similar(candidates, pattern_value, threshold)

    async def list_for_category(self, category_id: str) -> List[Pattern]:
        return [p for p in self.patterns.values() if p.active and p.category_id == category_id]

    async def list_stale(self, before: datetime) -> List[Pattern]:
        return [
            p for p in self.patterns.values()
            if p.active and (p.last_matched_at or p.created_at) <= before
        ]

    async def increment_correction_tally(self, tally_key: str, category_id: str) -> int:
        key = (tally_key, category_id)
        self.tallies[key] = self.tallies.get(key, 0) + 1
        return self.tallies[key]

    async def reset_correction_tally(self, tally_key: str, category_id: str) -> None:
        self.tallies.pop((tally_key, category_id), None)

    async def get_preference(self, merchant_key: str) -> Optional[UserPreference]:
        if self.fail_reads:
            raise ConnectionError("database unreachable")
        return self.preferences.get(merchant_key)

    async def save_preference(self, preference: UserPreference) -> UserPreference:
        stored = preference.model_copy(update={"updated_at": utcnow()})
        self.preferences[stored.merchant_key] = stored
        return stored

    async def record_learning_event(self, event: LearningEvent) -> LearningEvent:
        stored = event.model_copy(update={"id": event.id or str(uuid4()), "created_at": event.created_at or utcnow()})
        self.events.append(stored)
        return stored

    async def list_learning_events(self, expense_id: Optional[str] = None, limit: int = 100) -> List[LearningEvent]:
        events = [e for e in reversed(self.events) if expense_id is None or e.expense_id == expense_id]
        return events[:limit]


class InMemorySharedCache:
    """SharedCache backed by a dict"""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.closed = False
        self.gets = 0

    async def get(self, key):
        self.gets += 1
        return self.data.get(key)

    async def set(self, key, value, ttl_seconds):
        self.data[key] = value

    async def delete_matching(self, prefix):
        doomed = [key for key in self.data if key.startswith(prefix)]
        for key in doomed:
            del self.data[key]
        return len(doomed)

    async def close(self):
        self.closed = True


class FailingSharedCache:
    """SharedCache whose every call fails"""

    def __init__(self):
        self.calls = 0
        self.closed = False

    async def get(self, key):
        self.calls += 1
        raise ConnectionError("redis unreachable")

    async def set(self, key, value, ttl_seconds):
        self.calls += 1
        raise ConnectionError("redis unreachable")

    async def delete_matching(self, prefix):
        self.calls += 1
        raise ConnectionError("redis unreachable")

    async def close(self):
        self.closed = True


class SlowSharedCache(InMemorySharedCache):
    """SharedCache that never answers in time"""

    async def get(self, key):
        self.gets += 1
        await asyncio.sleep(1)
        return None


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_expense(merchant: Optional[str] = None, **fields) -> ExpenseSnapshot:
    return ExpenseSnapshot(merchant_text=merchant, **fields)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, redis_url=None)


@pytest.fixture
def store() -> InMemoryPatternStore:
    return InMemoryPatternStore()


@pytest.fixture
def shared() -> InMemorySharedCache:
    return InMemorySharedCache()


@pytest.fixture
def engine(store, shared, settings):
    engine = assemble_engine(store, shared, settings)
    engine.learner.conflict_backoff = 0
    return engine


@pytest.fixture
def learner(engine):
    return engine.learner


@pytest.fixture
def coffee_expense() -> ExpenseSnapshot:
    return make_expense(
        "STARBUCKS #1234 SEATTLE WA",
        amount=Decimal("5.75"),
        transaction_timestamp=NOW,
        expense_id="exp-1",
    )


@pytest.fixture
def long_ago() -> datetime:
    return NOW - timedelta(days=31)
