"""
Pattern Repository - Source of truth for categorization patterns

Tables:
- categorization_patterns: one row per pattern; lock_version is bumped on
  every write and checked on update (optimistic per-row serialization)
- correction_tallies: how often a (pattern text, category) correction has
  been seen before it became a pattern (cleared once it does)
- user_category_preferences: the category a user keeps choosing per merchant
- pattern_learning_events: audit trail, one row per applied correction

A transaction() block pins one session in a ContextVar so every repository
call inside it joins the same database transaction.
"""
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Protocol, Sequence
from uuid import uuid4

import structlog
from rapidfuzz.distance import Levenshtein
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    delete,
    func,
    insert,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import DatabaseSessionManager
from packages.domain.categorization.errors import ConflictError, PreconditionError, ValidationError
from packages.domain.categorization.pattern_validator import validate_pattern
from packages.domain.categorization.schemas import LearningEvent, Pattern, PatternType, UserPreference

logger = structlog.get_logger()

ALL_SCOPES = "all"

metadata = MetaData()

patterns_table = Table(
    "categorization_patterns",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("category_id", String(64), nullable=False),
    Column("pattern_type", String(32), nullable=False),
    Column("pattern_value", String(255), nullable=False),
    Column("scope", String(64), nullable=True),
    Column("confidence_weight", Float, nullable=False, default=1.0),
    Column("usage_count", Integer, nullable=False, default=0),
    Column("success_count", Integer, nullable=False, default=0),
    Column("active", Boolean, nullable=False, default=True),
    Column("pattern_metadata", JSON, nullable=False),
    Column("last_matched_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("lock_version", Integer, nullable=False, default=0),
    Index("ix_categorization_patterns_category", "category_id", "active"),
    Index("ix_categorization_patterns_scope", "scope"),
    Index(
        "uq_categorization_patterns_active",
        "pattern_type",
        "pattern_value",
        "category_id",
        unique=True,
        postgresql_where=text("active"),
        sqlite_where=text("active = 1"),
    ),
)

correction_tallies_table = Table(
    "correction_tallies",
    metadata,
    Column("tally_key", String(300), nullable=False),
    Column("category_id", String(64), nullable=False),
    Column("occurrences", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("tally_key", "category_id"),
)

user_preferences_table = Table(
    "user_category_preferences",
    metadata,
    Column("merchant_key", String(255), primary_key=True),
    Column("category_id", String(64), nullable=False),
    Column("preference_weight", Float, nullable=False, default=1.0),
    Column("usage_count", Integer, nullable=False, default=1),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

learning_events_table = Table(
    "pattern_learning_events",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("expense_id", String(64), nullable=True),
    Column("category_id", String(64), nullable=False),
    Column("predicted_category", String(64), nullable=True),
    Column("was_correct", Boolean, nullable=False),
    Column("feedback_type", String(16), nullable=False),
    Column("pattern_used", String(300), nullable=False),
    Column("confidence_score", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_pattern_learning_events_expense", "expense_id"),
)


class PatternStore(Protocol):
    """Storage contract used by the cache and the learner"""

    async def list_active(self, scope: str = ALL_SCOPES) -> List[Pattern]:
        ...

    async def get(self, pattern_id: str) -> Optional[Pattern]:
        ...

    async def create(self, pattern: Pattern) -> Pattern:
        ...

    async def update(self, pattern: Pattern) -> Pattern:
        ...

    async def retire(self, pattern_id: str) -> Optional[Pattern]:
        ...

    async def find_similar(
        self,
        pattern_type: PatternType,
        pattern_value: str,
        category_id: str,
        threshold: float,
    ) -> List[Pattern]:
        ...

    async def list_for_category(self, category_id: str) -> List[Pattern]:
        ...

    async def list_stale(self, before: datetime) -> List[Pattern]:
        ...

    async def increment_correction_tally(self, tally_key: str, category_id: str) -> int:
        ...

    async def reset_correction_tally(self, tally_key: str, category_id: str) -> None:
        ...

    async def get_preference(self, merchant_key: str) -> Optional[UserPreference]:
        ...

    async def save_preference(self, preference: UserPreference) -> UserPreference:
        ...

    async def record_learning_event(self, event: LearningEvent) -> LearningEvent:
        ...

    async def list_learning_events(self, expense_id: Optional[str] = None, limit: int = 100) -> List[LearningEvent]:
        ...

    def transaction(self):
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def rank_similar(
    candidates: Sequence[Pattern],
    pattern_value: str,
    threshold: float,
) -> List[Pattern]:
    """Candidates whose normalized Levenshtein similarity is >= threshold, best first"""
    scored = [
        (Levenshtein.normalized_similarity(pattern_value, candidate.pattern_value), candidate)
        for candidate in candidates
    ]
    scored = [item for item in scored if item[0] >= threshold]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [candidate for _, candidate in scored]


class SqlPatternRepository:
    """
    Async SQLAlchemy implementation of PatternStore.

    Usage:
        sessions = DatabaseSessionManager()
        await sessions.init(settings.database_url)
        repository = SqlPatternRepository(sessions)

        async with repository.transaction():
            pattern = await repository.get(pattern_id)
            await repository.update(pattern.evolve(usage_count=pattern.usage_count + 1))
    """

    def __init__(self, sessions: DatabaseSessionManager):
        self._sessions = sessions
        self._current: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"pattern_repository_session_{id(self)}", default=None
        )

    async def create_schema(self) -> None:
        await self._sessions.create_all(metadata)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """All repository calls inside share one transaction (nested blocks join it)"""
        if self._current.get() is not None:
            yield
            return

        async with self._sessions.session() as session:
            token = self._current.set(session)
            try:
                yield
            finally:
                self._current.reset(token)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        current = self._current.get()
        if current is not None:
            yield current
            return
        async with self._sessions.session() as session:
            yield session

    async def list_active(self, scope: str = ALL_SCOPES) -> List[Pattern]:
        """
        Active patterns visible in scope.

        Args:
            scope: Scope name; "all" returns every active pattern

        Returns:
            The scope's patterns plus global (unscoped) ones
        """
        query = select(patterns_table).where(patterns_table.c.active.is_(True))
        if scope and scope != ALL_SCOPES:
            query = query.where(or_(
                patterns_table.c.scope == scope,
                patterns_table.c.scope.is_(None),
            ))
        query = query.order_by(patterns_table.c.created_at, patterns_table.c.id)

        async with self._session() as session:
            result = await session.execute(query)
            return [self._row_to_pattern(row) for row in result]

    async def get(self, pattern_id: str) -> Optional[Pattern]:
        query = select(patterns_table).where(patterns_table.c.id == pattern_id)
        async with self._session() as session:
            row = (await session.execute(query)).first()
        return self._row_to_pattern(row) if row else None

    async def create(self, pattern: Pattern) -> Pattern:
        """
        Insert a new pattern.

        Raises:
            ValidationError: malformed value, or an active duplicate exists
        """
        pattern = validate_pattern(pattern)
        now = _utcnow()
        stored = pattern.evolve(
            id=pattern.id or str(uuid4()),
            created_at=pattern.created_at or now,
            updated_at=now,
            lock_version=0,
        )

        values = self._pattern_values(stored)
        values.update(
            id=stored.id,
            created_at=stored.created_at,
            updated_at=stored.updated_at,
            lock_version=0,
        )

        try:
            async with self._session() as session:
                await session.execute(insert(patterns_table).values(**values))
                await session.flush()
        except IntegrityError as e:
            raise ValidationError(
                "an active pattern with this type, value and category already exists",
                pattern_type=stored.pattern_type.value,
                pattern_value=stored.pattern_value,
                category_id=stored.category_id,
            ) from e

        logger.info("pattern_created",
                    pattern_id=stored.id,
                    category_id=stored.category_id,
                    pattern_type=stored.pattern_type.value,
                    pattern_value=stored.pattern_value)
        return stored

    async def update(self, pattern: Pattern) -> Pattern:
        """
        Write a modified pattern if nobody else has since.

        Raises:
            ConflictError: lock_version no longer matches the stored row
        """
        if pattern.id is None:
            raise PreconditionError("cannot update a pattern without an id")
        pattern = validate_pattern(pattern)
        now = _utcnow()

        stmt = (
            update(patterns_table)
            .where(patterns_table.c.id == pattern.id)
            .where(patterns_table.c.lock_version == pattern.lock_version)
            .values(
                **self._pattern_values(pattern),
                updated_at=now,
                lock_version=pattern.lock_version + 1,
            )
        )
        async with self._session() as session:
            result = await session.execute(stmt)

        if result.rowcount == 0:
            raise ConflictError(
                "pattern was modified concurrently",
                pattern_id=pattern.id,
                lock_version=pattern.lock_version,
            )
        return pattern.evolve(updated_at=now, lock_version=pattern.lock_version + 1)

    async def retire(self, pattern_id: str) -> Optional[Pattern]:
        now = _utcnow()
        stmt = (
            update(patterns_table)
            .where(patterns_table.c.id == pattern_id)
            .where(patterns_table.c.active.is_(True))
            .values(
                active=False,
                updated_at=now,
                lock_version=patterns_table.c.lock_version + 1,
            )
        )
        async with self._session() as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            return None

        logger.info("pattern_retired", pattern_id=pattern_id)
        return await self.get(pattern_id)

    async def find_similar(
        self,
        pattern_type: PatternType,
        pattern_value: str,
        category_id: str,
        threshold: float,
    ) -> List[Pattern]:
        """Active patterns of the same type and category whose value is close to pattern_value"""
        return rank_similar(
            await self._select_active(
                patterns_table.c.category_id == category_id,
                patterns_table.c.pattern_type == PatternType(pattern_type).value,
            ),
            pattern_value,
            threshold,
        )

    async def list_for_category(self, category_id: str) -> List[Pattern]:
        return await self._select_active(patterns_table.c.category_id == category_id)

    async def list_stale(self, before: datetime) -> List[Pattern]:
        """Active patterns idle (last match, else creation) since before"""
        idle_since = func.coalesce(patterns_table.c.last_matched_at, patterns_table.c.created_at)
        return await self._select_active(idle_since <= before)

    async def increment_correction_tally(self, tally_key: str, category_id: str) -> int:
        """Atomically count one more correction; returns the new total"""
        now = _utcnow()
        async with self._session() as session:
            dialect = session.bind.dialect.name
            insert_fn = postgresql_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(correction_tallies_table).values(
                tally_key=tally_key,
                category_id=category_id,
                occurrences=1,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["tally_key", "category_id"],
                set_={
                    "occurrences": correction_tallies_table.c.occurrences + 1,
                    "updated_at": now,
                },
            ).returning(correction_tallies_table.c.occurrences)
            result = await session.execute(stmt)
            return result.scalar_one()

    async def reset_correction_tally(self, tally_key: str, category_id: str) -> None:
        """Forget the tally once its pattern exists"""
        stmt = delete(correction_tallies_table).where(
            correction_tallies_table.c.tally_key == tally_key,
            correction_tallies_table.c.category_id == category_id,
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def get_preference(self, merchant_key: str) -> Optional[UserPreference]:
        query = select(user_preferences_table).where(user_preferences_table.c.merchant_key == merchant_key)
        async with self._session() as session:
            row = (await session.execute(query)).first()
        if row is None:
            return None
        data = dict(row._mapping)
        data["updated_at"] = _aware(data["updated_at"])
        return UserPreference(**data)

    async def save_preference(self, preference: UserPreference) -> UserPreference:
        """Insert or overwrite the preference for its merchant"""
        stored = preference.model_copy(update={"updated_at": _utcnow()})
        values = stored.model_dump()
        async with self._session() as session:
            dialect = session.bind.dialect.name
            insert_fn = postgresql_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(user_preferences_table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["merchant_key"],
                set_={key: value for key, value in values.items() if key != "merchant_key"},
            )
            await session.execute(stmt)
        return stored

    async def record_learning_event(self, event: LearningEvent) -> LearningEvent:
        stored = event.model_copy(update={
            "id": event.id or str(uuid4()),
            "created_at": event.created_at or _utcnow(),
        })
        async with self._session() as session:
            await session.execute(insert(learning_events_table).values(**stored.model_dump()))
        return stored

    async def list_learning_events(self, expense_id: Optional[str] = None, limit: int = 100) -> List[LearningEvent]:
        """Most recent first"""
        query = select(learning_events_table)
        if expense_id is not None:
            query = query.where(learning_events_table.c.expense_id == expense_id)
        query = query.order_by(learning_events_table.c.created_at.desc()).limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            events = []
            for row in result:
                data = dict(row._mapping)
                data["created_at"] = _aware(data["created_at"])
                events.append(LearningEvent(**data))
            return events

    async def _select_active(self, *criteria) -> List[Pattern]:
        query = (
            select(patterns_table)
            .where(patterns_table.c.active.is_(True), *criteria)
            .order_by(patterns_table.c.created_at, patterns_table.c.id)
        )
        async with self._session() as session:
            result = await session.execute(query)
            return [self._row_to_pattern(row) for row in result]

    @staticmethod
    def _pattern_values(pattern: Pattern) -> dict:
        return {
            "category_id": pattern.category_id,
            "pattern_type": pattern.pattern_type.value,
            "pattern_value": pattern.pattern_value,
            "scope": pattern.scope,
            "confidence_weight": pattern.confidence_weight,
            "usage_count": pattern.usage_count,
            "success_count": pattern.success_count,
            "active": pattern.active,
            "pattern_metadata": pattern.metadata,
            "last_matched_at": pattern.last_matched_at,
        }

    @staticmethod
    def _row_to_pattern(row) -> Pattern:
        data = dict(row._mapping)
        pattern_metadata = dict(data.pop("pattern_metadata") or {})
        scope = data.pop("scope")
        if scope is not None:
            pattern_metadata["scope"] = scope
        for field in ("last_matched_at", "created_at", "updated_at"):
            data[field] = _aware(data[field])
        return Pattern(metadata=pattern_metadata, **data)
