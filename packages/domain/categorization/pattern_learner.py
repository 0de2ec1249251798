"""
Pattern Learner - Turns user corrections into pattern updates

For each correction:
1. Wrong prediction → failure recorded on the predicting pattern(s); a
   pattern with usage > 50 and success rate < 0.3 is retired. A confirmed
   prediction records a success instead.
2. For the merchant text and each description keyword: the closest pattern
   in the correct category (Levenshtein >= 0.85) records a success, else the
   text is tallied and the third correction creates the pattern (the tally
   is then cleared).
3. Metadata (typical amount, hour/weekday histograms) is updated in place.
4. Near-duplicate patterns in the category are merged into the better
   performer.
5. The merchant preference is strengthened (or switched) and a learning
   event is written to the audit trail, in the same transaction.

Maintenance: idle patterns (30+ days) have their weight decayed by 0.9 per
pass; failing patterns are retired.

Every write is an optimistic update on lock_version, retried once after a
short backoff before the ConflictError surfaces.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import structlog
from pydantic import ValidationError as SchemaValidationError

from packages.domain.categorization.errors import ConflictError, ValidationError
from packages.domain.categorization.pattern_cache import PatternCache
from packages.domain.categorization.pattern_repository import ALL_SCOPES, PatternStore
from packages.domain.categorization.pattern_rules import RuleEvaluator
from packages.domain.categorization.pattern_validator import validate_pattern_value
from packages.domain.categorization.schemas import (
    BatchLearningResult,
    CorrectionEvent,
    ExpenseSnapshot,
    LearningEvent,
    LearningResult,
    MaintenanceResult,
    Pattern,
    PatternType,
    UserPreference,
)
from packages.domain.categorization.text_normalizer import extract_keywords, normalize

logger = structlog.get_logger()

# Scopes touched by a unit of work; None means "global pattern changed"
_Touched = Set[Optional[str]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PatternLearner:
    """Applies corrections and maintenance to the pattern store"""

    def __init__(
        self,
        store: PatternStore,
        cache: PatternCache,
        evaluator: RuleEvaluator,
        *,
        creation_threshold: int = 3,
        merge_threshold: float = 0.85,
        max_keyword_patterns: int = 3,
        decay_after_days: int = 30,
        decay_factor: float = 0.9,
        retire_min_usage: int = 50,
        retire_max_success_rate: float = 0.3,
        conflict_backoff: float = 0.05,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.cache = cache
        self.evaluator = evaluator
        self.creation_threshold = creation_threshold
        self.merge_threshold = merge_threshold
        self.max_keyword_patterns = max_keyword_patterns
        self.decay_after = timedelta(days=decay_after_days)
        self.decay_factor = decay_factor
        self.retire_min_usage = retire_min_usage
        self.retire_max_success_rate = retire_max_success_rate
        self.conflict_backoff = conflict_backoff
        self._clock = clock

    def should_retire(self, pattern: Pattern) -> bool:
        return (
            pattern.active
            and pattern.usage_count > self.retire_min_usage
            and pattern.success_rate < self.retire_max_success_rate
        )

    async def apply_correction(
        self,
        expense: ExpenseSnapshot,
        correct_category: str,
        predicted_category: Optional[str] = None,
        predicted_pattern_ids: Sequence[str] = (),
    ) -> LearningResult:
        """
        Learn from one user correction.

        Args:
            expense: The corrected expense
            correct_category: Category the user chose
            predicted_category: Category the engine had assigned (None if uncategorized)
            predicted_pattern_ids: Patterns behind the prediction, if known

        Returns:
            LearningResult listing created/updated/merged/retired pattern ids

        Raises:
            ValidationError: correction has no category or no text to learn from
            ConflictError: a pattern kept changing underneath the update
        """
        try:
            event = CorrectionEvent(
                expense=expense,
                correct_category=correct_category,
                predicted_category=predicted_category,
                predicted_pattern_ids=list(predicted_pattern_ids),
            )
        except SchemaValidationError as e:
            raise ValidationError("malformed correction", error=str(e)) from e
        event = self._validated_event(event)

        touched: _Touched = set()
        async with self.store.transaction():
            result = await self._apply(event, touched)
        await self._invalidate(touched)
        return result

    async def apply_batch(
        self,
        corrections: Iterable[Union[CorrectionEvent, Dict[str, Any]]],
    ) -> BatchLearningResult:
        """
        Apply corrections atomically.

        Malformed items are skipped and reported; the rest are applied in one
        transaction. Any failure rolls the whole set back and every applied
        index is reported as failed. Never raises for data problems.
        """
        items = list(corrections)
        skipped: Dict[int, str] = {}
        valid: List[Tuple[int, CorrectionEvent]] = []

        for index, item in enumerate(items):
            try:
                event = item if isinstance(item, CorrectionEvent) else CorrectionEvent.model_validate(item)
                valid.append((index, self._validated_event(event)))
            except (SchemaValidationError, ValidationError) as e:
                skipped[index] = str(e)

        if skipped:
            logger.warning("batch_corrections_skipped", skipped=len(skipped), total=len(items))
        if not valid:
            return BatchLearningResult(total=len(items), skipped=skipped)

        touched: _Touched = set()
        results: List[LearningResult] = []
        try:
            async with self.store.transaction():
                for _, event in valid:
                    results.append(await self._apply(event, touched))
        except Exception as e:
            logger.error("batch_learning_rolled_back",
                         corrections=len(valid),
                         error=str(e),
                         exc_info=True)
            return BatchLearningResult(
                total=len(items),
                skipped=skipped,
                failed={index: str(e) for index, _ in valid},
                rolled_back=True,
            )

        await self._invalidate(touched)
        logger.info("batch_learning_complete", applied=len(valid), skipped=len(skipped))
        return BatchLearningResult(
            total=len(items),
            applied=[index for index, _ in valid],
            skipped=skipped,
            results=results,
        )

    async def run_maintenance(self, now: Optional[datetime] = None) -> MaintenanceResult:
        """Decay idle patterns and retire failing ones"""
        now = now or self._clock()
        cutoff = now - self.decay_after
        decayed: List[str] = []
        retired: List[str] = []
        touched: _Touched = set()

        async with self.store.transaction():
            for pattern in await self.store.list_stale(cutoff):
                updated = await self._mutate(pattern.id, self._decay)
                if updated is not None:
                    decayed.append(updated.id)
                    touched.add(updated.scope)

            active = await self.store.list_active(ALL_SCOPES)
            for pattern in active:
                if self.should_retire(pattern) and await self.store.retire(pattern.id):
                    retired.append(pattern.id)
                    touched.add(pattern.scope)

        await self._invalidate(touched)
        logger.info("pattern_maintenance_complete",
                    examined=len(active),
                    decayed=len(decayed),
                    retired=len(retired))
        return MaintenanceResult(
            patterns_examined=len(active),
            patterns_decayed=decayed,
            patterns_retired=retired,
        )

    async def merge_similar(self, pattern_id: str) -> LearningResult:
        """Merge near-duplicates of one pattern within its category"""
        touched: _Touched = set()
        result = LearningResult()
        async with self.store.transaction():
            pattern = await self.store.get(pattern_id)
            if pattern is not None and pattern.active:
                await self._merge(pattern, result, touched)
        await self._invalidate(touched)
        return result

    def _validated_event(self, event: CorrectionEvent) -> CorrectionEvent:
        if not event.correct_category.strip():
            raise ValidationError("correction needs a category")
        if not event.expense.has_text:
            raise ValidationError(
                "correction needs merchant or description text",
                expense_id=event.expense.expense_id,
            )
        return event

    async def _apply(self, event: CorrectionEvent, touched: _Touched) -> LearningResult:
        expense = event.expense
        result = LearningResult()
        already_counted: Set[str] = set()
        confirmed = event.predicted_category == event.correct_category

        if event.predicted_category is not None:
            for pattern in await self._predicting_patterns(event):
                updated = await self._record_outcome(pattern.id, expense, success=confirmed)
                if updated is None:
                    continue
                already_counted.add(updated.id)
                result.patterns_updated.append(updated.id)
                touched.add(updated.scope)
                if self.should_retire(updated) and await self.store.retire(updated.id):
                    result.patterns_retired.append(updated.id)
                    logger.info("pattern_retired_after_correction",
                                pattern_id=updated.id,
                                usage_count=updated.usage_count,
                                success_rate=round(updated.success_rate, 4))

        sources = self._pattern_sources(expense)
        if not sources:
            logger.info("correction_without_learnable_text", expense_id=expense.expense_id)

        learned: List[Pattern] = []
        for pattern_type, value in sources:
            target = await self._learn_source(event, pattern_type, value, result, already_counted, touched)
            if target is not None:
                learned.append(target)

        await self._record_preference(event)

        primary = learned[0] if learned else None
        audit = await self.store.record_learning_event(LearningEvent(
            expense_id=expense.expense_id,
            category_id=event.correct_category,
            predicted_category=event.predicted_category,
            was_correct=confirmed,
            feedback_type="accepted" if confirmed else "correction",
            pattern_used=f"{primary.pattern_type.value}:{primary.pattern_value}" if primary else "manual",
            confidence_score=min(1.0, max(0.0, primary.confidence_weight)) if primary else 1.0,
            created_at=self._clock(),
        ))
        result.learning_event_id = audit.id

        logger.info("correction_applied",
                    expense_id=expense.expense_id,
                    correct_category=event.correct_category,
                    predicted_category=event.predicted_category,
                    created=len(result.patterns_created),
                    updated=len(result.patterns_updated),
                    merged=len(result.patterns_merged),
                    retired=len(result.patterns_retired))
        return result

    async def _learn_source(
        self,
        event: CorrectionEvent,
        pattern_type: PatternType,
        value: str,
        result: LearningResult,
        already_counted: Set[str],
        touched: _Touched,
    ) -> Optional[Pattern]:
        """Strengthen the closest pattern for one text source, or tally toward creating it"""
        expense = event.expense
        existing = await self.store.find_similar(
            pattern_type, value, event.correct_category, self.merge_threshold
        )
        target: Optional[Pattern] = existing[0] if existing else None

        if target is not None:
            if target.id not in already_counted:
                updated = await self._record_outcome(target.id, expense, success=True)
                if updated is not None:
                    target = updated
                    already_counted.add(updated.id)
                    result.patterns_updated.append(updated.id)
            touched.add(target.scope)
        else:
            tally_key = f"{pattern_type.value}:{value}"
            tally = await self.store.increment_correction_tally(tally_key, event.correct_category)
            if result.correction_tally is None:
                result.correction_tally = tally
            if tally < self.creation_threshold:
                return None

            target = await self.store.create(Pattern(
                category_id=event.correct_category,
                pattern_type=pattern_type,
                pattern_value=value,
                usage_count=tally,
                success_count=tally,
                metadata=self._absorb_expense({}, expense),
                last_matched_at=self._clock(),
            ))
            await self.store.reset_correction_tally(tally_key, event.correct_category)
            already_counted.add(target.id)
            result.patterns_created.append(target.id)
            touched.add(target.scope)
            logger.info("pattern_learned",
                        pattern_id=target.id,
                        category_id=target.category_id,
                        pattern_type=pattern_type.value,
                        pattern_value=value,
                        corrections=tally)

        if target.active:
            target = await self._merge(target, result, touched)
        return target

    async def _record_preference(self, event: CorrectionEvent) -> Optional[UserPreference]:
        """Same category again strengthens the merchant preference; a new one restarts it"""
        merchant = event.expense.merchant_text
        merchant_key = normalize(merchant) if merchant else ""
        if not merchant_key:
            return None

        current = await self.store.get_preference(merchant_key)
        if current is not None and current.category_id == event.correct_category:
            preference = current.model_copy(update={
                "preference_weight": current.preference_weight + 1,
                "usage_count": current.usage_count + 1,
            })
        else:
            preference = UserPreference(merchant_key=merchant_key, category_id=event.correct_category)
            if current is not None:
                logger.info("user_preference_replaced",
                            merchant_key=merchant_key,
                            previous_category=current.category_id,
                            category_id=event.correct_category)

        saved = await self.store.save_preference(preference)
        self.cache.forget_preference(merchant_key)
        return saved

    async def _predicting_patterns(self, event: CorrectionEvent) -> List[Pattern]:
        if event.predicted_pattern_ids:
            patterns = []
            for pattern_id in dict.fromkeys(event.predicted_pattern_ids):
                pattern = await self.store.get(pattern_id)
                if pattern is not None and pattern.active and pattern.category_id == event.predicted_category:
                    patterns.append(pattern)
            return patterns

        candidates = await self.store.list_for_category(event.predicted_category)
        matches = self.evaluator.evaluate(event.expense, candidates)
        unique = {match.pattern.id: match.pattern for match in matches}
        return list(unique.values())

    def _pattern_sources(self, expense: ExpenseSnapshot) -> List[Tuple[PatternType, str]]:
        """Merchant text plus up to max_keyword_patterns description keywords, each validated"""
        candidates: List[Tuple[PatternType, str]] = []
        if expense.merchant_text:
            candidates.append((PatternType.MERCHANT, normalize(expense.merchant_text)))
        if expense.description:
            candidates.extend((PatternType.KEYWORD, keyword) for keyword in extract_keywords(expense.description))

        sources: List[Tuple[PatternType, str]] = []
        keywords = 0
        for pattern_type, value in candidates:
            if pattern_type is PatternType.KEYWORD and keywords >= self.max_keyword_patterns:
                break
            try:
                source = (pattern_type, validate_pattern_value(pattern_type, value))
            except ValidationError:
                continue
            if source in sources:
                continue
            sources.append(source)
            if pattern_type is PatternType.KEYWORD:
                keywords += 1
        return sources

    async def _record_outcome(self, pattern_id: str, expense: ExpenseSnapshot, success: bool) -> Optional[Pattern]:
        now = self._clock()

        def change(pattern: Pattern) -> Pattern:
            if not success:
                return pattern.evolve(usage_count=pattern.usage_count + 1)
            return pattern.evolve(
                usage_count=pattern.usage_count + 1,
                success_count=pattern.success_count + 1,
                last_matched_at=now,
                metadata=self._absorb_expense(pattern.metadata, expense),
            )

        return await self._mutate(pattern_id, change)

    async def _merge(self, pattern: Pattern, result: LearningResult, touched: _Touched) -> Pattern:
        if not pattern.pattern_type.is_textual:
            return pattern

        siblings = await self.store.find_similar(
            pattern.pattern_type, pattern.pattern_value, pattern.category_id, self.merge_threshold
        )
        for other in siblings:
            if other.id == pattern.id:
                continue

            keeper, inferior = sorted(
                (pattern, other),
                key=lambda p: (p.success_rate, p.usage_count),
                reverse=True,
            )
            merged = await self._mutate(keeper.id, lambda current: self._combine(current, inferior))
            if merged is None:
                continue
            await self.store.retire(inferior.id)

            result.patterns_merged.append(inferior.id)
            result.patterns_retired.append(inferior.id)
            touched.update({keeper.scope, inferior.scope})
            logger.info("patterns_merged",
                        kept=keeper.id,
                        retired=inferior.id,
                        category_id=pattern.category_id,
                        usage_count=merged.usage_count)
            pattern = merged
        return pattern

    async def _mutate(self, pattern_id: str, change: Callable[[Pattern], Pattern]) -> Optional[Pattern]:
        """Read-modify-write with one retry on a lock_version conflict"""
        for attempt in range(2):
            current = await self.store.get(pattern_id)
            if current is None or not current.active:
                return None
            try:
                return await self.store.update(change(current))
            except ConflictError:
                if attempt:
                    raise
                logger.info("pattern_update_conflict_retry", pattern_id=pattern_id)
                await asyncio.sleep(self.conflict_backoff)
        return None

    def _decay(self, pattern: Pattern) -> Pattern:
        return pattern.evolve(confidence_weight=max(0.0, pattern.confidence_weight * self.decay_factor))

    @staticmethod
    def _combine(keeper: Pattern, inferior: Pattern) -> Pattern:
        keeper_stats = keeper.metadata.get("amount_stats") or {}
        inferior_stats = inferior.metadata.get("amount_stats") or {}
        count = keeper_stats.get("count", 0) + inferior_stats.get("count", 0)

        merged_metadata = dict(keeper.metadata)
        if count:
            mean = (
                keeper_stats.get("mean", 0.0) * keeper_stats.get("count", 0)
                + inferior_stats.get("mean", 0.0) * inferior_stats.get("count", 0)
            ) / count
            merged_metadata["amount_stats"] = {"count": count, "mean": round(mean, 2)}
            merged_metadata["typical_amount"] = round(mean, 2)

        last_matched = [d for d in (keeper.last_matched_at, inferior.last_matched_at) if d]
        return keeper.evolve(
            usage_count=keeper.usage_count + inferior.usage_count,
            success_count=keeper.success_count + inferior.success_count,
            metadata=merged_metadata,
            last_matched_at=max(last_matched) if last_matched else None,
        )

    @staticmethod
    def _absorb_expense(metadata: Dict[str, Any], expense: ExpenseSnapshot) -> Dict[str, Any]:
        """Running amount mean and hour/weekday histograms"""
        updated = dict(metadata)

        if expense.amount is not None:
            stats = dict(updated.get("amount_stats") or {"count": 0, "mean": 0.0})
            amount = abs(float(expense.amount))
            count = stats["count"] + 1
            mean = stats["mean"] + (amount - stats["mean"]) / count
            updated["amount_stats"] = {"count": count, "mean": round(mean, 2)}
            updated["typical_amount"] = round(mean, 2)

        moment = expense.transaction_timestamp
        if moment is not None:
            temporal = updated.get("temporal") or {}
            hours = dict(temporal.get("hours") or {})
            weekdays = dict(temporal.get("weekdays") or {})
            hours[str(moment.hour)] = hours.get(str(moment.hour), 0) + 1
            weekdays[str(moment.weekday())] = weekdays.get(str(moment.weekday()), 0) + 1
            updated["temporal"] = {"hours": hours, "weekdays": weekdays}

        return updated

    async def _invalidate(self, touched: _Touched) -> None:
        if not touched:
            return
        if None in touched:
            await self.cache.invalidate(None)
            return
        for scope in touched:
            await self.cache.invalidate(scope)
