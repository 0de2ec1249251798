"""
Categorization Engine - Orchestrates cache, matching, confidence and learning

Flow (categorize):
0. A merchant preference with enough weight (see PatternLearner) answers
   directly, before any pattern is read
1. PatternCache.fetch(scope) → immutable pattern snapshot
2. RuleEvaluator.evaluate(expense, patterns) → MatchResults
3. ConfidenceCalculator.calculate(...) per candidate
4. Best category wins (ranked by confidence × pattern weight) if its
   confidence clears min_confidence

Flow (learn):
- PatternLearner.apply_correction → cache invalidation for touched scopes

Components are constructed explicitly and injected; see factory.build_engine.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

import structlog

from packages.common.circuit_breaker import CircuitState
from packages.domain.categorization.confidence_calculator import ConfidenceCalculator
from packages.domain.categorization.errors import (
    CategorizationError,
    DependencyUnavailable,
    PreconditionError,
    ValidationError,
)
from packages.domain.categorization.pattern_cache import PatternCache
from packages.domain.categorization.pattern_learner import PatternLearner
from packages.domain.categorization.pattern_repository import ALL_SCOPES
from packages.domain.categorization.pattern_rules import RuleEvaluator
from packages.domain.categorization.schemas import (
    BatchLearningResult,
    CategorizationResult,
    CategoryAlternative,
    ConfidenceBreakdown,
    CorrectionEvent,
    ExpenseSnapshot,
    LearningResult,
    MaintenanceResult,
    MatchResult,
    Pattern,
)
from packages.domain.categorization.text_normalizer import normalize

logger = structlog.get_logger()

MAX_ALTERNATIVES = 3


@dataclass(frozen=True)
class _ScoredMatch:
    match: MatchResult
    pattern: Pattern
    confidence: float
    breakdown: ConfidenceBreakdown

    @property
    def rank(self) -> float:
        return self.confidence * self.pattern.confidence_weight


class CategorizationEngine:
    """
    Categorizes expenses against the learned pattern library.

    Usage:
        engine = await CategorizationEngine.create(get_settings())
        await engine.warm()
        result = await engine.categorize(ExpenseSnapshot(
            merchant_text="STARBUCKS #1234 SEATTLE WA",
            amount=Decimal("5.75"),
        ))
        print(f"Category: {result.category}, Confidence: {result.confidence}")
        await engine.shutdown()
    """

    def __init__(
        self,
        cache: PatternCache,
        evaluator: RuleEvaluator,
        calculator: ConfidenceCalculator,
        learner: PatternLearner,
        *,
        min_confidence: float = 0.5,
        match_threshold: float = 0.8,
        batch_concurrency: int = 10,
        batch_size_limit: int = 1000,
        check_user_preferences: bool = True,
        preference_min_weight: float = 5.0,
        preference_boost: float = 0.15,
        on_shutdown: Sequence[Callable[[], Awaitable[Any]]] = (),
    ):
        self.cache = cache
        self.evaluator = evaluator
        self.calculator = calculator
        self.learner = learner
        self.min_confidence = min_confidence
        self.match_threshold = match_threshold
        self.batch_concurrency = batch_concurrency
        self.batch_size_limit = batch_size_limit
        self.check_user_preferences = check_user_preferences
        self.preference_min_weight = preference_min_weight
        self.preference_boost = preference_boost
        self._on_shutdown = list(on_shutdown)
        self._closed = False
        self._lock = threading.Lock()
        self._stats = {
            "categorized": 0,
            "preference_results": 0,
            "no_match": 0,
            "failed": 0,
            "corrections": 0,
            "total_processing_ms": 0.0,
        }

    @classmethod
    async def create(cls, settings=None) -> "CategorizationEngine":
        """Build a fully wired engine from settings"""
        from packages.domain.categorization.factory import build_engine

        return await build_engine(settings)

    @property
    def closed(self) -> bool:
        return self._closed

    async def categorize(self, expense: ExpenseSnapshot) -> CategorizationResult:
        """
        Categorize one expense.

        Returns:
            CategorizationResult; category is None when nothing clears
            min_confidence, error is set when a dependency failed
        """
        started = time.perf_counter()
        if self._closed:
            return self._finish(CategorizationResult.failed("engine has been shut down"), started)

        if not expense.has_text and expense.amount is None and expense.transaction_timestamp is None:
            return self._finish(CategorizationResult.no_match("expense has nothing to match on"), started)

        if self.check_user_preferences and expense.merchant_text:
            preferred = await self._preferred(expense)
            if preferred is not None:
                return self._finish(preferred, started)

        try:
            patterns = await self.cache.fetch(expense.scope or ALL_SCOPES)
        except DependencyUnavailable as e:
            logger.error("categorization_dependency_unavailable",
                         expense_id=expense.expense_id,
                         error=str(e))
            return self._finish(CategorizationResult.failed(str(e)), started)

        matches = self.evaluator.evaluate(expense, patterns, threshold=self.match_threshold)
        if not matches:
            return self._finish(
                CategorizationResult.no_match(f"no pattern matched ({len(patterns)} checked)"),
                started,
            )

        scored = self._score(expense, matches)
        if not scored:
            return self._finish(CategorizationResult.no_match("no candidate could be scored"), started)

        best_by_category: Dict[str, _ScoredMatch] = {}
        for candidate in scored:
            current = best_by_category.get(candidate.pattern.category_id)
            if current is None or candidate.rank > current.rank:
                best_by_category[candidate.pattern.category_id] = candidate

        ranked = sorted(best_by_category.values(), key=lambda c: c.rank, reverse=True)
        best = ranked[0]
        alternatives = [
            CategoryAlternative(
                category=c.pattern.category_id,
                confidence=c.confidence,
                pattern_id=c.pattern.id,
            )
            for c in ranked[1:MAX_ALTERNATIVES + 1]
        ]

        if best.confidence < self.min_confidence:
            return self._finish(CategorizationResult.no_match(
                f"best candidate '{best.pattern.category_id}' scored {best.confidence:.4f}, "
                f"below the {self.min_confidence:.2f} minimum",
                alternatives=[
                    CategoryAlternative(
                        category=c.pattern.category_id,
                        confidence=c.confidence,
                        pattern_id=c.pattern.id,
                    )
                    for c in ranked[:MAX_ALTERNATIVES]
                ],
            ), started)

        used = sorted(
            (c for c in scored if c.pattern.category_id == best.pattern.category_id),
            key=lambda c: c.rank,
            reverse=True,
        )
        result = CategorizationResult(
            category=best.pattern.category_id,
            confidence=best.confidence,
            patterns_used=list(dict.fromkeys(c.pattern.id for c in used if c.pattern.id)),
            breakdown=best.breakdown,
            explanation=self._explain(best),
            alternatives=alternatives,
        )
        logger.info("categorization_complete",
                    expense_id=expense.expense_id,
                    category=result.category,
                    confidence=result.confidence,
                    candidates=len(scored))
        return self._finish(result, started)

    async def categorize_batch(self, expenses: Sequence[ExpenseSnapshot]) -> List[CategorizationResult]:
        """Categorize concurrently (bounded), preserving input order"""
        if len(expenses) > self.batch_size_limit:
            raise ValidationError(
                "batch is too large",
                size=len(expenses),
                limit=self.batch_size_limit,
            )

        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def run(expense: ExpenseSnapshot) -> CategorizationResult:
            async with semaphore:
                return await self.categorize(expense)

        results = await asyncio.gather(*(run(expense) for expense in expenses))
        logger.info("batch_categorization_complete",
                    expenses=len(expenses),
                    categorized=sum(1 for r in results if r.successful))
        return list(results)

    async def learn(
        self,
        expense: ExpenseSnapshot,
        correct_category: str,
        predicted_category: Optional[str] = None,
        predicted_pattern_ids: Sequence[str] = (),
    ) -> LearningResult:
        """Feed one user correction to the learner"""
        self._ensure_open()
        result = await self.learner.apply_correction(
            expense,
            correct_category,
            predicted_category=predicted_category,
            predicted_pattern_ids=predicted_pattern_ids,
        )
        self._count("corrections")
        return result

    async def learn_from_result(
        self,
        expense: ExpenseSnapshot,
        result: CategorizationResult,
        correct_category: str,
    ) -> LearningResult:
        """Correction against a previous categorize() result"""
        return await self.learn(
            expense,
            correct_category,
            predicted_category=result.category,
            predicted_pattern_ids=result.patterns_used,
        )

    async def learn_batch(
        self,
        corrections: Iterable[Union[CorrectionEvent, Dict[str, Any]]],
    ) -> BatchLearningResult:
        self._ensure_open()
        result = await self.learner.apply_batch(corrections)
        self._count("corrections", len(result.applied))
        return result

    async def run_maintenance(self) -> MaintenanceResult:
        self._ensure_open()
        return await self.learner.run_maintenance()

    async def warm(self, scopes: Iterable[str] = (ALL_SCOPES,)) -> Dict[str, Any]:
        self._ensure_open()
        return await self.cache.warm(scopes)

    async def shutdown(self) -> None:
        """Release cache and storage resources; idempotent"""
        if self._closed:
            return
        self._closed = True
        await self.cache.shutdown()
        for callback in self._on_shutdown:
            try:
                await callback()
            except Exception as e:
                logger.warning("engine_shutdown_callback_failed", error=str(e))
        logger.info("categorization_engine_shutdown", **self._snapshot())

    def metrics(self) -> Dict[str, Any]:
        stats = self._snapshot()
        handled = stats["categorized"] + stats["no_match"] + stats["failed"]
        return {
            "engine": {
                **stats,
                "avg_processing_ms": round(stats["total_processing_ms"] / handled, 3) if handled else 0.0,
                "closed": self._closed,
            },
            "cache": self.cache.metrics(),
            "matcher": self.evaluator.matcher.metrics(),
            "regex_timeouts": self.evaluator.timeouts,
        }

    def healthy(self) -> bool:
        return not self._closed and self.cache.breaker.state is not CircuitState.OPEN

    async def _preferred(self, expense: ExpenseSnapshot) -> Optional[CategorizationResult]:
        """Result from a strong enough merchant preference; lookup failures fall through to patterns"""
        merchant_key = normalize(expense.merchant_text)
        if not merchant_key:
            return None
        try:
            preference = await self.cache.fetch_preference(merchant_key)
        except DependencyUnavailable as e:
            logger.warning("user_preference_skipped", expense_id=expense.expense_id, error=str(e))
            return None
        if preference is None or preference.preference_weight < self.preference_min_weight:
            return None

        self._count("preference_results")
        result = CategorizationResult(
            category=preference.category_id,
            confidence=preference.confidence(self.preference_boost),
            explanation=(
                f"User preference for merchant '{merchant_key}' "
                f"(chosen {preference.usage_count} times)"
            ),
        )
        logger.info("categorization_from_preference",
                    expense_id=expense.expense_id,
                    category=result.category,
                    confidence=result.confidence)
        return result

    def _score(self, expense: ExpenseSnapshot, matches: List[MatchResult]) -> List[_ScoredMatch]:
        scored: List[_ScoredMatch] = []
        for match in matches:
            try:
                confidence, breakdown = self.calculator.calculate(expense, match.pattern, match)
            except CategorizationError as e:
                logger.warning("candidate_scoring_failed",
                               pattern_id=getattr(match.pattern, "id", None),
                               error=str(e))
                continue
            scored.append(_ScoredMatch(match, match.pattern, confidence, breakdown))
        return scored

    @staticmethod
    def _explain(best: _ScoredMatch) -> str:
        pattern = best.pattern
        return (
            f"Matched {pattern.pattern_type.value} pattern '{pattern.pattern_value}' "
            f"({best.match.algorithm_used}, score {best.match.raw_score:.2f}); "
            f"{best.breakdown.explain()}"
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise PreconditionError("engine has been shut down")

    def _finish(self, result: CategorizationResult, started: float) -> CategorizationResult:
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
        if result.error:
            outcome = "failed"
        elif result.category is None:
            outcome = "no_match"
        else:
            outcome = "categorized"
        with self._lock:
            self._stats[outcome] += 1
            self._stats["total_processing_ms"] += elapsed_ms
        return result.model_copy(update={"processing_time_ms": elapsed_ms})

    def _count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._stats[name] += amount

    def _snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._stats)
