"""
Confidence Calculator - Weighted, calibrated confidence for a pattern match

Factors (default weights):
- text_match          0.35  match score from the evaluator (always present)
- historical_success  0.25  pattern success rate, once usage_count > 5
- usage_frequency     0.15  log10(usage + 1) / 4, capped at 1.0
- amount_similarity   0.15  closeness to the pattern's typical amount
- temporal_pattern    0.10  closeness to the pattern's hour/weekday history

Missing factors drop out of numerator and denominator alike. The weighted
mean is squashed with a logistic curve (steepness 10, midpoint 0.5) and
rounded to 4 decimals.
"""
import math
from typing import Callable, Dict, Mapping, Optional, Tuple

import structlog

from packages.domain.categorization.errors import PreconditionError, ValidationError
from packages.domain.categorization.schemas import (
    ConfidenceBreakdown,
    ExpenseSnapshot,
    FactorScore,
    MatchResult,
    Pattern,
    PatternType,
)

logger = structlog.get_logger()

DEFAULT_WEIGHTS: Dict[str, float] = {
    "text_match": 0.35,
    "historical_success": 0.25,
    "usage_frequency": 0.15,
    "amount_similarity": 0.15,
    "temporal_pattern": 0.10,
}

MIN_USAGE_FOR_HISTORY = 5
HOUR_WEIGHT = 0.6
WEEKDAY_WEIGHT = 0.4


class ConfidenceCalculator:
    """Pure function of (expense, pattern, match result) → (confidence, breakdown)"""

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        steepness: float = 10.0,
        midpoint: float = 0.5,
    ):
        self.weights = self._validated_weights(weights)
        self.steepness = steepness
        self.midpoint = midpoint
        self._optional_factors: Dict[str, Callable[[ExpenseSnapshot, Pattern, MatchResult], Optional[float]]] = {
            "historical_success": self._historical_success,
            "usage_frequency": self._usage_frequency,
            "amount_similarity": self._amount_similarity,
            "temporal_pattern": self._temporal_pattern,
        }

    def calculate(
        self,
        expense: ExpenseSnapshot,
        pattern: Pattern,
        match_result: Optional[MatchResult],
    ) -> Tuple[float, ConfidenceBreakdown]:
        """
        Calculate confidence for one matched pattern.

        Raises:
            PreconditionError: match_result is missing
        """
        if match_result is None:
            raise PreconditionError("confidence needs a match result", pattern_id=pattern.id)

        factors = {
            "text_match": FactorScore(
                score=_clamp(match_result.raw_score),
                weight=self.weights["text_match"],
            )
        }
        missing = []

        for name, compute in self._optional_factors.items():
            weight = self.weights.get(name, 0.0)
            if weight == 0:
                continue
            try:
                value = compute(expense, pattern, match_result)
            except Exception as e:
                logger.warning("confidence_factor_failed",
                               factor=name,
                               pattern_id=pattern.id,
                               error=str(e))
                value = None

            if value is None:
                missing.append(name)
            else:
                factors[name] = FactorScore(score=_clamp(value), weight=weight)

        total_weight = sum(f.weight for f in factors.values())
        raw = sum(f.score * f.weight for f in factors.values()) / total_weight
        final = _clamp(round(self._squash(raw), 4))

        return final, ConfidenceBreakdown(
            factors=factors,
            missing=missing,
            raw_score=round(raw, 4),
            final_score=final,
        )

    def _squash(self, value: float) -> float:
        return 1.0 / (1.0 + math.exp(-self.steepness * (value - self.midpoint)))

    @staticmethod
    def _historical_success(expense, pattern: Pattern, match_result) -> Optional[float]:
        if pattern.usage_count <= MIN_USAGE_FOR_HISTORY:
            return None
        return pattern.success_rate

    @staticmethod
    def _usage_frequency(expense, pattern: Pattern, match_result) -> Optional[float]:
        if pattern.usage_count == 0:
            return None
        return min(1.0, math.log10(pattern.usage_count + 1) / 4)

    @staticmethod
    def _amount_similarity(expense: ExpenseSnapshot, pattern: Pattern, match_result) -> Optional[float]:
        if expense.amount is None:
            return None
        typical = pattern.metadata.get("typical_amount")
        if typical is None:
            typical = (pattern.metadata.get("amount_stats") or {}).get("mean")
        if typical is None:
            return None

        actual = abs(float(expense.amount))
        expected = abs(float(typical))
        return math.exp(-abs(math.log10(actual + 1) - math.log10(expected + 1)))

    @staticmethod
    def _temporal_pattern(expense: ExpenseSnapshot, pattern: Pattern, match_result) -> Optional[float]:
        if pattern.pattern_type is PatternType.TIME:
            return 1.0
        moment = expense.transaction_timestamp
        temporal = pattern.metadata.get("temporal") or {}
        if moment is None or not temporal:
            return None

        parts = []
        hours = temporal.get("hours") or {}
        if hours:
            parts.append((HOUR_WEIGHT, _histogram_share(hours, moment.hour)))
        weekdays = temporal.get("weekdays") or {}
        if weekdays:
            parts.append((WEEKDAY_WEIGHT, _histogram_share(weekdays, moment.weekday())))
        if not parts:
            return None
        return sum(w * s for w, s in parts) / sum(w for w, _ in parts)

    @staticmethod
    def _validated_weights(weights: Optional[Mapping[str, float]]) -> Dict[str, float]:
        merged = dict(DEFAULT_WEIGHTS)
        if weights:
            unknown = set(weights) - set(DEFAULT_WEIGHTS)
            if unknown:
                raise ValidationError("unknown confidence factors", factors=sorted(unknown))
            merged.update(weights)
        if any(w < 0 for w in merged.values()):
            raise ValidationError("confidence weights must be non-negative", weights=merged)
        if merged["text_match"] <= 0:
            raise ValidationError("text_match weight must be positive", weights=merged)
        return merged


def _histogram_share(histogram: Mapping[str, int], bucket: int) -> float:
    """Frequency of bucket relative to the most frequent bucket"""
    peak = max(histogram.values())
    if peak <= 0:
        return 0.0
    return histogram.get(str(bucket), 0) / peak


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))
