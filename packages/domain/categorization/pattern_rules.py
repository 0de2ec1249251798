"""
Rule Evaluator - Matches every pattern type against an expense

- merchant            → fuzzy against the merchant descriptor
- keyword/description → fuzzy against the description (merchant as fallback)
- regex               → `regex` engine with a hard timeout
- amount_range        → inclusive "min-max" on the signed amount
- time                → named bucket or "HH:MM-HH:MM" (may cross midnight)

A failing or timed-out candidate is excluded; evaluation never raises for a
single bad pattern.
"""
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import regex
import structlog

from packages.domain.categorization.errors import MatchTimeout, ValidationError
from packages.domain.categorization.fuzzy_matcher import FuzzyMatcher
from packages.domain.categorization.schemas import (
    ExpenseSnapshot,
    MatchResult,
    MatchType,
    Pattern,
    PatternType,
)
from packages.domain.categorization.text_extraction import PatternValueExtractor

logger = structlog.get_logger()

DEFAULT_REGEX_TIMEOUT = 0.05

_AMOUNT_RANGE = re.compile(r"^\s*(-?\d+(?:\.\d{1,2})?)\s*-\s*(-?\d+(?:\.\d{1,2})?)\s*$")
_TIME_RANGE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")

TIME_BUCKETS: Dict[str, FrozenSet[int]] = {
    "morning": frozenset(range(6, 12)),
    "afternoon": frozenset(range(12, 17)),
    "evening": frozenset(range(17, 21)),
    "night": frozenset([21, 22, 23, 0, 1, 2, 3, 4, 5]),
}
DAY_BUCKETS = ("weekend", "weekday")


def parse_amount_range(value: str) -> Tuple[Decimal, Decimal]:
    """Parse "min-max" (negative bounds allowed, e.g. "-50--10")"""
    match = _AMOUNT_RANGE.match(value or "")
    if not match:
        raise ValidationError("amount range must look like 'min-max'", value=value)
    try:
        low, high = Decimal(match.group(1)), Decimal(match.group(2))
    except InvalidOperation as e:
        raise ValidationError("amount range bounds are not numbers", value=value) from e
    return low, high


def parse_time_range(value: str) -> Tuple[int, int]:
    """Parse "HH:MM-HH:MM" into (start_minute, end_minute) of the day"""
    match = _TIME_RANGE.match(value or "")
    if not match:
        raise ValidationError("time range must look like 'HH:MM-HH:MM'", value=value)
    start_h, start_m, end_h, end_m = (int(g) for g in match.groups())
    for hour, minute in ((start_h, start_m), (end_h, end_m)):
        if not 0 <= hour <= 23 or not 0 <= minute <= 59:
            raise ValidationError("time range has an invalid hour or minute", value=value)
    return start_h * 60 + start_m, end_h * 60 + end_m


def matches_amount_range(value: str, amount: Optional[Decimal]) -> bool:
    if amount is None:
        return False
    low, high = parse_amount_range(value)
    return low <= Decimal(amount) <= high


def matches_time(value: str, moment: Optional[datetime]) -> bool:
    if moment is None:
        return False
    name = value.strip().lower()
    if name in TIME_BUCKETS:
        return moment.hour in TIME_BUCKETS[name]
    if name == "weekend":
        return moment.weekday() >= 5
    if name == "weekday":
        return moment.weekday() < 5

    start, end = parse_time_range(name)
    minute = moment.hour * 60 + moment.minute
    if start <= end:
        return start <= minute <= end
    return minute >= start or minute <= end


@lru_cache(maxsize=512)
def _compile(expression: str):
    return regex.compile(expression, regex.IGNORECASE)


def regex_search(expression: str, text: str, timeout: float = DEFAULT_REGEX_TIMEOUT) -> bool:
    """
    Search text with a hard time limit.

    Raises:
        MatchTimeout: evaluation exceeded timeout seconds
    """
    try:
        return _compile(expression).search(text, timeout=timeout) is not None
    except TimeoutError as e:
        raise MatchTimeout("regex evaluation timed out", expression=expression, timeout=timeout) from e


class RuleEvaluator:
    """Evaluates a pattern snapshot against one expense"""

    def __init__(
        self,
        matcher: FuzzyMatcher,
        regex_timeout: float = DEFAULT_REGEX_TIMEOUT,
    ):
        self.matcher = matcher
        self.regex_timeout = regex_timeout
        self._extractor = PatternValueExtractor()
        self._timeouts = 0

    @property
    def timeouts(self) -> int:
        return self._timeouts

    def evaluate(
        self,
        expense: ExpenseSnapshot,
        patterns: Sequence[Pattern],
        threshold: Optional[float] = None,
    ) -> List[MatchResult]:
        """
        Match all active patterns against an expense.

        Returns:
            MatchResults ordered by raw score, highest first
        """
        merchant_patterns: List[Pattern] = []
        description_patterns: List[Pattern] = []
        results: List[MatchResult] = []

        for pattern in patterns:
            if not pattern.active:
                continue
            if pattern.pattern_type is PatternType.MERCHANT:
                merchant_patterns.append(pattern)
                continue
            if pattern.pattern_type.is_textual:
                description_patterns.append(pattern)
                continue

            try:
                result = self._evaluate_rule(expense, pattern)
            except MatchTimeout as e:
                self._timeouts += 1
                logger.warning("regex_pattern_timeout",
                               pattern_id=pattern.id,
                               expense_id=expense.expense_id,
                               **e.context)
                continue
            except Exception as e:
                logger.warning("pattern_evaluation_failed",
                               pattern_id=pattern.id,
                               pattern_type=pattern.pattern_type.value,
                               error=str(e))
                continue
            if result is not None:
                results.append(result)

        if merchant_patterns and expense.merchant_text:
            results.extend(self.matcher.match(
                expense.merchant_text,
                merchant_patterns,
                extractor=self._extractor,
                threshold=threshold,
            ))

        description_text = expense.description or expense.merchant_text
        if description_patterns and description_text:
            results.extend(self.matcher.match(
                description_text,
                description_patterns,
                extractor=self._extractor,
                threshold=threshold,
            ))

        results.sort(key=lambda r: r.raw_score, reverse=True)
        return results

    def _evaluate_rule(self, expense: ExpenseSnapshot, pattern: Pattern) -> Optional[MatchResult]:
        if pattern.pattern_type is PatternType.REGEX:
            text = " ".join(t for t in (expense.merchant_text, expense.description) if t)
            if not text or not regex_search(pattern.pattern_value, text, self.regex_timeout):
                return None
            return self._rule_match(pattern, MatchType.REGEX, "regex")

        if pattern.pattern_type is PatternType.AMOUNT_RANGE:
            if not matches_amount_range(pattern.pattern_value, expense.amount):
                return None
            return self._rule_match(pattern, MatchType.RANGE, "amount_range")

        if pattern.pattern_type is PatternType.TIME:
            if not matches_time(pattern.pattern_value, expense.transaction_timestamp):
                return None
            return self._rule_match(pattern, MatchType.RANGE, "time")

        return None

    @staticmethod
    def _rule_match(pattern: Pattern, match_type: MatchType, algorithm: str) -> MatchResult:
        return MatchResult(
            pattern=pattern,
            candidate_text=pattern.pattern_value,
            raw_score=1.0,
            algorithm_used=algorithm,
            match_type=match_type,
            algorithm_scores={algorithm: 1.0},
        )
