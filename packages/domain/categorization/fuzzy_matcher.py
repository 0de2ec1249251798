"""
Fuzzy Matcher - Ranks candidates by string similarity

Scoring pipeline (ordered stages):
1. Exact short-circuit: identical strings score 1.0
2. Jaro-Winkler (rapidfuzz); plain Jaro when either side is under 4 characters
3. Trigram Jaccard over space-padded character trigrams
Stage scores are combined as a weighted average (0.7 / 0.3 by default).

Token-window alignment: when the two strings have different token counts,
the shorter one is also scored against every contiguous window of the longer
one with the same token count, and the best score wins. This lets
"starbucks seattle wa" match the pattern "starbucks" at 1.0.
"""
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import structlog
from rapidfuzz.distance import Jaro, JaroWinkler

from packages.domain.categorization.errors import ValidationError
from packages.domain.categorization.schemas import MatchResult, MatchType
from packages.domain.categorization.text_extraction import StringExtractor, TextExtractor
from packages.domain.categorization.text_normalizer import normalize, trigrams

logger = structlog.get_logger()

DEFAULT_THRESHOLD = 0.8
SLOW_MATCH_MS = 100.0


class ScoringStage(Protocol):
    name: str

    def score(self, left: str, right: str) -> float:
        ...


class JaroWinklerStage:
    """Jaro-Winkler with the prefix bonus skipped for very short strings"""
    name = "jaro_winkler"

    def __init__(self, min_prefix_length: int = 4):
        self.min_prefix_length = min_prefix_length

    def score(self, left: str, right: str) -> float:
        if not left or not right:
            return 0.0
        if min(len(left), len(right)) < self.min_prefix_length:
            return Jaro.similarity(left, right)
        return JaroWinkler.similarity(left, right)


class TrigramStage:
    """Jaccard similarity of padded character trigram sets"""
    name = "trigram"

    def score(self, left: str, right: str) -> float:
        left_grams = trigrams(left)
        right_grams = trigrams(right)
        if not left_grams or not right_grams:
            return 0.0
        return len(left_grams & right_grams) / len(left_grams | right_grams)


# Optional post-combination adjustment: (left, right, combined) -> adjusted
Penalty = Callable[[str, str, float], float]


@dataclass(frozen=True)
class PipelineScore:
    score: float
    match_type: MatchType
    algorithm: str
    stage_scores: Dict[str, float] = field(default_factory=dict)


class ScoringPipeline:
    """Ordered, weighted scoring stages with an exact short-circuit"""

    def __init__(
        self,
        stages: Sequence[Tuple[ScoringStage, float]],
        penalties: Sequence[Penalty] = (),
    ):
        if not stages:
            raise ValidationError("scoring pipeline needs at least one stage")
        if any(weight < 0 for _, weight in stages) or sum(w for _, w in stages) <= 0:
            raise ValidationError("stage weights must be non-negative and sum above zero")
        self.stages = tuple(stages)
        self.penalties = tuple(penalties)
        self._total_weight = sum(weight for _, weight in self.stages)

    @classmethod
    def default(cls) -> "ScoringPipeline":
        return cls([(JaroWinklerStage(), 0.7), (TrigramStage(), 0.3)])

    @property
    def name(self) -> str:
        if len(self.stages) == 1:
            return self.stages[0][0].name
        return "combined"

    def only(self, stage_name: str) -> "ScoringPipeline":
        """Pipeline restricted to a single named stage"""
        for stage, _ in self.stages:
            if stage.name == stage_name:
                return ScoringPipeline([(stage, 1.0)], self.penalties)
        raise ValidationError("unknown similarity algorithm", algorithm=stage_name)

    def score(self, left: str, right: str) -> PipelineScore:
        if not left or not right:
            return PipelineScore(0.0, MatchType.FUZZY, self.name)
        if left == right:
            return PipelineScore(1.0, MatchType.EXACT, "exact", {"exact": 1.0})

        stage_scores = {stage.name: stage.score(left, right) for stage, _ in self.stages}
        combined = sum(
            stage_scores[stage.name] * weight for stage, weight in self.stages
        ) / self._total_weight
        for penalty in self.penalties:
            combined = penalty(left, right, combined)

        combined = min(1.0, max(0.0, combined))
        return PipelineScore(combined, MatchType.FUZZY, self.name, stage_scores)


class FuzzyMatcher:
    """
    Ranks candidates against a query string.

    Usage:
        matcher = FuzzyMatcher()
        results = matcher.match(
            "STARBUCKS #1234 SEATTLE WA",
            patterns,
            extractor=PatternValueExtractor(),
        )
    """

    def __init__(
        self,
        pipeline: Optional[ScoringPipeline] = None,
        threshold: float = DEFAULT_THRESHOLD,
    ):
        self.pipeline = pipeline or ScoringPipeline.default()
        self.threshold = threshold
        self._lock = threading.Lock()
        self._metrics = {
            "match_calls": 0,
            "candidates_scored": 0,
            "candidates_skipped": 0,
            "matches_returned": 0,
            "slow_operations": 0,
        }

    def similarity(
        self,
        left: Optional[str],
        right: Optional[str],
        algorithm: Optional[str] = None,
        normalize: bool = True,
    ) -> float:
        """Symmetric similarity in [0, 1]"""
        pipeline = self._pipeline_for(algorithm)
        return self._aligned(
            self._prepare(left, normalize),
            self._prepare(right, normalize),
            pipeline,
        ).score

    def match(
        self,
        query: Optional[str],
        candidates: Iterable[Any],
        *,
        extractor: Optional[TextExtractor] = None,
        threshold: Optional[float] = None,
        normalize: bool = True,
        algorithm: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[MatchResult]:
        """
        Score candidates against query.

        Args:
            query: Text to match (e.g. merchant descriptor)
            candidates: Patterns, strings, records... (see extractor)
            extractor: How to read text from a candidate (default: plain strings)
            threshold: Minimum score to keep (default: matcher threshold)
            normalize: Normalize both sides before scoring
            algorithm: Restrict scoring to one stage ("jaro_winkler", "trigram")
            max_results: Truncate the ranked list

        Returns:
            MatchResults with score >= threshold, highest score first
        """
        started = time.perf_counter()
        threshold = self.threshold if threshold is None else threshold
        extractor = extractor or StringExtractor()
        pipeline = self._pipeline_for(algorithm)
        self._count("match_calls")

        query_text = self._prepare(query, normalize)
        if not query_text:
            return []

        results: List[MatchResult] = []
        for candidate in candidates:
            try:
                candidate_text = self._prepare(extractor.extract(candidate), normalize)
                if not candidate_text:
                    self._count("candidates_skipped")
                    continue
                scored = self._aligned(query_text, candidate_text, pipeline)
            except Exception as e:
                self._count("candidates_skipped")
                logger.warning("fuzzy_candidate_skipped",
                               error=str(e),
                               candidate=repr(candidate)[:120])
                continue

            self._count("candidates_scored")
            if scored.score >= threshold:
                results.append(MatchResult(
                    pattern=candidate,
                    candidate_text=candidate_text,
                    raw_score=scored.score,
                    algorithm_used=scored.algorithm,
                    match_type=scored.match_type,
                    algorithm_scores=scored.stage_scores,
                ))

        results.sort(key=lambda r: r.raw_score, reverse=True)
        if max_results is not None:
            results = results[:max_results]

        self._count("matches_returned", len(results))
        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > SLOW_MATCH_MS:
            self._count("slow_operations")
            logger.warning("fuzzy_match_slow",
                           elapsed_ms=round(elapsed_ms, 2),
                           candidates=len(results))
        return results

    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

    def _count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._metrics[name] += amount

    def _pipeline_for(self, algorithm: Optional[str]) -> ScoringPipeline:
        if algorithm is None or algorithm == "combined":
            return self.pipeline
        return self.pipeline.only(algorithm)

    @staticmethod
    def _prepare(text: Optional[str], normalize_text: bool) -> str:
        if not text:
            return ""
        if normalize_text:
            return normalize(text)
        return text.strip()

    @staticmethod
    def _aligned(left: str, right: str, pipeline: ScoringPipeline) -> PipelineScore:
        best = pipeline.score(left, right)
        if best.score >= 1.0 or not left or not right:
            return best

        left_tokens = left.split()
        right_tokens = right.split()
        if len(left_tokens) == len(right_tokens):
            return best

        shorter, longer = sorted((left_tokens, right_tokens), key=len)
        width = len(shorter)
        shorter_text = " ".join(shorter)
        for start in range(len(longer) - width + 1):
            window = " ".join(longer[start:start + width])
            scored = pipeline.score(shorter_text, window)
            if scored.score > best.score:
                best = PipelineScore(
                    scored.score,
                    MatchType.FUZZY,
                    "token_window",
                    {**scored.stage_scores, "window": scored.score},
                )
        return best
