"""
Data schemas for categorization module
"""
import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class PatternType(str, Enum):
    """What a pattern is matched against"""
    MERCHANT = "merchant"          # Merchant descriptor, fuzzy
    KEYWORD = "keyword"            # Single keyword in description, fuzzy
    DESCRIPTION = "description"    # Free-form description, fuzzy
    AMOUNT_RANGE = "amount_range"  # "min-max" inclusive
    TIME = "time"                  # Named bucket or "HH:MM-HH:MM"
    REGEX = "regex"                # Bounded regular expression

    @property
    def is_textual(self) -> bool:
        return self in (PatternType.MERCHANT, PatternType.KEYWORD, PatternType.DESCRIPTION)


class MatchType(str, Enum):
    """How a candidate matched"""
    EXACT = "exact"
    FUZZY = "fuzzy"
    RANGE = "range"
    REGEX = "regex"


class PatternStage(str, Enum):
    """Derived lifecycle stage of a pattern"""
    TESTING = "testing"
    PROBATION = "probation"
    ACTIVE = "active"
    MATURE = "mature"
    DECLINING = "declining"
    RETIRED = "retired"


class Pattern(BaseModel):
    """
    A learned or seeded categorization rule.

    Frozen: every mutation goes through evolve(), which returns a validated
    copy. lock_version is the optimistic concurrency token checked by the
    pattern store on update.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, description="Assigned by the pattern store")
    category_id: str = Field(..., min_length=1)
    pattern_type: PatternType
    pattern_value: str = Field(..., min_length=1)
    confidence_weight: float = Field(default=1.0, ge=0.0, le=1.0)
    usage_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_matched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    lock_version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_counts(self):
        if self.success_count > self.usage_count:
            raise ValueError(
                f"success_count ({self.success_count}) exceeds usage_count ({self.usage_count})"
            )
        return self

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.usage_count == 0:
            return 0.0
        return self.success_count / self.usage_count

    @computed_field
    @property
    def quality_score(self) -> float:
        """0-100 blend of success rate, usage volume and weight"""
        volume = min(1.0, math.log10(self.usage_count + 1) / 3)
        score = 0.5 * self.success_rate + 0.3 * volume + 0.2 * self.confidence_weight
        return round(100 * score, 2)

    @property
    def scope(self) -> Optional[str]:
        """Scope name (e.g. a bank); None means global"""
        return self.metadata.get("scope")

    @property
    def stage(self) -> PatternStage:
        if not self.active:
            return PatternStage.RETIRED
        if self.usage_count < 10:
            return PatternStage.TESTING
        if self.success_rate < 0.5 and self.usage_count > 50:
            return PatternStage.DECLINING
        if self.usage_count > 100 and self.success_rate > 0.8:
            return PatternStage.MATURE
        if self.usage_count < 50 and self.success_rate < 0.7:
            return PatternStage.PROBATION
        return PatternStage.ACTIVE

    def evolve(self, **changes: Any) -> "Pattern":
        """Return a validated copy with changes applied"""
        data = self.model_dump(exclude={"success_rate", "quality_score"})
        data.update(changes)
        return type(self).model_validate(data)


class ExpenseSnapshot(BaseModel):
    """Read-only view of the expense being categorized"""
    model_config = ConfigDict(frozen=True)

    merchant_text: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_timestamp: Optional[datetime] = None
    scope: Optional[str] = Field(None, description="Pattern scope, e.g. bank name")
    expense_id: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return bool((self.merchant_text or "").strip() or (self.description or "").strip())


class MatchResult(BaseModel):
    """One candidate that cleared the match threshold"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    pattern: Any = Field(..., description="The matched candidate (a Pattern for rule matching)")
    candidate_text: str = ""
    raw_score: float = Field(..., ge=0.0, le=1.0)
    algorithm_used: str
    match_type: MatchType
    algorithm_scores: Dict[str, float] = Field(default_factory=dict)


class FactorScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = Field(..., ge=0.0, le=1.0)
    weight: float = Field(..., ge=0.0)


class ConfidenceBreakdown(BaseModel):
    """Per-factor contribution to a confidence score"""
    model_config = ConfigDict(frozen=True)

    factors: Dict[str, FactorScore]
    missing: List[str] = Field(default_factory=list)
    raw_score: float
    final_score: float

    def contribution(self, name: str) -> float:
        """Share of the weighted mean contributed by one factor"""
        total_weight = sum(f.weight for f in self.factors.values())
        factor = self.factors.get(name)
        if factor is None or total_weight == 0:
            return 0.0
        return factor.score * factor.weight / total_weight

    def explain(self) -> str:
        parts = [
            f"{name} {factor.score:.2f} (weight {factor.weight:.2f})"
            for name, factor in sorted(
                self.factors.items(), key=lambda item: item[1].weight, reverse=True
            )
        ]
        text = ", ".join(parts)
        if self.missing:
            text += f"; not used: {', '.join(self.missing)}"
        return f"{text}; weighted {self.raw_score:.4f} -> confidence {self.final_score:.4f}"


class CategoryAlternative(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    confidence: float
    pattern_id: Optional[str] = None


class CategorizationResult(BaseModel):
    """Outcome of Engine.categorize"""
    model_config = ConfigDict(frozen=True)

    category: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    patterns_used: List[str] = Field(default_factory=list)
    breakdown: Optional[ConfidenceBreakdown] = None
    error: Optional[str] = None
    explanation: str = ""
    alternatives: List[CategoryAlternative] = Field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def successful(self) -> bool:
        return self.category is not None and self.error is None

    @property
    def confidence_level(self) -> str:
        if self.confidence >= 0.95:
            return "very_high"
        if self.confidence >= 0.85:
            return "high"
        if self.confidence >= 0.70:
            return "medium"
        if self.confidence >= 0.50:
            return "low"
        return "very_low"

    @classmethod
    def no_match(cls, reason: str, processing_time_ms: float = 0.0, **extra: Any) -> "CategorizationResult":
        return cls(
            category=None,
            confidence=0.0,
            explanation=reason,
            processing_time_ms=processing_time_ms,
            **extra,
        )

    @classmethod
    def failed(cls, error: str, processing_time_ms: float = 0.0) -> "CategorizationResult":
        return cls(
            category=None,
            confidence=0.0,
            error=error,
            explanation=f"Categorization failed: {error}",
            processing_time_ms=processing_time_ms,
        )


class CorrectionEvent(BaseModel):
    """User correction of a categorization"""
    expense: ExpenseSnapshot
    correct_category: str = Field(..., min_length=1)
    predicted_category: Optional[str] = None
    predicted_pattern_ids: List[str] = Field(default_factory=list)


class LearningResult(BaseModel):
    """Outcome of applying one correction"""
    success: bool = True
    patterns_created: List[str] = Field(default_factory=list)
    patterns_updated: List[str] = Field(default_factory=list)
    patterns_merged: List[str] = Field(default_factory=list)
    patterns_retired: List[str] = Field(default_factory=list)
    correction_tally: Optional[int] = None
    learning_event_id: Optional[str] = None
    error: Optional[str] = None


class BatchLearningResult(BaseModel):
    """Outcome of an atomic batch of corrections"""
    total: int
    applied: List[int] = Field(default_factory=list)
    skipped: Dict[int, str] = Field(default_factory=dict)
    failed: Dict[int, str] = Field(default_factory=dict)
    rolled_back: bool = False
    results: List[LearningResult] = Field(default_factory=list)


class UserPreference(BaseModel):
    """
    Category a user keeps choosing for one merchant.

    preference_weight grows by one per agreeing correction and restarts at
    one when the user switches the merchant to another category.
    """
    model_config = ConfigDict(frozen=True)

    merchant_key: str = Field(..., min_length=1, description="Normalized merchant text")
    category_id: str = Field(..., min_length=1)
    preference_weight: float = Field(default=1.0, ge=0.0)
    usage_count: int = Field(default=1, ge=0)
    updated_at: Optional[datetime] = None

    def confidence(self, boost: float = 0.15) -> float:
        """min(weight / 10, 1) plus boost, capped at 1"""
        return round(min(min(self.preference_weight / 10.0, 1.0) + boost, 1.0), 4)


class LearningEvent(BaseModel):
    """Audit record written for every applied correction"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    expense_id: Optional[str] = None
    category_id: str
    predicted_category: Optional[str] = None
    was_correct: bool
    feedback_type: str = Field(..., description="\"accepted\" or \"correction\"")
    pattern_used: str = Field(default="manual", description="\"type:value\" of the learned pattern")
    confidence_score: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: Optional[datetime] = None


class MaintenanceResult(BaseModel):
    """Outcome of a decay / retirement sweep"""
    patterns_examined: int = 0
    patterns_decayed: List[str] = Field(default_factory=list)
    patterns_retired: List[str] = Field(default_factory=list)
