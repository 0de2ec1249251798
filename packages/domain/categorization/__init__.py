"""
Categorization Module - Pattern-based expense categorization with learning

Components:
1. PatternCache: two-tier (in-process + Redis) cache of active patterns
2. FuzzyMatcher / RuleEvaluator: match merchant text, keywords, amounts,
   times and bounded regexes against an expense
3. ConfidenceCalculator: weighted, calibrated confidence with a breakdown
4. PatternLearner: corrections → pattern stats, creation, merge, decay
5. CategorizationEngine: orchestrates the above

Example flow:
- "STARBUCKS #1234 SEATTLE WA" → normalized "starbucks seattle wa"
  → merchant pattern "starbucks" (token window, 1.0) → category: coffee
  → confidence 0.93 (text 1.00, success rate 0.90, usage 40)
- User corrects "BLUE BOTTLE" to coffee three times → merchant pattern created
"""

from packages.domain.categorization.engine import CategorizationEngine
from packages.domain.categorization.errors import (
    CategorizationError,
    ConflictError,
    DependencyUnavailable,
    MatchTimeout,
    PreconditionError,
    ValidationError,
)
from packages.domain.categorization.factory import assemble_engine, build_engine
from packages.domain.categorization.schemas import (
    CategorizationResult,
    CorrectionEvent,
    ExpenseSnapshot,
    LearningEvent,
    Pattern,
    PatternType,
    UserPreference,
)

__all__ = [
    'CategorizationEngine',
    'CategorizationError',
    'CategorizationResult',
    'ConflictError',
    'CorrectionEvent',
    'DependencyUnavailable',
    'ExpenseSnapshot',
    'LearningEvent',
    'MatchTimeout',
    'Pattern',
    'PatternType',
    'PreconditionError',
    'UserPreference',
    'ValidationError',
    'assemble_engine',
    'build_engine',
]
