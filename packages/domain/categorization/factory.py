"""
Explicit wiring of the categorization engine

build_engine() connects to the database and Redis from settings;
assemble_engine() wires already-constructed storage (tests, embedding apps).
"""
from typing import Optional

import structlog

from packages.common.circuit_breaker import CircuitBreaker
from packages.common.config import Settings, get_settings
from packages.common.database import DatabaseSessionManager
from packages.common.shared_cache import RedisSharedCache, SharedCache
from packages.domain.categorization.confidence_calculator import ConfidenceCalculator
from packages.domain.categorization.engine import CategorizationEngine
from packages.domain.categorization.fuzzy_matcher import FuzzyMatcher
from packages.domain.categorization.pattern_cache import PatternCache
from packages.domain.categorization.pattern_learner import PatternLearner
from packages.domain.categorization.pattern_repository import PatternStore, SqlPatternRepository
from packages.domain.categorization.pattern_rules import RuleEvaluator

logger = structlog.get_logger()


def assemble_engine(
    store: PatternStore,
    shared: Optional[SharedCache],
    settings: Settings,
    *,
    on_shutdown=(),
) -> CategorizationEngine:
    """Construct every component from settings around the given storage"""
    breaker = CircuitBreaker(
        "pattern_cache_shared",
        failure_threshold=settings.circuit_breaker_failure_threshold,
        reset_timeout=settings.circuit_breaker_reset_seconds,
    )
    cache = PatternCache(
        store,
        shared,
        breaker=breaker,
        memory_ttl=settings.pattern_cache_memory_ttl_seconds,
        shared_ttl=settings.pattern_cache_shared_ttl_seconds,
        shared_timeout=settings.pattern_cache_shared_timeout_seconds,
        key_prefix=settings.pattern_cache_key_prefix,
    )
    matcher = FuzzyMatcher(threshold=settings.match_threshold)
    evaluator = RuleEvaluator(matcher, regex_timeout=settings.regex_timeout_seconds)
    learner = PatternLearner(
        store,
        cache,
        evaluator,
        creation_threshold=settings.pattern_creation_threshold,
        merge_threshold=settings.pattern_merge_threshold,
        max_keyword_patterns=settings.max_keyword_patterns,
        decay_after_days=settings.decay_after_days,
        decay_factor=settings.decay_factor,
        retire_min_usage=settings.retire_min_usage,
        retire_max_success_rate=settings.retire_max_success_rate,
    )
    return CategorizationEngine(
        cache,
        evaluator,
        ConfidenceCalculator(),
        learner,
        min_confidence=settings.min_confidence,
        match_threshold=settings.match_threshold,
        batch_concurrency=settings.batch_concurrency,
        batch_size_limit=settings.batch_size_limit,
        check_user_preferences=settings.check_user_preferences,
        preference_min_weight=settings.preference_min_weight,
        preference_boost=settings.preference_boost,
        on_shutdown=on_shutdown,
    )


async def build_engine(settings: Optional[Settings] = None) -> CategorizationEngine:
    """Connect to storage from settings and return a ready engine"""
    settings = settings or get_settings()

    sessions = DatabaseSessionManager()
    await sessions.init(settings.database_url, echo=settings.sql_echo)
    store = SqlPatternRepository(sessions)

    shared = None
    if settings.redis_url:
        shared = RedisSharedCache(
            settings.redis_url,
            socket_timeout=settings.pattern_cache_shared_timeout_seconds,
        )

    logger.info("categorization_engine_built",
                environment=settings.environment,
                shared_cache=shared is not None)
    return assemble_engine(store, shared, settings, on_shutdown=[sessions.close])
