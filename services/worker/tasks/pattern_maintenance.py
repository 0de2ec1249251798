"""
Pattern maintenance tasks

- run_maintenance: nightly decay of idle patterns + retirement of failing ones
- warm_cache: keep the shared pattern cache populated
- apply_corrections: atomic batch of user corrections (bulk re-categorization)

Each task builds its own engine inside asyncio.run(): async database pools
are bound to the event loop that created them.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog
from celery import Task

from services.worker.celery_app import app
from packages.common.config import get_settings
from packages.domain.categorization.engine import CategorizationEngine
from packages.domain.categorization.errors import ConflictError, DependencyUnavailable
from packages.domain.categorization.factory import build_engine

logger = structlog.get_logger()

T = TypeVar("T")


class PatternTask(Task):
    """Base task for pattern work with retry on transient failures"""
    autoretry_for = (DependencyUnavailable, ConflictError, ConnectionError)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True


async def _with_engine(operation: Callable[[CategorizationEngine], Awaitable[T]]) -> T:
    engine = await build_engine(get_settings())
    try:
        return await operation(engine)
    finally:
        await engine.shutdown()


@app.task(base=PatternTask, name="services.worker.tasks.pattern_maintenance.run_maintenance")
def run_maintenance_task() -> Dict[str, Any]:
    """
    Decay idle patterns and retire failing ones.

    Returns:
        MaintenanceResult as a dict
    """
    logger.info("pattern_maintenance_started")
    result = asyncio.run(_with_engine(lambda engine: engine.run_maintenance()))
    return result.model_dump(mode="json")


@app.task(base=PatternTask, name="services.worker.tasks.pattern_maintenance.warm_cache")
def warm_cache_task(scopes: Optional[List[str]] = None) -> Dict[str, Any]:
    """Pre-populate the pattern cache for the given scopes (default: all)"""
    scopes = scopes or ["all"]
    return asyncio.run(_with_engine(lambda engine: engine.warm(scopes)))


@app.task(base=PatternTask, name="services.worker.tasks.pattern_maintenance.apply_corrections")
def apply_corrections_task(corrections: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Apply a batch of corrections atomically.

    Args:
        corrections: CorrectionEvent payloads (JSON)

    Returns:
        BatchLearningResult as a dict
    """
    logger.info("batch_corrections_started", corrections=len(corrections))
    result = asyncio.run(_with_engine(lambda engine: engine.learn_batch(corrections)))
    if result.rolled_back:
        logger.error("batch_corrections_rolled_back", failed=len(result.failed))
    return result.model_dump(mode="json")
