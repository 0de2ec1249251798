import pytest

from packages.common.config import Settings
from packages.domain.categorization import CategorizationEngine, ExpenseSnapshot
from packages.domain.categorization.factory import build_engine


@pytest.fixture
def sqlite_settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/engine.db",
        REDIS_URL=None,
        ENVIRONMENT="test",
    )


@pytest.mark.asyncio
async def test_build_engine_end_to_end(sqlite_settings):
    engine = await build_engine(sqlite_settings)
    await engine.cache.store.create_schema()
    assert engine.cache.shared is None

    expense = ExpenseSnapshot(merchant_text="SQ *BLUE BOTTLE COFFEE #42")
    for _ in range(3):
        await engine.learn(expense, "coffee")

    result = await engine.categorize(ExpenseSnapshot(merchant_text="Blue Bottle Coffee"))
    assert result.category == "coffee"

    await engine.shutdown()
    assert engine.closed


@pytest.mark.asyncio
async def test_create_classmethod_uses_factory(sqlite_settings):
    engine = await CategorizationEngine.create(sqlite_settings)
    try:
        assert engine.min_confidence == sqlite_settings.min_confidence
        assert engine.learner.creation_threshold == 3
    finally:
        await engine.shutdown()
