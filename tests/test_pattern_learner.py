from datetime import timedelta
from decimal import Decimal

import pytest

from packages.domain.categorization.errors import ConflictError, ValidationError
from packages.domain.categorization.schemas import CorrectionEvent, ExpenseSnapshot, PatternType
from tests.conftest import NOW, make_expense

BLUE_BOTTLE = "SQ *BLUE BOTTLE COFFEE #42"


def _active(store, **criteria):
    return [
        p for p in store.patterns.values()
        if p.active and all(getattr(p, name) == value for name, value in criteria.items())
    ]


@pytest.mark.asyncio
async def test_third_identical_correction_creates_pattern(learner, store):
    expense = make_expense(BLUE_BOTTLE, amount=Decimal("5.75"), transaction_timestamp=NOW)

    first = await learner.apply_correction(expense, "coffee")
    second = await learner.apply_correction(expense, "coffee")
    assert (first.correction_tally, second.correction_tally) == (1, 2)
    assert store.patterns == {}

    third = await learner.apply_correction(expense, "coffee")

    [pattern] = _active(store)
    assert third.patterns_created == [pattern.id]
    assert pattern.pattern_type is PatternType.MERCHANT
    assert pattern.pattern_value == "blue bottle coffee"
    assert pattern.category_id == "coffee"
    assert (pattern.usage_count, pattern.success_count) == (3, 3)
    assert pattern.metadata["typical_amount"] == 5.75
    assert pattern.metadata["temporal"] == {"hours": {"12": 1}, "weekdays": {"0": 1}}


@pytest.mark.asyncio
async def test_tallies_are_per_category(learner, store):
    expense = make_expense(BLUE_BOTTLE)
    await learner.apply_correction(expense, "coffee")
    await learner.apply_correction(expense, "coffee")
    result = await learner.apply_correction(expense, "dining")

    assert result.correction_tally == 1
    assert store.patterns == {}


@pytest.mark.asyncio
async def test_description_keywords_are_learned_without_merchant(learner, store):
    expense = make_expense(description="Netflix subscription")
    for _ in range(3):
        await learner.apply_correction(expense, "streaming")

    patterns = _active(store)
    assert {p.pattern_type for p in patterns} == {PatternType.KEYWORD}
    assert {p.pattern_value for p in patterns} == {"netflix", "subscription"}
    assert store.preferences == {}


@pytest.mark.asyncio
async def test_existing_pattern_records_success(learner, store):
    starbucks = store.seed("starbucks", "coffee")

    result = await learner.apply_correction(make_expense("Starbucks"), "coffee")

    assert result.patterns_updated == [starbucks.id]
    stored = store.patterns[starbucks.id]
    assert (stored.usage_count, stored.success_count) == (1, 1)
    assert stored.last_matched_at is not None
    assert stored.lock_version == 1


@pytest.mark.asyncio
async def test_wrong_prediction_records_failure_on_given_patterns(learner, store):
    dining = store.seed("starbucks", "dining", usage_count=10, success_count=8)

    result = await learner.apply_correction(
        make_expense("Starbucks"), "coffee",
        predicted_category="dining",
        predicted_pattern_ids=[dining.id],
    )

    stored = store.patterns[dining.id]
    assert (stored.usage_count, stored.success_count) == (11, 8)
    assert result.patterns_updated == [dining.id]
    assert result.correction_tally == 1


@pytest.mark.asyncio
async def test_wrong_prediction_without_ids_finds_matching_patterns(learner, store):
    dining = store.seed("starbucks", "dining", usage_count=10, success_count=8)
    store.seed("pizza hut", "dining", usage_count=10, success_count=8)

    await learner.apply_correction(make_expense("STARBUCKS #55"), "coffee", predicted_category="dining")

    assert store.patterns[dining.id].usage_count == 11
    assert [p.usage_count for p in _active(store, pattern_value="pizza hut")] == [10]


@pytest.mark.asyncio
async def test_failing_pattern_is_retired(learner, store):
    dining = store.seed("starbucks", "dining", usage_count=50, success_count=14)

    result = await learner.apply_correction(
        make_expense("Starbucks"), "coffee",
        predicted_category="dining",
        predicted_pattern_ids=[dining.id],
    )

    assert result.patterns_retired == [dining.id]
    assert not store.patterns[dining.id].active


@pytest.mark.asyncio
async def test_confirmed_prediction_is_counted_once(learner, store):
    starbucks = store.seed("starbucks", "coffee", usage_count=10, success_count=8)

    result = await learner.apply_correction(
        make_expense("Starbucks"), "coffee",
        predicted_category="coffee",
        predicted_pattern_ids=[starbucks.id],
    )

    assert result.patterns_updated == [starbucks.id]
    stored = store.patterns[starbucks.id]
    assert (stored.usage_count, stored.success_count) == (11, 9)


@pytest.mark.asyncio
async def test_near_duplicates_merge_into_better_performer(learner, store):
    keeper = store.seed("starbucks", "coffee", usage_count=20, success_count=18)
    inferior = store.seed("starbuck", "coffee", usage_count=10, success_count=5)
    store.seed("starbuck", "dining", usage_count=10, success_count=5)

    result = await learner.merge_similar(inferior.id)

    assert result.patterns_merged == [inferior.id]
    assert not store.patterns[inferior.id].active
    merged = store.patterns[keeper.id]
    assert (merged.usage_count, merged.success_count) == (30, 23)
    assert len(_active(store, category_id="dining")) == 1


@pytest.mark.asyncio
async def test_correction_triggers_merge(learner, store):
    keeper = store.seed("starbucks", "coffee", usage_count=20, success_count=18)
    inferior = store.seed("starbuck", "coffee", usage_count=10, success_count=5)

    result = await learner.apply_correction(make_expense("Starbucks"), "coffee")

    assert result.patterns_merged == [inferior.id]
    merged = store.patterns[keeper.id]
    assert (merged.usage_count, merged.success_count) == (31, 24)


@pytest.mark.asyncio
async def test_merge_combines_amount_statistics(learner, store):
    keeper = store.seed("starbucks", "coffee", usage_count=20, success_count=18,
                        metadata={"amount_stats": {"count": 3, "mean": 4.0}})
    inferior = store.seed("starbuck", "coffee", usage_count=10, success_count=5,
                          metadata={"amount_stats": {"count": 1, "mean": 8.0}})

    await learner.merge_similar(inferior.id)

    metadata = store.patterns[keeper.id].metadata
    assert metadata["amount_stats"] == {"count": 4, "mean": 5.0}
    assert metadata["typical_amount"] == 5.0


@pytest.mark.asyncio
async def test_maintenance_decays_idle_patterns(learner, store, long_ago):
    idle = store.seed("netflix", "streaming", created_at=long_ago)
    recent = store.seed("spotify", "streaming", created_at=long_ago,
                        last_matched_at=NOW - timedelta(days=1))

    first = await learner.run_maintenance(now=NOW)
    assert first.patterns_decayed == [idle.id]
    assert store.patterns[idle.id].confidence_weight == pytest.approx(0.9)

    await learner.run_maintenance(now=NOW)
    assert store.patterns[idle.id].confidence_weight == pytest.approx(0.81)
    assert store.patterns[recent.id].confidence_weight == 1.0


@pytest.mark.asyncio
async def test_maintenance_retires_failing_patterns(learner, store, engine):
    failing = store.seed("shell", "fuel", usage_count=60, success_count=10, last_matched_at=NOW)
    healthy = store.seed("chevron", "fuel", usage_count=60, success_count=50, last_matched_at=NOW)

    result = await learner.run_maintenance(now=NOW)

    assert result.patterns_retired == [failing.id]
    assert result.patterns_examined == 2
    assert store.patterns[healthy.id].active
    assert engine.cache.metrics()["invalidations"] == 1


@pytest.mark.asyncio
async def test_conflicting_write_is_retried_once(learner, store):
    starbucks = store.seed("starbucks", "coffee")
    store.conflicts_to_inject = 1

    await learner.apply_correction(make_expense("Starbucks"), "coffee")

    stored = store.patterns[starbucks.id]
    assert stored.usage_count == 1
    assert stored.lock_version == 2


@pytest.mark.asyncio
async def test_persistent_conflict_surfaces_and_rolls_back(learner, store):
    starbucks = store.seed("starbucks", "coffee")
    store.conflicts_to_inject = 2

    with pytest.raises(ConflictError):
        await learner.apply_correction(make_expense("Starbucks"), "coffee")

    assert store.patterns[starbucks.id] == starbucks


@pytest.mark.asyncio
@pytest.mark.parametrize("expense,category", [
    (make_expense(amount=Decimal("5")), "coffee"),
    (make_expense("   "), "coffee"),
    (make_expense("Starbucks"), ""),
    (make_expense("Starbucks"), "   "),
])
async def test_malformed_corrections_are_rejected(learner, store, expense, category):
    with pytest.raises(ValidationError):
        await learner.apply_correction(expense, category)
    assert store.tallies == {}


@pytest.mark.asyncio
async def test_learning_invalidates_cached_patterns(engine, store):
    store.seed("starbucks", "coffee")
    await engine.cache.fetch("all")

    await engine.learner.apply_correction(make_expense("Starbucks"), "coffee")
    [pattern] = await engine.cache.fetch("all")

    assert pattern.usage_count == 1
    assert store.list_active_calls == 2


@pytest.mark.asyncio
async def test_tally_only_correction_keeps_cache(engine, store):
    await engine.learner.apply_correction(make_expense(BLUE_BOTTLE), "coffee")
    assert engine.cache.metrics()["invalidations"] == 0


@pytest.mark.asyncio
async def test_batch_skips_malformed_items(learner, store):
    corrections = [
        {"expense": {"merchant_text": BLUE_BOTTLE}, "correct_category": "coffee"},
        {"expense": {"merchant_text": BLUE_BOTTLE}, "correct_category": ""},
        CorrectionEvent(expense=ExpenseSnapshot(amount=Decimal("3")), correct_category="coffee"),
        {"correct_category": "coffee"},
    ]

    result = await learner.apply_batch(corrections)

    assert result.total == 4
    assert result.applied == [0]
    assert sorted(result.skipped) == [1, 2, 3]
    assert not result.rolled_back
    assert store.tallies == {("merchant:blue bottle coffee", "coffee"): 1}


@pytest.mark.asyncio
async def test_batch_creates_pattern_within_one_transaction(learner, store):
    corrections = [{"expense": {"merchant_text": BLUE_BOTTLE}, "correct_category": "coffee"}] * 3

    result = await learner.apply_batch(corrections)

    assert result.applied == [0, 1, 2]
    assert len(result.results[2].patterns_created) == 1
    assert len(_active(store)) == 1


@pytest.mark.asyncio
async def test_batch_failure_rolls_everything_back(learner, store):
    starbucks = store.seed("starbucks", "coffee")
    store.fail_on_create = True
    corrections = [{"expense": {"merchant_text": "Starbucks"}, "correct_category": "coffee"}] + [
        {"expense": {"merchant_text": BLUE_BOTTLE}, "correct_category": "coffee"}
    ] * 3

    result = await learner.apply_batch(corrections)

    assert result.rolled_back
    assert result.applied == []
    assert sorted(result.failed) == [0, 1, 2, 3]
    assert store.tallies == {}
    assert store.patterns == {starbucks.id: starbucks}


@pytest.mark.asyncio
async def test_corrections_after_creation_update_the_same_pattern(learner, store):
    expense = make_expense(BLUE_BOTTLE)
    for _ in range(3):
        await learner.apply_correction(expense, "coffee")
    assert store.tallies == {}

    fourth = await learner.apply_correction(expense, "coffee")
    fifth = await learner.apply_correction(expense, "coffee")

    [pattern] = _active(store)
    assert fourth.patterns_created == fifth.patterns_created == []
    assert fourth.patterns_updated == fifth.patterns_updated == [pattern.id]
    assert (pattern.usage_count, pattern.success_count) == (5, 5)
    assert len(store.patterns) == 1


@pytest.mark.asyncio
async def test_near_variant_strengthens_existing_pattern_instead_of_duplicating(learner, store):
    keeper = store.seed("starbucks coffee", "coffee", usage_count=20, success_count=20)

    for _ in range(5):
        result = await learner.apply_correction(make_expense("STARBUCKS COFFEES"), "coffee")
        assert result.patterns_created == []
        assert result.patterns_updated == [keeper.id]

    merged = store.patterns[keeper.id]
    assert (merged.usage_count, merged.success_count) == (25, 25)
    assert list(store.patterns) == [keeper.id]
    assert store.tallies == {}


@pytest.mark.asyncio
async def test_corrections_after_a_merge_go_to_the_keeper(learner, store):
    expense = make_expense(BLUE_BOTTLE)
    for _ in range(3):
        created = await learner.apply_correction(expense, "coffee")
    [learned_id] = created.patterns_created

    keeper = store.seed("blue bottle coffees", "coffee", usage_count=20, success_count=20)
    merge = await learner.merge_similar(learned_id)
    assert merge.patterns_merged == [learned_id]

    later = [await learner.apply_correction(expense, "coffee") for _ in range(2)]

    assert all(r.patterns_created == [] and r.patterns_updated == [keeper.id] for r in later)
    [pattern] = _active(store)
    assert pattern.id == keeper.id
    assert (pattern.usage_count, pattern.success_count) == (25, 25)
    assert store.tallies == {}


@pytest.mark.asyncio
async def test_merchant_and_description_keywords_are_learned_together(learner, store):
    expense = make_expense("Spotify", description="Premium family subscription")
    for _ in range(3):
        await learner.apply_correction(expense, "streaming")

    learned = {(p.pattern_type, p.pattern_value) for p in _active(store)}
    assert learned == {
        (PatternType.MERCHANT, "spotify"),
        (PatternType.KEYWORD, "premium"),
        (PatternType.KEYWORD, "family"),
        (PatternType.KEYWORD, "subscription"),
    }


@pytest.mark.asyncio
async def test_keyword_sources_are_capped(learner, store):
    learner.max_keyword_patterns = 1
    expense = make_expense(description="Premium family subscription")
    for _ in range(3):
        await learner.apply_correction(expense, "streaming")

    assert [p.pattern_value for p in _active(store)] == ["premium"]


@pytest.mark.asyncio
async def test_merchant_preference_grows_and_switches(learner, store):
    expense = make_expense(BLUE_BOTTLE)
    await learner.apply_correction(expense, "coffee")
    await learner.apply_correction(make_expense("SQ *BLUE BOTTLE COFFEE #7"), "coffee")

    preference = store.preferences["blue bottle coffee"]
    assert preference.category_id == "coffee"
    assert (preference.preference_weight, preference.usage_count) == (2, 2)

    await learner.apply_correction(expense, "dining")

    preference = store.preferences["blue bottle coffee"]
    assert preference.category_id == "dining"
    assert (preference.preference_weight, preference.usage_count) == (1, 1)


@pytest.mark.asyncio
async def test_every_correction_leaves_an_audit_event(learner, store):
    starbucks = store.seed("starbucks", "coffee", confidence_weight=0.8)

    corrected = await learner.apply_correction(
        make_expense("Starbucks", expense_id="exp-1"), "coffee", predicted_category="dining",
    )
    accepted = await learner.apply_correction(
        make_expense("Blue Bottle", expense_id="exp-2"), "coffee",
        predicted_category="coffee", predicted_pattern_ids=[starbucks.id],
    )

    first, second = store.events
    assert corrected.learning_event_id == first.id
    assert accepted.learning_event_id == second.id
    assert (first.expense_id, first.feedback_type, first.was_correct) == ("exp-1", "correction", False)
    assert first.pattern_used == "merchant:starbucks"
    assert first.confidence_score == 0.8
    assert first.predicted_category == "dining"
    assert (second.feedback_type, second.was_correct) == ("accepted", True)
    assert second.pattern_used == "manual"
    assert second.confidence_score == 1.0


@pytest.mark.asyncio
async def test_failed_batch_leaves_no_audit_or_preference(learner, store):
    store.fail_on_create = True
    corrections = [{"expense": {"merchant_text": BLUE_BOTTLE}, "correct_category": "coffee"}] * 3

    result = await learner.apply_batch(corrections)

    assert result.rolled_back
    assert store.events == []
    assert store.preferences == {}
