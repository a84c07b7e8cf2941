import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from mealplanner.core.errors import AITransportError, NotFoundError
from mealplanner.models import PantryItem, PreferenceSummary, Recipe, RecipeHistory, RecipeIngredient
from mealplanner.schemas import GeneratedRecipe, IngredientLine
from mealplanner.services.preferences import (
    CompactionTrigger,
    compact_history_if_needed,
    count_rated_history,
    mark_recipe_cooked,
    merge_preference_lists,
    rate_recipe,
    recent_recipe_hashes,
    recent_recipe_names,
    recipe_hash,
    score_preferences,
    update_preference_summary,
)

BASE_TIME = datetime(2025, 1, 1, 18, 0, tzinfo=timezone.utc)

DIGEST = json.dumps({
    "summary": "Enjoys Thai food and quick weeknight bowls.",
    "likes": ["Thai cuisine", "bowls"],
    "dislikes": ["olives"],
})


def _history(db, count, rating=4, tags=("quick",), start=BASE_TIME):
    for i in range(count):
        db.add(RecipeHistory(
            recipe_name=f"Dish {i}",
            recipe_hash=f"hash{i}",
            rating=rating,
            would_make_again=True,
            cooked_at=start + timedelta(days=i),
            tags=list(tags),
            ingredients=["rice", "egg"],
        ))
    db.commit()


def _digest_ai(scripted_ai, answer=DIGEST):
    def respond(prompt, system):
        assert "RECIPE HISTORY" in prompt
        return answer
    return scripted_ai(respond)


def test_recipe_hash_ignores_title_and_order():
    a = GeneratedRecipe(name="A", tags=["Quick", "thai"], ingredients=[
        IngredientLine(ingredient_name="Rice"), IngredientLine(ingredient_name="egg"),
    ])
    b = GeneratedRecipe(name="B", tags=["thai", "quick"], ingredients=[
        IngredientLine(ingredient_name="egg"), IngredientLine(ingredient_name="rice"),
    ])
    assert recipe_hash(a) == recipe_hash(b)
    assert len(recipe_hash(a)) == 16


def test_recent_hashes_and_names(db_session):
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    db_session.add(RecipeHistory(recipe_name="Old", recipe_hash="old", cooked_at=now - timedelta(days=200)))
    db_session.add(RecipeHistory(recipe_name="New", recipe_hash="new", cooked_at=now - timedelta(days=10)))
    db_session.add(RecipeHistory(recipe_name="New", recipe_hash="new", cooked_at=now - timedelta(days=5)))
    db_session.commit()

    assert recent_recipe_hashes(db_session, now=now) == ["new"]
    assert recent_recipe_names(db_session, now=now) == ["New"]


def test_score_preferences_thresholds(db_session):
    _history(db_session, 2, rating=5, tags=("thai",))
    _history(db_session, 2, rating=1, tags=("spicy",), start=BASE_TIME + timedelta(days=30))
    # Single rating is not enough signal
    _history(db_session, 1, rating=5, tags=("french",), start=BASE_TIME + timedelta(days=60))

    learned = score_preferences(db_session)

    assert learned.liked_tags == ["thai"]
    assert learned.disliked_tags == ["spicy"]
    assert "french" not in learned.liked_tags


def test_score_preferences_merges_stored_summary(db_session):
    _history(db_session, 2, rating=1, tags=("spicy",))
    db_session.add(PreferenceSummary(
        id=1, summary_text="Likes BBQ.", likes=["Spicy", "BBQ"], dislikes=["olives"], entries_processed=40,
    ))
    db_session.commit()

    learned = score_preferences(db_session)

    assert learned.summary_text == "Likes BBQ."
    # Fresh dislike wins over the stored like
    assert "spicy" not in learned.liked_tags
    assert "bbq" in learned.liked_tags
    assert "olives" in learned.disliked_ingredients


def test_merge_preference_lists():
    merged = merge_preference_lists(["Thai", "bowls"], ["thai", "olives", "pasta"], ["olives"])
    assert merged == ["Thai", "bowls", "pasta"]
    assert len(merge_preference_lists([f"x{i}" for i in range(30)], [], [])) == 20


def test_update_preference_summary_creates_row(db_session):
    summary = update_preference_summary(db_session, summary_text="Hand edited", likes=["a", "A", "b"])
    assert summary.summary_text == "Hand edited"
    assert summary.likes == ["a", "b"]
    assert summary.dislikes == []


@pytest.mark.asyncio
async def test_compaction_over_threshold(db_session, scripted_ai):
    _history(db_session, 51)
    ai = _digest_ai(scripted_ai)

    compacted = await compact_history_if_needed(db_session, ai)

    assert compacted == 31
    assert count_rated_history(db_session) == 20
    remaining = db_session.scalars(select(RecipeHistory).order_by(RecipeHistory.cooked_at)).all()
    # Newest 20 are kept
    assert remaining[0].recipe_name == "Dish 31"

    summary = db_session.get(PreferenceSummary, 1)
    assert summary.summary_text.startswith("Enjoys Thai")
    assert summary.likes == ["Thai cuisine", "bowls"]
    assert summary.dislikes == ["olives"]
    assert summary.entries_processed == 31


@pytest.mark.asyncio
async def test_compaction_merges_existing_summary(db_session, scripted_ai):
    _history(db_session, 51)
    db_session.add(PreferenceSummary(
        id=1, summary_text="Old profile", likes=["olives", "pasta"], dislikes=["mushrooms"], entries_processed=10,
    ))
    db_session.commit()
    ai = _digest_ai(scripted_ai)

    await compact_history_if_needed(db_session, ai)

    assert "PREVIOUS SUMMARY" in ai.calls[0]["prompt"]
    summary = db_session.get(PreferenceSummary, 1)
    assert summary.likes == ["Thai cuisine", "bowls", "pasta"]
    assert summary.dislikes == ["olives", "mushrooms"]
    assert summary.entries_processed == 41


@pytest.mark.asyncio
async def test_compaction_at_threshold_does_nothing(db_session, scripted_ai):
    _history(db_session, 50)
    ai = _digest_ai(scripted_ai)

    assert await compact_history_if_needed(db_session, ai) == 0
    assert ai.calls == []
    assert count_rated_history(db_session) == 50


@pytest.mark.asyncio
async def test_compaction_failure_keeps_history(db_session, scripted_ai):
    _history(db_session, 51)
    ai = scripted_ai(lambda p, s: AITransportError("boom"))

    assert await compact_history_if_needed(db_session, ai) == 0
    assert count_rated_history(db_session) == 51
    assert db_session.get(PreferenceSummary, 1) is None


@pytest.mark.asyncio
async def test_compaction_malformed_keeps_history(db_session, scripted_ai):
    _history(db_session, 51)
    ai = _digest_ai(scripted_ai, answer='{"likes": ["x"]}')

    assert await compact_history_if_needed(db_session, ai) == 0
    assert count_rated_history(db_session) == 51


@pytest.mark.asyncio
async def test_compaction_deferred_without_ai(db_session, scripted_ai):
    _history(db_session, 60)
    ai = _digest_ai(scripted_ai)
    ai.available = False

    assert await compact_history_if_needed(db_session, ai) == 0
    assert count_rated_history(db_session) == 60


@pytest.mark.asyncio
async def test_trigger_runs_do_not_overlap(db_session, session_factory, scripted_ai):
    _history(db_session, 51)
    ai = _digest_ai(scripted_ai)
    trigger = CompactionTrigger(session_factory, ai)

    first = trigger.fire()
    second = trigger.fire()
    assert first is second
    assert trigger.running

    await first
    assert not trigger.running
    assert len(ai.calls) == 1
    assert count_rated_history(db_session) == 20


def test_trigger_without_loop_runs_inline(db_session, session_factory, scripted_ai):
    _history(db_session, 51)
    trigger = CompactionTrigger(session_factory, _digest_ai(scripted_ai))

    assert trigger.fire() is None
    assert count_rated_history(db_session) == 20


def test_rate_recipe_updates_newest_entry(db_session):
    db_session.add(RecipeHistory(recipe_name="Pad Thai", recipe_hash="h", cooked_at=BASE_TIME))
    db_session.add(RecipeHistory(recipe_name="Pad Thai", recipe_hash="h", cooked_at=BASE_TIME + timedelta(days=7)))
    db_session.commit()

    entry = rate_recipe(db_session, "Pad Thai", 5, True, notes="Great")

    rows = db_session.scalars(select(RecipeHistory).order_by(RecipeHistory.cooked_at)).all()
    assert len(rows) == 2
    assert rows[0].rating is None
    assert rows[1].id == entry.id
    assert entry.rating == 5
    assert entry.notes == "Great"


def test_rate_recipe_appends_with_snapshot(db_session):
    db_session.add(Recipe(
        name="Beef Tacos", recipe_hash="tacohash", tags=["mexican"], meal_format="taco", main_protein="beef",
        ingredients=[RecipeIngredient(position=0, name="beef", quantity=500, unit="g")],
    ))
    db_session.commit()

    entry = rate_recipe(db_session, "Beef Tacos", 2, False)

    assert entry.recipe_id is not None
    assert entry.recipe_hash == "tacohash"
    assert entry.tags == ["mexican"]
    assert entry.ingredients == ["beef"]
    assert entry.main_protein == "beef"


def test_rate_recipe_rejects_out_of_range(db_session):
    with pytest.raises(ValueError):
        rate_recipe(db_session, "Anything", 6, True)


@pytest.mark.asyncio
async def test_rate_recipe_fires_trigger(db_session, session_factory, scripted_ai):
    _history(db_session, 50)
    trigger = CompactionTrigger(session_factory, _digest_ai(scripted_ai))

    rate_recipe(db_session, "Brand New", 4, True, trigger=trigger)
    assert trigger.running
    # Let the scheduled run finish
    while trigger.running:
        await asyncio.sleep(0.01)

    assert count_rated_history(db_session) == 20


@pytest.mark.asyncio
async def test_rate_recipe_keeps_history_when_summary_fails(db_session, session_factory, scripted_ai):
    _history(db_session, 50)
    ai = scripted_ai(lambda p, s: AITransportError("upstream down"))
    trigger = CompactionTrigger(session_factory, ai)

    entry = rate_recipe(db_session, "Brand New", 4, True, trigger=trigger)
    while trigger.running:
        await asyncio.sleep(0.01)

    assert len(ai.calls) == 1
    assert entry.id is not None
    db_session.expire_all()
    assert count_rated_history(db_session) == 51
    assert db_session.get(PreferenceSummary, 1) is None


def test_mark_recipe_cooked(db_session):
    recipe = Recipe(
        name="Fried Rice", recipe_hash="fr", tags=["quick"],
        ingredients=[
            RecipeIngredient(position=0, name="rice", quantity=200, unit="g"),
            RecipeIngredient(position=1, name="salt", quantity=5, unit="g"),
        ],
    )
    db_session.add(recipe)
    db_session.add(PantryItem(name="Rice", unit="g", quantity_initial=100, quantity_remaining=100))
    db_session.commit()

    result = mark_recipe_cooked(db_session, recipe.id)

    kinds = {w.ingredient_name: w.kind for w in result.warnings}
    assert kinds == {"rice": "insufficient", "salt": "missing"}
    pantry_rice = db_session.scalars(select(PantryItem)).one()
    assert pantry_rice.quantity_remaining == 0
    assert result.history.recipe_hash == "fr"
    assert result.history.ingredients == ["rice", "salt"]
    db_session.refresh(recipe)
    assert recipe.times_cooked == 1
    assert recipe.last_cooked_at is not None


def test_mark_recipe_cooked_unknown(db_session):
    with pytest.raises(NotFoundError):
        mark_recipe_cooked(db_session, "missing")
