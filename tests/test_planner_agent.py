import json
from contextlib import contextmanager
from datetime import date

import pytest
from sqlalchemy import select

from mealplanner.agents.planner_agent import (
    PlanJob,
    PlanState,
    can_transition,
    next_state,
    next_week_start,
    select_default_six,
)
from mealplanner.core.errors import (
    AITransportError,
    ConsolidationError,
    GenerationCancelled,
    GenerationError,
    InvalidStateError,
)
from mealplanner.models import GenerationSession, MealPlan, PendingJob, Recipe, ShoppingListItem
from mealplanner.schemas import GeneratedRecipe, IngredientLine
from mealplanner.services import session_tracker
from mealplanner.services.preferences import recipe_hash

TODAY = date(2025, 10, 8)


def _job(session_factory, ai, events=None, **kwargs):
    return PlanJob(
        session_factory,
        ai,
        on_progress=events.append if events is not None else None,
        today=TODAY,
        **kwargs,
    )


def _phases(events):
    return [(e.phase, e.current, e.total) for e in events]


def test_transition_table():
    assert can_transition(PlanState.IDLE, PlanState.GENERATING_OUTLINES)
    assert can_transition(PlanState.NORMALIZING, PlanState.READY)
    assert can_transition(PlanState.ERROR, PlanState.CONSOLIDATING)
    assert not can_transition(PlanState.IDLE, PlanState.READY)
    assert not can_transition(PlanState.SAVING, PlanState.IDLE)
    with pytest.raises(InvalidStateError):
        next_state(PlanState.COMPLETE, PlanState.SAVING)


def test_next_week_start():
    assert next_week_start(date(2025, 10, 8)) == date(2025, 10, 13)
    assert next_week_start(date(2025, 10, 13)) == date(2025, 10, 20)
    assert next_week_start(date(2025, 10, 12)) == date(2025, 10, 13)


def test_select_default_six_prefers_variety():
    recipes = [
        GeneratedRecipe(name="A", main_protein="chicken", meal_format="bowl"),
        GeneratedRecipe(name="B", main_protein="chicken", meal_format="taco"),
        GeneratedRecipe(name="C", main_protein="beef", meal_format="bowl"),
        GeneratedRecipe(name="D", main_protein="beef", meal_format="taco"),
        GeneratedRecipe(name="E", main_protein="fish", meal_format="soup"),
        GeneratedRecipe(name="F", main_protein="tofu", meal_format="salad"),
        GeneratedRecipe(name="G", main_protein="pork", meal_format="pasta"),
        GeneratedRecipe(name="H", main_protein="none", meal_format="sandwich"),
    ]
    assert select_default_six(recipes, 6) == [0, 3, 4, 5, 1, 2]
    assert select_default_six(recipes[:3], 6) == [0, 1, 2]


@pytest.mark.asyncio
async def test_generate_end_to_end(session_factory, db_session, scripted_ai, pipeline_responder):
    events = []
    ai = scripted_ai(pipeline_responder())
    job = _job(session_factory, ai, events)

    pool = await job.generate()

    assert job.state == PlanState.READY
    assert len(pool.recipes) == 24
    assert job.selected == [0, 1, 2, 3, 4, 5]
    assert _phases(events) == [
        ("outlines", 0, 1), ("outlines", 1, 1),
        ("details", 0, 24), ("details", 4, 24), ("details", 8, 24), ("details", 12, 24),
        ("details", 16, 24), ("details", 20, 24), ("details", 24, 24),
        ("normalizing", 0, 1), ("normalizing", 1, 1),
        ("ready", 24, 24),
    ]
    assert events[-1].state == "ready"

    session = db_session.get(GenerationSession, 1)
    assert session.generation_started_at is None
    assert session.selected_indices == [0, 1, 2, 3, 4, 5]
    assert len(session.pool_json["recipes"]) == 24
    assert db_session.query(PendingJob).count() == 0


@pytest.mark.asyncio
async def test_failed_detail_remaps_defaults(session_factory, scripted_ai, pipeline_responder):
    ai = scripted_ai(pipeline_responder(selections=(0, 7, 8, 9, 10, 11), fail_details=("Recipe 7",)))
    job = _job(session_factory, ai)

    pool = await job.generate()

    assert len(pool.recipes) == 23
    assert "Recipe 7" not in [r.name for r in pool.recipes]
    assert [pool.recipes[i].name for i in job.selected] == [
        "Recipe 0", "Recipe 8", "Recipe 9", "Recipe 10", "Recipe 11",
    ]


@pytest.mark.asyncio
async def test_empty_defaults_use_heuristic(session_factory, scripted_ai, pipeline_responder):
    job = _job(session_factory, scripted_ai(pipeline_responder(selections=())))
    await job.generate()
    assert len(job.selected) == 6


@pytest.mark.asyncio
async def test_recent_repeats_are_dropped(session_factory, scripted_ai, pipeline_responder):
    repeat = GeneratedRecipe(name="anything", tags=["quick"], ingredients=[
        IngredientLine(ingredient_name="Recipe 3 base"), IngredientLine(ingredient_name="olive oil"),
    ])
    ai = scripted_ai(pipeline_responder())
    job = _job(session_factory, ai, recent_hashes=[recipe_hash(repeat)], recent_names=["Recipe 3"])

    pool = await job.generate()

    assert len(pool.recipes) == 23
    assert "Recipe 3" not in [r.name for r in pool.recipes]
    assert [pool.recipes[i].name for i in job.selected] == [
        "Recipe 0", "Recipe 1", "Recipe 2", "Recipe 4", "Recipe 5",
    ]
    assert "Recipe 3" in ai.calls[0]["prompt"]


def _renaming_normalization(prompt):
    """Normalizes "olive oil" to "oil" in every recipe."""
    payload, _ = json.JSONDecoder().raw_decode(prompt, prompt.index("["))
    for recipe in payload:
        for line in recipe["ingredients"]:
            if line["ingredientName"] == "olive oil":
                line["ingredientName"] = "oil"
    return json.dumps({"recipes": payload})


@pytest.mark.asyncio
async def test_recent_repeats_match_after_renaming(session_factory, db_session, scripted_ai, pipeline_responder):
    responder = pipeline_responder(normalization=_renaming_normalization)
    first = _job(session_factory, scripted_ai(responder))
    await first.generate()
    first.set_selection([0])
    await first.confirm()

    stored = db_session.scalars(select(Recipe).where(Recipe.name == "Recipe 0")).one()
    assert [i.name for i in stored.ingredients] == ["Recipe 0 base", "oil"]

    second = _job(session_factory, scripted_ai(responder), recent_hashes=[stored.recipe_hash])
    pool = await second.generate()

    assert len(pool.recipes) == 23
    assert "Recipe 0" not in [r.name for r in pool.recipes]
    assert [pool.recipes[i].name for i in second.selected] == [
        "Recipe 1", "Recipe 2", "Recipe 3", "Recipe 4", "Recipe 5",
    ]


@pytest.mark.asyncio
async def test_all_recent_repeats_is_an_error(session_factory, scripted_ai, pipeline_responder):
    repeat = GeneratedRecipe(name="x", tags=["quick"], ingredients=[
        IngredientLine(ingredient_name="Recipe 0 base"), IngredientLine(ingredient_name="olive oil"),
    ])
    job = _job(session_factory, scripted_ai(pipeline_responder(count=1, selections=(0,))),
               recent_hashes=[recipe_hash(repeat)])

    with pytest.raises(GenerationError) as exc:
        await job.generate()
    assert exc.value.phase == "normalizing"


@pytest.mark.asyncio
async def test_cancel_during_details(session_factory, db_session, scripted_ai, pipeline_responder):
    events = []
    ai = scripted_ai(pipeline_responder())
    job = _job(session_factory, ai, events)

    def cancel_after_first_batch(event):
        if event.phase == "details" and event.current >= 4:
            job.cancel()

    job.subscribe(cancel_after_first_batch)

    with pytest.raises(GenerationCancelled):
        await job.generate()

    assert job.state == PlanState.IDLE
    assert job.pool is None
    assert events[-1].phase == "cancelled"
    # 1 outline call + the first detail batch only
    assert len(ai.calls) == 5
    assert db_session.query(GenerationSession).count() == 0
    assert db_session.query(PendingJob).count() == 0


@pytest.mark.asyncio
async def test_external_cancel_flag(session_factory, scripted_ai, pipeline_responder):
    ai = scripted_ai(pipeline_responder())
    job = _job(session_factory, ai, should_cancel=lambda: True)

    with pytest.raises(GenerationCancelled):
        await job.generate()
    assert ai.calls == []


@pytest.mark.asyncio
async def test_outline_failure_is_phase_fatal(session_factory, db_session, scripted_ai, pipeline_responder):
    events = []
    ai = scripted_ai(pipeline_responder(outlines=lambda prompt: "I am not JSON"))
    job = _job(session_factory, ai, events)

    with pytest.raises(GenerationError) as exc:
        await job.generate()

    assert exc.value.phase == "outlines"
    assert job.state == PlanState.ERROR
    assert events[-1].phase == "error"
    assert events[-1].state == "error"
    assert db_session.query(GenerationSession).count() == 0


@pytest.mark.asyncio
async def test_normalization_failure_is_phase_fatal(session_factory, scripted_ai, pipeline_responder):
    ai = scripted_ai(pipeline_responder(normalization=lambda prompt: AITransportError("upstream down")))
    job = _job(session_factory, ai)

    with pytest.raises(GenerationError) as exc:
        await job.generate()

    assert exc.value.phase == "normalizing"
    assert job.pool is None

    # Regenerate from the error state
    job.ai = scripted_ai(pipeline_responder())
    await job.generate()
    assert job.state == PlanState.READY


@pytest.fixture
def keep_awake():
    held = []

    @contextmanager
    def hold():
        held.append("on")
        try:
            yield
        finally:
            held.append("off")

    hold.held = held
    return hold


@pytest.mark.asyncio
async def test_keep_alive_wraps_generation(session_factory, scripted_ai, pipeline_responder, keep_awake):
    job = _job(session_factory, scripted_ai(pipeline_responder()), keep_alive=keep_awake)
    await job.generate()
    assert keep_awake.held == ["on", "off"]


@pytest.mark.asyncio
async def test_keep_alive_released_on_failure(session_factory, scripted_ai, pipeline_responder, keep_awake):
    ai = scripted_ai(pipeline_responder(outlines=lambda prompt: "I am not JSON"))
    job = _job(session_factory, ai, keep_alive=keep_awake)

    with pytest.raises(GenerationError):
        await job.generate()
    assert keep_awake.held == ["on", "off"]


@pytest.mark.asyncio
async def test_keep_alive_released_on_cancel(session_factory, scripted_ai, pipeline_responder, keep_awake):
    job = _job(session_factory, scripted_ai(pipeline_responder()), keep_alive=keep_awake)
    job.subscribe(lambda event: job.cancel() if event.phase == "details" else None)

    with pytest.raises(GenerationCancelled):
        await job.generate()
    assert keep_awake.held == ["on", "off"]


@pytest.mark.asyncio
async def test_keep_alive_released_when_consolidation_fails(
    session_factory, scripted_ai, pipeline_responder, keep_awake
):
    ai = scripted_ai(pipeline_responder(consolidation=lambda prompt: AITransportError("timed out")))
    job = _job(session_factory, ai, keep_alive=keep_awake)
    await job.generate()

    with pytest.raises(ConsolidationError):
        await job.confirm()
    assert keep_awake.held == ["on", "off", "on", "off"]


@pytest.mark.asyncio
async def test_toggle_respects_cap(session_factory, db_session, scripted_ai, pipeline_responder):
    job = _job(session_factory, scripted_ai(pipeline_responder()))
    await job.generate()

    assert job.toggle(10) is False
    assert job.selected == [0, 1, 2, 3, 4, 5]

    assert job.toggle(0) is True
    assert job.toggle(10) is True
    assert job.selected == [1, 2, 3, 4, 5, 10]
    assert job.toggle(99) is False

    db_session.expire_all()
    assert db_session.get(GenerationSession, 1).selected_indices == [1, 2, 3, 4, 5, 10]


@pytest.mark.asyncio
async def test_set_selection_cleans_input(session_factory, scripted_ai, pipeline_responder):
    job = _job(session_factory, scripted_ai(pipeline_responder()))
    await job.generate()
    assert job.set_selection([3, 3, -1, 30, 1, 2, 4, 5, 6, 7]) == [3, 1, 2, 4, 5, 6]


def test_toggle_outside_ready(session_factory, scripted_ai, pipeline_responder):
    job = _job(session_factory, scripted_ai(pipeline_responder()))
    with pytest.raises(InvalidStateError):
        job.toggle(0)


@pytest.mark.asyncio
async def test_restore_after_restart(session_factory, scripted_ai, pipeline_responder):
    ai = scripted_ai(pipeline_responder())
    job = _job(session_factory, ai)
    await job.generate()
    job.toggle(5)

    restored = PlanJob.restore(session_factory, ai, today=TODAY)

    assert restored.state == PlanState.READY
    assert len(restored.pool.recipes) == 24
    assert restored.selected == [0, 1, 2, 3, 4]


def test_restore_without_pool(session_factory, scripted_ai, pipeline_responder):
    assert PlanJob.restore(session_factory, scripted_ai(pipeline_responder())) is None


@pytest.mark.asyncio
async def test_discard(session_factory, db_session, scripted_ai, pipeline_responder):
    events = []
    job = _job(session_factory, scripted_ai(pipeline_responder()), events)
    await job.generate()

    job.discard()

    assert job.state == PlanState.IDLE
    assert events[-1].phase == "discarded"
    assert db_session.query(GenerationSession).count() == 0


@pytest.mark.asyncio
async def test_confirm_saves_plan_and_list(session_factory, db_session, scripted_ai, pipeline_responder):
    events = []
    job = _job(session_factory, scripted_ai(pipeline_responder()), events)
    await job.generate()

    plan_id = await job.confirm()

    assert job.state == PlanState.COMPLETE
    assert events[-1].phase == "complete"
    assert "consolidating" in [e.phase for e in events]

    plan = db_session.get(MealPlan, plan_id)
    assert plan.week_start == date(2025, 10, 13)
    assert [e.recipe.name for e in plan.entries] == [f"Recipe {i}" for i in range(6)]
    assert plan.shopping_list_generated_at is not None

    recipe = db_session.scalars(select(Recipe).where(Recipe.name == "Recipe 0")).one()
    assert recipe.ingredients[0].preparation == "diced"
    assert recipe.steps[0].title == "Cook"
    assert recipe.recipe_hash

    items = db_session.scalars(select(ShoppingListItem).where(ShoppingListItem.meal_plan_id == plan_id)).all()
    assert {i.ingredient_name for i in items} == {"olive oil", "rice"}
    assert db_session.query(GenerationSession).count() == 0
    assert db_session.query(PendingJob).count() == 0


@pytest.mark.asyncio
async def test_confirm_requires_selection(session_factory, scripted_ai, pipeline_responder):
    job = _job(session_factory, scripted_ai(pipeline_responder()))
    await job.generate()
    job.set_selection([])

    with pytest.raises(InvalidStateError):
        await job.confirm()
    assert job.state == PlanState.READY


@pytest.mark.asyncio
async def test_consolidation_failure_then_retry(session_factory, db_session, scripted_ai, pipeline_responder):
    failing = {"on": True}

    def consolidation(prompt):
        if failing["on"]:
            return AITransportError("timed out")
        return json.dumps({"items": [{"ingredientName": "rice", "quantity": 1, "unit": "kg", "category": "dry goods"}]})

    events = []
    job = _job(session_factory, scripted_ai(pipeline_responder(consolidation=consolidation)), events)
    await job.generate()

    with pytest.raises(ConsolidationError):
        await job.confirm()

    assert job.state == PlanState.ERROR
    assert events[-1].phase == "error"
    plan = db_session.get(MealPlan, job.meal_plan_id)
    assert plan is not None
    assert plan.shopping_list_generated_at is None
    assert db_session.query(PendingJob).count() == 0

    failing["on"] = False
    plan_id = await job.retry_consolidation()

    assert plan_id == plan.id
    assert job.state == PlanState.COMPLETE
    db_session.expire_all()
    assert db_session.get(MealPlan, plan_id).shopping_list_generated_at is not None


@pytest.mark.asyncio
async def test_pending_consolidation_recovery(session_factory, db_session, scripted_ai, pipeline_responder):
    plan = MealPlan(week_start=date(2025, 10, 13))
    db_session.add(plan)
    db_session.commit()
    session_tracker.begin_job(db_session, session_tracker.JOB_SHOPPING_CONSOLIDATION, plan.id)

    status = session_tracker.check_on_startup(db_session)
    assert status.pending_consolidations == [plan.id]

    job = PlanJob.for_pending_consolidation(session_factory, scripted_ai(pipeline_responder()), plan.id)
    assert job.state == PlanState.ERROR

    await job.retry_consolidation()
    assert job.state == PlanState.COMPLETE
