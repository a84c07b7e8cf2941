"""Weekly plan generation job.

Pipeline:
1. Outlines: one extended-reasoning call for ~24 balanced ideas
2. Details: ingredients + steps per outline, 4 concurrent calls per batch
3. Normalization: one call aligning ingredient names/units across the pool
4. Ready: pool persisted, user picks up to 6 recipes
5. Confirm: recipes + meal plan saved, shopping list consolidated

A PlanJob owns one run. Progress is published on its ProgressBus; the
session breadcrumb and pool are persisted so a killed process can offer a
retry or restore the selection screen.
"""
import logging
from contextlib import nullcontext
from datetime import date, timedelta
from enum import Enum
from typing import Callable, ContextManager, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..ai.details import ExpansionResult, expand_outlines, remap_selections
from ..ai.normalizer import normalize_pool
from ..ai.outlines import generate_outlines
from ..core.ai_client import AIClient
from ..core.errors import (
    ConsolidationError,
    GenerationCancelled,
    GenerationError,
    InvalidStateError,
    MealPlannerError,
)
from ..models import MealPlan, MealPlanEntry, Recipe, RecipeIngredient, RecipeStep
from ..realtime.progress_bus import ProgressBus
from ..schemas import (
    GeneratedRecipe,
    GenerationProgress,
    LearnedPreferences,
    PantrySnapshotItem,
    PlanPreferences,
    RecipePool,
)
from ..services import session_tracker
from ..services.pantry import pantry_snapshot
from ..services.preferences import (
    recent_recipe_hashes,
    recent_recipe_names,
    recipe_hash,
    score_preferences,
)
from ..settings import settings
from .grocery_agent import generate_shopping_list

logger = logging.getLogger("mealplanner.planner")


class PlanState(str, Enum):
    IDLE = "idle"
    GENERATING_OUTLINES = "generating_outlines"
    GENERATING_DETAILS = "generating_details"
    NORMALIZING = "normalizing"
    READY = "ready"
    SAVING = "saving"
    CONSOLIDATING = "consolidating"
    COMPLETE = "complete"
    ERROR = "error"


TRANSITIONS: dict[PlanState, set[PlanState]] = {
    PlanState.IDLE: {PlanState.GENERATING_OUTLINES},
    PlanState.GENERATING_OUTLINES: {PlanState.GENERATING_DETAILS, PlanState.ERROR, PlanState.IDLE},
    PlanState.GENERATING_DETAILS: {PlanState.NORMALIZING, PlanState.ERROR, PlanState.IDLE},
    PlanState.NORMALIZING: {PlanState.READY, PlanState.ERROR, PlanState.IDLE},
    PlanState.READY: {PlanState.SAVING, PlanState.GENERATING_OUTLINES, PlanState.IDLE},
    PlanState.SAVING: {PlanState.CONSOLIDATING, PlanState.ERROR},
    PlanState.CONSOLIDATING: {PlanState.COMPLETE, PlanState.ERROR},
    PlanState.COMPLETE: {PlanState.GENERATING_OUTLINES, PlanState.IDLE},
    PlanState.ERROR: {PlanState.GENERATING_OUTLINES, PlanState.CONSOLIDATING, PlanState.IDLE},
}

GENERATING_STATES = (
    PlanState.GENERATING_OUTLINES,
    PlanState.GENERATING_DETAILS,
    PlanState.NORMALIZING,
)


def can_transition(current: PlanState, target: PlanState) -> bool:
    return target in TRANSITIONS.get(current, set())


def next_state(current: PlanState, target: PlanState) -> PlanState:
    if not can_transition(current, target):
        raise InvalidStateError(f"Cannot go from {current.value} to {target.value}")
    return target


def select_default_six(recipes: list[GeneratedRecipe], limit: Optional[int] = None) -> list[int]:
    """
    Fallback default selection: the first 4 picks have distinct proteins and
    meal formats, the rest are filled in pool order.
    """
    limit = limit or settings.max_selections
    chosen: list[int] = []
    proteins, formats = set(), set()

    for i, r in enumerate(recipes):
        if len(chosen) >= min(4, limit):
            break
        protein = (r.main_protein or "").lower()
        fmt = (r.meal_format or "").lower()
        if protein in proteins or fmt in formats:
            continue
        chosen.append(i)
        proteins.add(protein)
        formats.add(fmt)

    for i in range(len(recipes)):
        if len(chosen) >= limit:
            break
        if i not in chosen:
            chosen.append(i)
    return chosen


def exclude_recent(expansion: ExpansionResult, recent_hashes: list[str]) -> ExpansionResult:
    """Drop recipes that are exact repeats of recently cooked ones, keeping the index map consistent."""
    if not recent_hashes:
        return expansion
    recent = set(recent_hashes)
    pool_to_outline = {p: o for o, p in expansion.index_map.items()}

    kept = ExpansionResult(failed=list(expansion.failed))
    for pool_index, recipe in enumerate(expansion.recipes):
        outline_index = pool_to_outline[pool_index]
        if recipe_hash(recipe) in recent:
            logger.info(f"Dropping '{recipe.name}': repeats a recently cooked recipe")
            kept.failed.append(outline_index)
            continue
        kept.index_map[outline_index] = len(kept.recipes)
        kept.recipes.append(recipe)
    return kept


def next_week_start(today: date) -> date:
    """Monday of next week."""
    return today + timedelta(days=7 - today.weekday())


class PlanJob:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        ai: AIClient,
        pantry: Optional[list[PantrySnapshotItem]] = None,
        recent_hashes: Optional[list[str]] = None,
        recent_names: Optional[list[str]] = None,
        preferences: Optional[PlanPreferences] = None,
        on_progress: Optional[Callable[[GenerationProgress], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        keep_alive: Optional[Callable[[], ContextManager]] = None,
        today: Optional[date] = None,
    ):
        self.session_factory = session_factory
        self.ai = ai
        self.pantry = pantry
        self.recent_hashes = recent_hashes
        self.recent_names = recent_names
        self.preferences = preferences or PlanPreferences(servings=settings.default_servings)
        self.should_cancel = should_cancel
        self.keep_alive = keep_alive
        self.today = today

        self.bus = ProgressBus()
        if on_progress:
            self.bus.subscribe(on_progress)

        self.state = PlanState.IDLE
        self.pool: Optional[RecipePool] = None
        self.selected: list[int] = []
        self.meal_plan_id: Optional[str] = None
        self.error: Optional[str] = None

        self._phase = "idle"
        self._cancel_requested = False
        self._last_saved_selection: Optional[tuple[int, ...]] = None

    # --- Restore ---

    @classmethod
    def restore(cls, session_factory: Callable[[], Session], ai: AIClient, **kwargs) -> Optional["PlanJob"]:
        """Rehydrate a job from a persisted pool (selection screen survives restarts)."""
        with session_factory() as db:
            loaded = session_tracker.load_pool(db)
        if loaded is None:
            return None

        pool, selected = loaded
        job = cls(session_factory, ai, **kwargs)
        job.pool = pool
        job.selected = selected
        job.state = PlanState.READY
        job._last_saved_selection = tuple(selected)
        job._emit("ready", len(pool.recipes), len(pool.recipes))
        return job

    @classmethod
    def for_pending_consolidation(
        cls, session_factory: Callable[[], Session], ai: AIClient, meal_plan_id: str, **kwargs
    ) -> "PlanJob":
        """Job in the error state for a plan whose consolidation never finished."""
        job = cls(session_factory, ai, **kwargs)
        job.meal_plan_id = meal_plan_id
        job.state = PlanState.ERROR
        job.error = "Shopping list was not generated"
        return job

    # --- Events ---

    def subscribe(self, listener: Callable[[GenerationProgress], None]) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def stream(self):
        return self.bus.stream()

    def _emit(
        self,
        phase: str,
        current: int = 0,
        total: int = 0,
        recipe_name: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self._phase = phase
        self.bus.publish(GenerationProgress(
            phase=phase,
            current=current,
            total=total,
            recipe_name=recipe_name,
            state=self.state.value,
            message=message,
        ))

    def _transition(self, target: PlanState):
        self.state = next_state(self.state, target)

    # --- Cancellation ---

    def cancel(self):
        """Cooperative: observed before the next phase or batch."""
        self._cancel_requested = True

    def _cancelled(self) -> bool:
        return self._cancel_requested or bool(self.should_cancel and self.should_cancel())

    def _check_cancel(self):
        if self._cancelled():
            raise GenerationCancelled(f"Generation cancelled during {self._phase}")

    def _keep_alive(self) -> ContextManager:
        return self.keep_alive() if self.keep_alive else nullcontext()

    # --- Generation ---

    async def generate(self) -> RecipePool:
        """
        Run outline, detail and normalization phases.

        Raises GenerationError (state error) or GenerationCancelled (state
        idle). The session row is cleared in both cases.
        """
        self._transition(PlanState.GENERATING_OUTLINES)
        self._cancel_requested = False
        self.pool = None
        self.selected = []
        self.meal_plan_id = None
        self.error = None

        with self._keep_alive():
            with self.session_factory() as db:
                session_tracker.start_generation(db)
                job_id = session_tracker.begin_job(db, session_tracker.JOB_MEAL_GENERATION).id
                pantry = self.pantry if self.pantry is not None else pantry_snapshot(db)
                recent_hashes = self.recent_hashes if self.recent_hashes is not None else recent_recipe_hashes(db)
                recent_names = self.recent_names if self.recent_names is not None else recent_recipe_names(db)
                learned = score_preferences(db)

            try:
                pool = await self._run_pipeline(pantry, recent_hashes, recent_names, learned)
            except GenerationCancelled:
                self._clear(job_id)
                self.state = PlanState.IDLE
                logger.info(f"Generation cancelled during {self._phase}")
                self._emit("cancelled")
                raise
            except Exception as e:
                phase = e.phase if isinstance(e, GenerationError) else self._phase
                message = str(e) or e.__class__.__name__
                self._clear(job_id)
                self.state = PlanState.ERROR
                self.error = message
                logger.error(f"Generation failed during {phase}: {message}")
                self._emit("error", message=message)
                if isinstance(e, GenerationError):
                    raise
                raise GenerationError(phase, message) from e

            with self.session_factory() as db:
                session_tracker.save_pool(db, pool, pool.default_selections)
                session_tracker.finish_job(db, job_id)

        self.pool = pool
        self.selected = list(pool.default_selections)
        self._last_saved_selection = tuple(self.selected)
        self._transition(PlanState.READY)
        self._emit("ready", len(pool.recipes), len(pool.recipes))
        logger.info(f"Recipe pool ready: {len(pool.recipes)} recipes, {len(self.selected)} preselected")
        return pool

    def _clear(self, job_id: str):
        with self.session_factory() as db:
            session_tracker.clear_session(db)
            session_tracker.finish_job(db, job_id)

    async def _run_pipeline(
        self,
        pantry: list[PantrySnapshotItem],
        recent_hashes: list[str],
        recent_names: list[str],
        learned: LearnedPreferences,
    ) -> RecipePool:
        self._emit("outlines", 0, 1)
        self._check_cancel()
        outlines = await generate_outlines(
            self.ai, pantry, recent_names, self.preferences, learned, today=self.today
        )
        if not outlines.recipes:
            raise GenerationError("outlines", "Model returned no recipe outlines")
        self._emit("outlines", 1, 1)

        self._check_cancel()
        self._transition(PlanState.GENERATING_DETAILS)
        total = len(outlines.recipes)
        self._emit("details", 0, total)
        expansion = await expand_outlines(
            self.ai,
            outlines.recipes,
            pantry,
            on_batch=lambda current, total_, name: self._emit("details", current, total_, name),
            should_cancel=self._cancelled,
        )
        # Calls already in flight finish, but their results are discarded
        self._check_cancel()
        if not expansion.recipes:
            raise GenerationError("details", "No recipe details could be generated")

        self._transition(PlanState.NORMALIZING)
        self._emit("normalizing", 0, 1)
        # Same length and order as the input, so the index map still holds
        expansion.recipes = await normalize_pool(self.ai, expansion.recipes)
        self._check_cancel()

        # Saved recipes are hashed after normalization, so compare at the same stage
        expansion = exclude_recent(expansion, recent_hashes)
        if not expansion.recipes:
            raise GenerationError("normalizing", "Every generated recipe repeats a recently cooked one")
        self._emit("normalizing", 1, 1)

        recipes = expansion.recipes
        selections = remap_selections(outlines.default_selections, expansion.index_map)
        if not selections:
            selections = select_default_six(recipes)
        return RecipePool(recipes=recipes, default_selections=selections[:settings.max_selections])

    # --- Selection ---

    def _require(self, *states: PlanState):
        if self.state not in states:
            raise InvalidStateError(f"Not allowed while {self.state.value}")

    def toggle(self, index: int) -> bool:
        """Add or remove one recipe. Adding at the cap or out of range is a no-op."""
        self._require(PlanState.READY)
        if not 0 <= index < len(self.pool.recipes):
            return False

        if index in self.selected:
            self.selected.remove(index)
        elif len(self.selected) >= settings.max_selections:
            return False
        else:
            self.selected.append(index)

        self._persist_selection()
        return True

    def set_selection(self, indices: list[int]) -> list[int]:
        self._require(PlanState.READY)
        size = len(self.pool.recipes)
        clean = []
        for i in indices:
            if 0 <= i < size and i not in clean:
                clean.append(i)
        self.selected = clean[:settings.max_selections]
        self._persist_selection()
        return list(self.selected)

    def _persist_selection(self):
        snapshot = tuple(self.selected)
        if snapshot == self._last_saved_selection:
            return
        with self.session_factory() as db:
            if not session_tracker.save_selection(db, self.selected):
                session_tracker.save_pool(db, self.pool, self.selected)
        self._last_saved_selection = snapshot

    def discard(self):
        """Drop the pool and the persisted session."""
        self._require(PlanState.READY, PlanState.ERROR, PlanState.COMPLETE, PlanState.IDLE)
        with self.session_factory() as db:
            session_tracker.clear_session(db)
        self.pool = None
        self.selected = []
        self._last_saved_selection = None
        self.state = PlanState.IDLE
        self._emit("discarded")

    # --- Confirmation ---

    async def confirm(self, week_start: Optional[date] = None) -> str:
        """
        Save the selected recipes as a meal plan, then build its shopping list.

        Returns the meal plan id. Raises ConsolidationError (state error,
        meal_plan_id kept for retry_consolidation) if the list fails.
        """
        self._require(PlanState.READY)
        if not self.selected:
            raise InvalidStateError("No recipes selected")

        self._transition(PlanState.SAVING)
        self._emit("saving", 0, len(self.selected))

        with self.session_factory() as db:
            try:
                self.meal_plan_id = self._save_plan(db, week_start)
            except SQLAlchemyError as e:
                db.rollback()
                self.state = PlanState.ERROR
                self.error = str(e)
                logger.error(f"Saving meal plan failed: {e}")
                self._emit("error", message=self.error)
                raise GenerationError("saving", str(e)) from e

        self._emit("saving", len(self.selected), len(self.selected))
        self.pool = None
        self.selected = []
        self._last_saved_selection = None
        return await self._consolidate()

    def _save_plan(self, db: Session, week_start: Optional[date]) -> str:
        """Recipes, plan and entries written and the session cleared in one transaction."""
        plan = MealPlan(
            week_start=week_start or next_week_start(self.today or date.today()),
            servings=self.preferences.servings,
        )
        db.add(plan)

        for position, index in enumerate(self.selected):
            generated = self.pool.recipes[index]
            recipe = Recipe(
                name=generated.name,
                description=generated.description,
                servings=generated.servings,
                prep_time_minutes=generated.prep_time_minutes,
                cook_time_minutes=generated.cook_time_minutes,
                tags=list(generated.tags),
                main_protein=generated.main_protein,
                main_starch=generated.main_starch,
                meal_format=generated.meal_format,
                recipe_hash=recipe_hash(generated),
                ingredients=[
                    RecipeIngredient(
                        position=i,
                        name=line.ingredient_name,
                        quantity=line.quantity,
                        unit=line.unit,
                        preparation=line.preparation,
                    )
                    for i, line in enumerate(generated.ingredients)
                ],
                steps=[
                    RecipeStep(step_index=i, title=step.title, substeps=list(step.substeps))
                    for i, step in enumerate(generated.steps)
                ],
            )
            db.add(recipe)
            plan.entries.append(MealPlanEntry(recipe=recipe, position=position))

        session_tracker.clear_session(db, commit=False)
        db.commit()
        logger.info(f"Saved meal plan {plan.id} with {len(plan.entries)} recipes")
        return plan.id

    async def retry_consolidation(self) -> str:
        self._require(PlanState.ERROR)
        if not self.meal_plan_id:
            raise InvalidStateError("No meal plan to consolidate")
        return await self._consolidate()

    async def _consolidate(self) -> str:
        self._transition(PlanState.CONSOLIDATING)
        self.error = None
        self._emit("consolidating", 0, 1)

        with self._keep_alive():
            with self.session_factory() as db:
                job_id = session_tracker.begin_job(
                    db, session_tracker.JOB_SHOPPING_CONSOLIDATION, self.meal_plan_id
                ).id
                try:
                    items = await generate_shopping_list(db, self.meal_plan_id, ai=self.ai)
                except MealPlannerError as e:
                    self.state = PlanState.ERROR
                    self.error = str(e)
                    self._emit("error", message=self.error)
                    if isinstance(e, ConsolidationError):
                        raise
                    raise ConsolidationError(str(e)) from e
                finally:
                    session_tracker.finish_job(db, job_id)

        self._transition(PlanState.COMPLETE)
        self._emit("complete", len(items), len(items))
        return self.meal_plan_id
