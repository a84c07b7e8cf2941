"""
Preference learning and history compaction.

Two layers feed the outline prompt:
- Live scoring over rated history rows still in the table
- A long-horizon PreferenceSummary that old rated rows are folded into

Compaction runs after a rating write commits, one run at a time, and never
deletes history unless the new summary was stored in the same transaction.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from ..ai.summary import HistoryEntryForSummary, MAX_PREFERENCE_ITEMS, summarize_preferences
from ..core.ai_client import AIClient
from ..core.errors import MealPlannerError, NotFoundError
from ..models import PreferenceSummary, Recipe, RecipeHistory, utcnow, as_utc
from ..schemas import LearnedPreferences
from ..settings import settings
from .pantry import DeductionWarning, deduct_recipe

logger = logging.getLogger("mealplanner.preferences")

LIKE_THRESHOLD = 4.0
DISLIKE_THRESHOLD = 2.0
MIN_RATINGS = 2
MAIN_INGREDIENT_COUNT = 5

CUISINE_TAGS = {
    "american", "asian", "chinese", "french", "greek", "indian", "italian", "japanese",
    "korean", "mediterranean", "mexican", "middle eastern", "thai", "vietnamese", "fusion",
}


def _ingredient_names(recipe) -> list[str]:
    # Works for ORM recipes (ing.name) and generated recipes (ing.ingredient_name)
    return [
        getattr(i, "ingredient_name", None) or getattr(i, "name", "")
        for i in recipe.ingredients
    ]


def recipe_hash(recipe) -> str:
    """Fingerprint from sorted ingredient names and tags; independent of the title."""
    names = ",".join(sorted(n.lower() for n in _ingredient_names(recipe)))
    tags = ",".join(sorted(t.lower() for t in recipe.tags))
    return hashlib.sha1(f"{names}|{tags}".encode("utf-8")).hexdigest()[:16]


def _recent_history(db: Session, months: int, now: Optional[datetime]) -> list[RecipeHistory]:
    cutoff = (now or utcnow()) - timedelta(days=30 * months)
    return db.scalars(
        select(RecipeHistory)
        .where(RecipeHistory.cooked_at >= cutoff)
        .order_by(RecipeHistory.cooked_at.desc())
    ).all()


def recent_recipe_hashes(db: Session, months: Optional[int] = None, now: Optional[datetime] = None) -> list[str]:
    months = months or settings.recent_history_months
    hashes = []
    for h in _recent_history(db, months, now):
        if h.recipe_hash and h.recipe_hash not in hashes:
            hashes.append(h.recipe_hash)
    return hashes


def recent_recipe_names(db: Session, months: Optional[int] = None, now: Optional[datetime] = None) -> list[str]:
    months = months or settings.recent_history_months
    names = []
    for h in _recent_history(db, months, now):
        if h.recipe_name not in names:
            names.append(h.recipe_name)
    return names


# --- Live scoring ---

def _history_tags(h: RecipeHistory, recipes_by_name: dict[str, Recipe]) -> list[str]:
    if h.tags:
        return list(h.tags)
    recipe = recipes_by_name.get(h.recipe_name)
    return list(recipe.tags) if recipe else []


def _history_ingredients(h: RecipeHistory, recipes_by_name: dict[str, Recipe]) -> list[str]:
    if h.ingredients:
        return list(h.ingredients)
    recipe = recipes_by_name.get(h.recipe_name)
    return _ingredient_names(recipe) if recipe else []


def _classify(ratings: dict[str, list[int]]) -> tuple[list[str], list[str]]:
    liked, disliked = [], []
    for key, values in ratings.items():
        if len(values) < MIN_RATINGS:
            continue
        avg = sum(values) / len(values)
        if avg >= LIKE_THRESHOLD:
            liked.append(key)
        elif avg <= DISLIKE_THRESHOLD:
            disliked.append(key)
    return liked, disliked


def score_preferences(db: Session) -> LearnedPreferences:
    """
    Liked/disliked tags and main ingredients from rated history, merged with
    the stored summary. Fresh signal wins when the two disagree.
    """
    rated = db.scalars(select(RecipeHistory).where(RecipeHistory.rating.is_not(None))).all()
    recipes_by_name = {r.name: r for r in db.scalars(select(Recipe)).all()}

    tag_ratings: dict[str, list[int]] = {}
    ingredient_ratings: dict[str, list[int]] = {}
    for h in rated:
        for tag in _history_tags(h, recipes_by_name):
            tag_ratings.setdefault(tag.lower(), []).append(h.rating)
        for name in _history_ingredients(h, recipes_by_name)[:MAIN_INGREDIENT_COUNT]:
            ingredient_ratings.setdefault(name.lower(), []).append(h.rating)

    liked_tags, disliked_tags = _classify(tag_ratings)
    liked_ings, disliked_ings = _classify(ingredient_ratings)

    learned = LearnedPreferences(
        liked_tags=liked_tags,
        disliked_tags=disliked_tags,
        liked_ingredients=liked_ings,
        disliked_ingredients=disliked_ings,
    )

    stored = get_preference_summary(db)
    if stored:
        learned.summary_text = stored.summary_text
        fresh_dislikes = set(disliked_tags) | set(disliked_ings)
        fresh_likes = set(liked_tags) | set(liked_ings)
        # A stored item may be a tag or an ingredient; offer it as both
        for like in stored.likes:
            item = like.lower()
            if item in fresh_dislikes:
                continue
            if item not in learned.liked_tags:
                learned.liked_tags.append(item)
            if item not in learned.liked_ingredients:
                learned.liked_ingredients.append(item)
        for dislike in stored.dislikes:
            item = dislike.lower()
            if item in fresh_likes:
                continue
            if item not in learned.disliked_tags:
                learned.disliked_tags.append(item)
            if item not in learned.disliked_ingredients:
                learned.disliked_ingredients.append(item)

    return learned


# --- Summary row ---

def get_preference_summary(db: Session) -> Optional[PreferenceSummary]:
    return db.scalars(select(PreferenceSummary).order_by(PreferenceSummary.id)).first()


def update_preference_summary(
    db: Session,
    summary_text: Optional[str] = None,
    likes: Optional[list[str]] = None,
    dislikes: Optional[list[str]] = None,
) -> PreferenceSummary:
    """User edit of the stored summary. Creates the single row if needed."""
    summary = get_preference_summary(db)
    if summary is None:
        summary = PreferenceSummary(id=1, summary_text="", likes=[], dislikes=[], entries_processed=0)
        db.add(summary)

    if summary_text is not None:
        summary.summary_text = summary_text
    if likes is not None:
        summary.likes = _dedupe(likes)[:MAX_PREFERENCE_ITEMS]
    if dislikes is not None:
        summary.dislikes = _dedupe(dislikes)[:MAX_PREFERENCE_ITEMS]
    summary.updated_at = utcnow()

    db.commit()
    db.refresh(summary)
    return summary


def _dedupe(items: list[str]) -> list[str]:
    seen = set()
    result = []
    for item in items:
        key = item.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(item.strip())
    return result


def merge_preference_lists(new: list[str], existing: list[str], opposite: list[str]) -> list[str]:
    """New items first, then existing ones the new digest does not contradict."""
    blocked = {o.lower() for o in opposite}
    merged = _dedupe(list(new) + [e for e in existing if e.lower() not in blocked])
    return merged[:MAX_PREFERENCE_ITEMS]


# --- Compaction ---

def count_rated_history(db: Session) -> int:
    return db.scalar(
        select(func.count()).select_from(RecipeHistory).where(RecipeHistory.rating.is_not(None))
    ) or 0


def _summary_entry(h: RecipeHistory, recipes_by_name: dict[str, Recipe]) -> HistoryEntryForSummary:
    tags = _history_tags(h, recipes_by_name)
    return HistoryEntryForSummary(
        recipe_name=h.recipe_name,
        rating=h.rating,
        would_make_again=h.would_make_again,
        cooked_at=as_utc(h.cooked_at),
        tags=tags,
        cuisines=[t for t in tags if t.lower() in CUISINE_TAGS],
        ingredients=_history_ingredients(h, recipes_by_name),
    )


async def compact_history_if_needed(
    db: Session,
    ai: Optional[AIClient],
    threshold: Optional[int] = None,
    keep_recent: Optional[int] = None,
) -> int:
    """
    Fold all but the newest `keep_recent` rated entries into the summary
    once more than `threshold` rated entries exist.

    Returns the number of rows compacted; 0 when not triggered or failed.
    """
    threshold = settings.compaction_threshold if threshold is None else threshold
    keep_recent = settings.keep_recent if keep_recent is None else keep_recent

    rated = db.scalars(
        select(RecipeHistory)
        .where(RecipeHistory.rating.is_not(None))
        .order_by(RecipeHistory.cooked_at.asc())
    ).all()

    if len(rated) <= threshold:
        return 0

    to_compact = rated[:max(len(rated) - keep_recent, 0)]
    if not to_compact:
        return 0

    if ai is None or not ai.is_available():
        logger.info(f"Compaction of {len(to_compact)} entries deferred: AI unavailable")
        return 0

    recipes_by_name = {r.name: r for r in db.scalars(select(Recipe)).all()}
    entries = [_summary_entry(h, recipes_by_name) for h in to_compact]
    existing = get_preference_summary(db)

    try:
        digest = await summarize_preferences(ai, entries, existing.summary_text if existing else None)
    except MealPlannerError as e:
        logger.warning(f"History compaction failed, keeping {len(to_compact)} entries: {e}")
        return 0

    if existing is None:
        existing = PreferenceSummary(id=1, summary_text="", likes=[], dislikes=[], entries_processed=0)
        db.add(existing)

    old_likes, old_dislikes = list(existing.likes or []), list(existing.dislikes or [])
    existing.summary_text = digest.summary
    existing.likes = merge_preference_lists(digest.likes, old_likes, digest.dislikes)
    existing.dislikes = merge_preference_lists(digest.dislikes, old_dislikes, digest.likes)
    existing.entries_processed = (existing.entries_processed or 0) + len(to_compact)
    existing.updated_at = utcnow()

    for h in to_compact:
        db.delete(h)

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Compacted {len(to_compact)} history entries into preference summary")
    return len(to_compact)


class CompactionTrigger:
    """
    One-shot post-write compaction.

    fire() schedules a run on the current event loop (or runs inline when
    no loop is running). A fire() during a run only requests one more pass
    afterwards, so runs never overlap.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ai: Optional[AIClient],
        threshold: Optional[int] = None,
        keep_recent: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.ai = ai
        self.threshold = threshold
        self.keep_recent = keep_recent
        self._running = False
        self._rerun = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def fire(self) -> Optional[asyncio.Task]:
        if self._running:
            self._rerun = True
            return self._task

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.run_once())
            return None

        self._running = True
        self._task = loop.create_task(self._drain())
        return self._task

    async def run_once(self) -> int:
        if self._running:
            self._rerun = True
            return 0
        self._running = True
        return await self._drain()

    async def _drain(self) -> int:
        total = 0
        try:
            while True:
                self._rerun = False
                db = self.session_factory()
                try:
                    total += await compact_history_if_needed(
                        db, self.ai, threshold=self.threshold, keep_recent=self.keep_recent
                    )
                finally:
                    db.close()
                if not self._rerun:
                    break
        except Exception as e:
            # Background work; raw history is retained for the next attempt
            logger.error(f"Background compaction failed: {e}")
        finally:
            self._running = False
            self._task = None
        return total


# --- History writes ---

def rate_recipe(
    db: Session,
    recipe_name: str,
    rating: Optional[int],
    would_make_again: Optional[bool],
    notes: Optional[str] = None,
    trigger: Optional[CompactionTrigger] = None,
) -> RecipeHistory:
    """
    Rate the newest history entry for a recipe (or append one), commit,
    then fire the compaction trigger.
    """
    if rating is not None and not 1 <= rating <= 5:
        raise ValueError(f"rating must be 1-5 or None, got {rating}")

    entry = db.scalars(
        select(RecipeHistory)
        .where(RecipeHistory.recipe_name == recipe_name)
        .order_by(RecipeHistory.cooked_at.desc())
    ).first()

    if entry:
        entry.rating = rating
        entry.would_make_again = would_make_again
        if notes is not None:
            entry.notes = notes
    else:
        recipe = db.scalars(select(Recipe).where(Recipe.name == recipe_name)).first()
        entry = RecipeHistory(
            recipe_id=recipe.id if recipe else None,
            recipe_name=recipe_name,
            recipe_hash=recipe.recipe_hash if recipe else "",
            rating=rating,
            would_make_again=would_make_again,
            notes=notes,
            tags=list(recipe.tags) if recipe else [],
            ingredients=_ingredient_names(recipe) if recipe else [],
            meal_format=recipe.meal_format if recipe else None,
            main_protein=recipe.main_protein if recipe else None,
        )
        db.add(entry)

    db.commit()
    db.refresh(entry)

    if trigger is not None:
        trigger.fire()
    return entry


@dataclass
class MarkCookedResult:
    history: RecipeHistory
    warnings: list[DeductionWarning] = field(default_factory=list)


def mark_recipe_cooked(db: Session, recipe_id: str, now: Optional[datetime] = None) -> MarkCookedResult:
    """Append a history entry, bump cook counters and deduct pantry stock."""
    recipe = db.get(Recipe, recipe_id)
    if recipe is None:
        raise NotFoundError(f"Recipe {recipe_id} not found")

    now = now or datetime.now(timezone.utc)
    recipe.times_cooked = (recipe.times_cooked or 0) + 1
    recipe.last_cooked_at = now

    entry = RecipeHistory(
        recipe_id=recipe.id,
        recipe_name=recipe.name,
        recipe_hash=recipe.recipe_hash or recipe_hash(recipe),
        cooked_at=now,
        tags=list(recipe.tags or []),
        ingredients=_ingredient_names(recipe),
        meal_format=recipe.meal_format,
        main_protein=recipe.main_protein,
    )
    db.add(entry)

    warnings = deduct_recipe(db, recipe)
    db.commit()
    db.refresh(entry)

    if warnings:
        logger.info(f"Cooked '{recipe.name}' with {len(warnings)} pantry shortfall(s)")
    return MarkCookedResult(history=entry, warnings=warnings)
