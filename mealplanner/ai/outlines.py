import logging
from datetime import date
from typing import Optional

from ..core.ai_client import AIClient
from ..schemas import (
    OutlinesResponse,
    PantrySnapshotItem,
    PlanPreferences,
    LearnedPreferences,
)
from ..settings import settings

logger = logging.getLogger("mealplanner.ai")

SYSTEM_PROMPT = """You are a meal planning assistant creating a balanced weekly menu. Your task is to plan {count} diverse recipe ideas.

Think carefully about balance across these dimensions:
- PROTEIN: Mix of chicken (6-7), beef (4-5), pork (3-4), fish/seafood (2-3), vegetarian (4-5)
- STARCH: Mix of rice (6-7), pasta (4-5), bread/sandwich (4-5), potato (2-3), tortilla (3-4), other/none (3-4)
- FORMAT: Bowls (4-5), sandwiches (3-4), tacos/burritos (3-4), stir-fries (3-4), pasta dishes (3-4), soups/stews (2-3), salads (2-3), sheet pan (2-3)
- CUISINE: Mix of Asian, Italian, Mexican, American, Mediterranean, fusion
- TIME: Two thirds quick (<=30 min), the rest longer weekend cooking (45-60 min)

Season: {month}, {season}{hints}

Respond with valid JSON only."""

USER_PROMPT = """Create {count} diverse recipe outlines for meal planning.

PANTRY AVAILABLE: {pantry}

RECENT RECIPES TO AVOID: {recent}

SERVINGS: {servings}
SPICE TOLERANCE: {spice}

Return JSON with recipe outlines (NO ingredients or steps yet, just the plan):
{{"recipes":[{{"name":"Recipe Name","description":"Brief appetizing description","servings":2,"prepTimeMinutes":15,"cookTimeMinutes":20,"tags":["quick","asian"],"mainProtein":"chicken","mainStarch":"rice","mealFormat":"stir-fry"}}],"defaultSelections":[0,1,2,3,4,5]}}

Pre-select {max_selections} varied defaults in defaultSelections. No two recipes should feel too similar."""


def season_for(d: date) -> str:
    m = d.month
    if m in (12, 1, 2):
        return "winter"
    if m in (3, 4, 5):
        return "spring"
    if m in (6, 7, 8):
        return "summer"
    return "fall"


def _preference_hints(learned: Optional[LearnedPreferences]) -> str:
    if not learned:
        return ""
    hints = ""
    liked = learned.liked_tags + learned.liked_ingredients
    disliked = learned.disliked_tags + learned.disliked_ingredients
    if liked:
        hints += f"\n- USER FAVORITES: Include more recipes with: {', '.join(liked)}"
    if disliked:
        hints += f"\n- USER DISLIKES: Avoid or limit recipes with: {', '.join(disliked)}"
    if learned.summary_text:
        hints += f"\n- TASTE PROFILE: {learned.summary_text}"
    return hints


def build_outline_prompts(
    pantry: list[PantrySnapshotItem],
    recent_recipes: list[str],
    preferences: PlanPreferences,
    learned: Optional[LearnedPreferences],
    count: int,
    today: date,
) -> tuple[str, str]:
    """Returns (system_instruction, user_prompt)."""
    compact_pantry = ", ".join(f"{p.name}:{p.quantity_remaining:g}{p.unit}" for p in pantry) or "(empty)"
    system = SYSTEM_PROMPT.format(
        count=count,
        month=today.strftime("%B"),
        season=season_for(today),
        hints=_preference_hints(learned),
    )
    user = USER_PROMPT.format(
        count=count,
        pantry=compact_pantry,
        recent=", ".join(recent_recipes[:10]) or "(none)",
        servings=preferences.servings,
        spice=preferences.spice_tolerance,
        max_selections=settings.max_selections,
    )
    return system, user


def sanitize_selections(selections: list[int], pool_size: int, limit: int) -> list[int]:
    """In range, unique, original order, at most `limit`."""
    result = []
    for i in selections:
        if 0 <= i < pool_size and i not in result:
            result.append(i)
        if len(result) >= limit:
            break
    return result


async def generate_outlines(
    ai: AIClient,
    pantry: list[PantrySnapshotItem],
    recent_recipes: list[str],
    preferences: Optional[PlanPreferences] = None,
    learned: Optional[LearnedPreferences] = None,
    count: Optional[int] = None,
    today: Optional[date] = None,
) -> OutlinesResponse:
    """
    Phase 1: one extended-reasoning call for the whole week's ideas.

    Errors propagate; there is no useful partial result at this phase.
    """
    count = count or settings.outline_count
    preferences = preferences or PlanPreferences(servings=settings.default_servings)
    system, user = build_outline_prompts(
        pantry, recent_recipes, preferences, learned, count, today or date.today()
    )

    response = await ai.generate_json(
        user,
        OutlinesResponse,
        system_instruction=system,
        thinking_budget=settings.outline_thinking_budget,
    )

    selections = sanitize_selections(
        response.default_selections, len(response.recipes), settings.max_selections
    )
    logger.info(f"Generated {len(response.recipes)} outlines, {len(selections)} default selections")
    return OutlinesResponse(recipes=response.recipes, default_selections=selections)
