import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..core.ai_client import AIClient
from ..core.errors import GenerationCancelled
from ..core.text import clean_step
from ..schemas import (
    CookingStep,
    GeneratedRecipe,
    PantrySnapshotItem,
    RecipeDetailsResponse,
    RecipeOutline,
)
from ..settings import settings

logger = logging.getLogger("mealplanner.ai")

SYSTEM_PROMPT = (
    "You are a recipe writer. Given a recipe outline, provide the complete ingredient "
    "list and cooking steps. Be practical and precise with quantities. Respond with valid JSON only."
)

USER_PROMPT = """Complete this recipe with ingredients and steps:

RECIPE: {o.name}
DESCRIPTION: {o.description}
SERVINGS: {o.servings}
PREP TIME: {o.prep_time_minutes} min
COOK TIME: {o.cook_time_minutes} min
TAGS: {tags}
MAIN PROTEIN: {o.main_protein}
MAIN STARCH: {o.main_starch}
FORMAT: {o.meal_format}

PANTRY AVAILABLE: {pantry}

Return compact JSON:
{{"ingredients":[{{"ingredientName":"...","quantity":1,"unit":"cup","preparation":"diced"}}],"steps":[{{"title":"Step Title","substeps":["substep 1","substep 2"]}}]}}

Rules:
- 6-12 ingredients, practical quantities
- 3-4 main steps, each with 2-3 substeps
- Use pantry items where sensible, add fresh items as needed"""


# (processed_so_far, total, last_recipe_name)
BatchCallback = Callable[[int, int, Optional[str]], None]


@dataclass
class ExpansionResult:
    recipes: list[GeneratedRecipe] = field(default_factory=list)
    # outline index -> pool index, for outlines that survived
    index_map: dict[int, int] = field(default_factory=dict)
    failed: list[int] = field(default_factory=list)


async def expand_recipe(
    ai: AIClient,
    outline: RecipeOutline,
    pantry: list[PantrySnapshotItem],
) -> GeneratedRecipe:
    user = USER_PROMPT.format(
        o=outline,
        tags=", ".join(outline.tags),
        pantry=", ".join(p.name for p in pantry) or "(empty)",
    )
    details = await ai.generate_json(
        user,
        RecipeDetailsResponse,
        system_instruction=SYSTEM_PROMPT,
        model=settings.gemini_fast_model,
    )
    steps = [CookingStep(**clean_step(s.title, s.substeps)) for s in details.steps]
    return GeneratedRecipe.from_outline(outline, details.ingredients, steps)


async def expand_outlines(
    ai: AIClient,
    outlines: list[RecipeOutline],
    pantry: list[PantrySnapshotItem],
    batch_size: Optional[int] = None,
    on_batch: Optional[BatchCallback] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> ExpansionResult:
    """
    Phase 2: batches run sequentially, calls inside a batch run concurrently.

    A failed recipe is logged and dropped. Cancellation is observed before
    each batch; calls already dispatched are allowed to finish.
    """
    batch_size = batch_size or settings.detail_batch_size
    total = len(outlines)
    result = ExpansionResult()

    for start in range(0, total, batch_size):
        if should_cancel and should_cancel():
            raise GenerationCancelled("Cancelled during detail expansion")

        batch = outlines[start:start + batch_size]
        outcomes = await asyncio.gather(
            *(expand_recipe(ai, o, pantry) for o in batch),
            return_exceptions=True,
        )

        for offset, outcome in enumerate(outcomes):
            outline_index = start + offset
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning(
                    f"Detail expansion failed for '{batch[offset].name}' (#{outline_index}): {outcome}"
                )
                result.failed.append(outline_index)
                continue
            result.index_map[outline_index] = len(result.recipes)
            result.recipes.append(outcome)

        if on_batch:
            on_batch(min(start + batch_size, total), total, batch[-1].name)

    if result.failed:
        logger.warning(f"{len(result.failed)} of {total} recipes dropped during detail expansion")
    return result


def remap_selections(selections: list[int], index_map: dict[int, int]) -> list[int]:
    """Translate outline indices to pool indices, dropping failed outlines."""
    remapped = []
    for i in selections:
        if i in index_map and index_map[i] not in remapped:
            remapped.append(index_map[i])
    return remapped
