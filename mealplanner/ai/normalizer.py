"""
Cross-recipe ingredient normalization.

The model sees only recipe names and ingredient name/quantity/unit and
returns the same structure with consistent naming and units. Results are
trusted per index only when recipeName matches the input at that index.
Name equality is the only check: two recipes sharing a name in one pool
would both pass.
"""

import json
import logging

from pydantic import ValidationError

from ..core.ai_client import AIClient
from ..schemas import (
    GeneratedRecipe,
    IngredientLine,
    NormalizationIngredient,
    NormalizationRecipe,
    NormalizationRequest,
    NormalizationResponse,
)
from ..settings import settings

logger = logging.getLogger("mealplanner.ai")

SYSTEM_PROMPT = """You normalize recipe ingredients so a shopping list can be aggregated.
- Use one canonical name per ingredient across all recipes (e.g. "scallion" and "green onion" -> "green onion")
- Convert units to {unit_system} where practical (g, ml for metric)
- Keep every recipe, in the same order, with the same recipeName
- Keep ingredient lines in the same order
Respond with valid JSON only."""

USER_PROMPT = """Normalize these ingredient lists:

{payload}

Return JSON with the same structure, but normalized:
{{"recipes":[{{"recipeName":"...","ingredients":[{{"ingredientName":"normalized name","quantity":1,"unit":"cup"}}]}}]}}"""


def build_normalization_request(recipes: list[GeneratedRecipe]) -> NormalizationRequest:
    return NormalizationRequest(
        recipes=[
            NormalizationRecipe(
                recipe_name=r.name,
                ingredients=[
                    NormalizationIngredient(
                        ingredient_name=i.ingredient_name, quantity=i.quantity, unit=i.unit
                    )
                    for i in r.ingredients
                ],
            )
            for r in recipes
        ]
    )


def apply_normalization(
    recipes: list[GeneratedRecipe],
    response: NormalizationResponse,
) -> list[GeneratedRecipe]:
    """
    Merge normalized ingredient lists back into the pool.

    Output has the input's length and order. Preparation notes are
    re-attached by ingredient index; lines past the original count get none.
    """
    if not isinstance(response.recipes, list):
        logger.warning("Normalization response has no recipes list, keeping original ingredients")
        return list(recipes)

    merged = []
    fallbacks = 0
    for idx, recipe in enumerate(recipes):
        raw = response.recipes[idx] if idx < len(response.recipes) else None
        normalized = None
        if raw is not None:
            try:
                normalized = NormalizationRecipe.model_validate(raw)
            except ValidationError:
                normalized = None

        if normalized is None or normalized.recipe_name != recipe.name:
            fallbacks += 1
            merged.append(recipe)
            continue

        lines = []
        for j, n in enumerate(normalized.ingredients):
            prep = recipe.ingredients[j].preparation if j < len(recipe.ingredients) else None
            lines.append(
                IngredientLine(
                    ingredient_name=n.ingredient_name,
                    quantity=n.quantity,
                    unit=n.unit,
                    preparation=prep,
                )
            )
        merged.append(recipe.model_copy(update={"ingredients": lines}))

    if fallbacks:
        logger.warning(f"Normalization fell back to original ingredients for {fallbacks} recipe(s)")
    return merged


async def normalize_pool(ai: AIClient, recipes: list[GeneratedRecipe]) -> list[GeneratedRecipe]:
    """
    Phase 3. Transport and parse errors propagate (phase-fatal).
    """
    if not recipes:
        return []

    request = build_normalization_request(recipes)
    user = USER_PROMPT.format(payload=json.dumps(request.dump()["recipes"], indent=2))
    system = SYSTEM_PROMPT.format(unit_system=settings.unit_system)

    response = await ai.generate_json(
        user,
        NormalizationResponse,
        system_instruction=system,
        model=settings.gemini_fast_model,
    )
    return apply_normalization(recipes, response)
