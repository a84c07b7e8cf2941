"""Pydantic schemas for the meal planner.

Model-facing payloads use camelCase keys (recipeName, ingredientName,
defaultSelections); Python code uses snake_case. Both are accepted on input.

- Recipes: RecipeOutline -> GeneratedRecipe -> RecipePool
- Normalization request/response
- Shopping list consolidation
- Preferences (compaction digest, live scoring)
- Progress events
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True)


_MIXED_FRACTION_RE = re.compile(r"^(\d+)\s+(\d+)/(\d+)$")
_FRACTION_RE = re.compile(r"^(\d+)/(\d+)$")


def parse_quantity(value: Any) -> float:
    """
    Coerce a model-supplied quantity to a non-negative float.

    Accepts numbers, numeric strings, "1/2" and "1 1/2". Anything
    unreadable (or null) becomes 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return max(float(value), 0.0)

    s = str(value).strip()
    if not s:
        return 0.0

    m = _MIXED_FRACTION_RE.match(s)
    if m:
        whole, num, den = (int(g) for g in m.groups())
        return whole + num / den if den else float(whole)

    m = _FRACTION_RE.match(s)
    if m:
        num, den = (int(g) for g in m.groups())
        return num / den if den else 0.0

    try:
        return max(float(s), 0.0)
    except ValueError:
        return 0.0


# --- Recipes ---

class IngredientLine(CamelModel):
    ingredient_name: str
    quantity: float = Field(0.0, ge=0)
    unit: str = ""
    preparation: Optional[str] = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, v):
        return parse_quantity(v)

    @field_validator("unit", mode="before")
    @classmethod
    def _coerce_unit(cls, v):
        return "" if v is None else str(v)


class CookingStep(CamelModel):
    title: str
    substeps: list[str] = Field(default_factory=list)


class _RecipeFields(CamelModel):
    name: str
    description: str = ""
    servings: int = 2
    prep_time_minutes: int = 0
    cook_time_minutes: int = 0
    tags: list[str] = Field(default_factory=list)
    main_protein: Optional[str] = None
    main_starch: Optional[str] = None
    meal_format: Optional[str] = None


class RecipeOutline(_RecipeFields):
    """Phase 1 output. Never mutated after creation."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class GeneratedRecipe(_RecipeFields):
    """Outline plus index-aligned ingredients and steps."""
    ingredients: list[IngredientLine] = Field(default_factory=list)
    steps: list[CookingStep] = Field(default_factory=list)

    @classmethod
    def from_outline(
        cls,
        outline: RecipeOutline,
        ingredients: list[IngredientLine],
        steps: list[CookingStep],
    ) -> "GeneratedRecipe":
        return cls(
            **outline.model_dump(),
            ingredients=list(ingredients),
            steps=list(steps),
        )


class RecipePool(CamelModel):
    recipes: list[GeneratedRecipe] = Field(default_factory=list)
    default_selections: list[int] = Field(default_factory=list)


class OutlinesResponse(CamelModel):
    recipes: list[RecipeOutline]
    default_selections: list[int] = Field(default_factory=list)

    @field_validator("default_selections", mode="before")
    @classmethod
    def _coerce_selections(cls, v):
        if not isinstance(v, list):
            return []
        return [i for i in v if isinstance(i, int) and not isinstance(i, bool)]


class RecipeDetailsResponse(CamelModel):
    ingredients: list[IngredientLine]
    steps: list[CookingStep] = Field(default_factory=list)


# --- Normalization ---

class NormalizationIngredient(CamelModel):
    ingredient_name: str
    quantity: float = 0.0
    unit: str = ""

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, v):
        return parse_quantity(v)

    @field_validator("unit", mode="before")
    @classmethod
    def _coerce_unit(cls, v):
        return "" if v is None else str(v)


class NormalizationRecipe(CamelModel):
    recipe_name: str
    ingredients: list[NormalizationIngredient] = Field(default_factory=list)


class NormalizationRequest(CamelModel):
    recipes: list[NormalizationRecipe]


class NormalizationResponse(CamelModel):
    # Left untyped; entries are validated one index at a time
    recipes: Any = None


# --- Shopping list ---

SHOPPING_CATEGORIES = (
    "produce",
    "dairy",
    "protein",
    "dry goods",
    "condiment",
    "spice",
    "frozen",
    "other",
)


class ConsolidatedItem(CamelModel):
    ingredient_name: Optional[str] = None
    quantity: Optional[float] = None
    unit: str = ""
    category: str = "other"
    notes: Optional[str] = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _lenient_quantity(cls, v):
        if v is None or isinstance(v, bool):
            return None
        if isinstance(v, (int, float)):
            return float(v)
        try:
            return float(str(v).strip())
        except ValueError:
            return None

    @field_validator("unit", "category", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else str(v)


class ShoppingListResponse(CamelModel):
    items: list[ConsolidatedItem] = Field(default_factory=list)


# --- Pantry ---

class PantrySnapshotItem(CamelModel):
    name: str
    quantity_remaining: float
    unit: str


# --- Preferences ---

class PlanPreferences(CamelModel):
    servings: int = 2
    spice_tolerance: str = "medium"  # mild | medium | hot | very_hot


class LearnedPreferences(BaseModel):
    liked_tags: list[str] = Field(default_factory=list)
    disliked_tags: list[str] = Field(default_factory=list)
    liked_ingredients: list[str] = Field(default_factory=list)
    disliked_ingredients: list[str] = Field(default_factory=list)
    summary_text: str = ""


class PreferenceDigest(CamelModel):
    """Compaction call output."""
    summary: str
    likes: list[str] = Field(default_factory=list)
    dislikes: list[str] = Field(default_factory=list)


# --- Progress ---

class GenerationProgress(BaseModel):
    phase: str  # outlines | details | normalizing | saving | consolidating | complete | error
    current: int = 0
    total: int = 0
    recipe_name: Optional[str] = None
    state: str = "idle"
    message: Optional[str] = None
