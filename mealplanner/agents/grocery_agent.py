"""Shopping List Agent.

Turns a confirmed meal plan into one consolidated shopping list batch:
duplicates merged, pantry stock subtracted, retail-rounded, categorized.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ..core.ai_client import AIClient
from ..core.errors import ConsolidationError, NotFoundError, MealPlannerError
from ..models import MealPlan, ShoppingListItem
from ..schemas import (
    ConsolidatedItem,
    PantrySnapshotItem,
    ShoppingListResponse,
    SHOPPING_CATEGORIES,
)
from ..services.ingredient_normalize import normalize_ingredient_key
from ..services.pantry import pantry_snapshot
from ..services.unit_conversion import (
    auto_select_unit,
    convert_unit,
    format_qty,
    round_up_to_retail,
    to_base,
)
from ..settings import settings

logger = logging.getLogger("mealplanner.grocery")

MAX_ITEM_QUANTITY = 1000.0

# Keyword -> category, first match wins
CATEGORY_KEYWORDS = [
    ("frozen", "frozen"),
    ("chicken", "protein"), ("beef", "protein"), ("pork", "protein"), ("salmon", "protein"),
    ("fish", "protein"), ("shrimp", "protein"), ("tofu", "protein"), ("egg", "protein"),
    ("turkey", "protein"), ("sausage", "protein"), ("bacon", "protein"),
    ("milk", "dairy"), ("cheese", "dairy"), ("cream", "dairy"), ("butter", "dairy"),
    ("yogurt", "dairy"),
    ("rice", "dry goods"), ("pasta", "dry goods"), ("noodle", "dry goods"), ("flour", "dry goods"),
    ("bean", "dry goods"), ("lentil", "dry goods"), ("oat", "dry goods"), ("tortilla", "dry goods"),
    ("bread", "dry goods"), ("sugar", "dry goods"),
    ("sauce", "condiment"), ("vinegar", "condiment"), ("oil", "condiment"), ("mustard", "condiment"),
    ("mayo", "condiment"), ("honey", "condiment"), ("ketchup", "condiment"),
    ("salt", "spice"), ("pepper flake", "spice"), ("cumin", "spice"), ("paprika", "spice"),
    ("cinnamon", "spice"), ("oregano", "spice"), ("chili powder", "spice"), ("black pepper", "spice"),
]


@dataclass
class RawIngredient:
    name: str
    quantity: float
    unit: str
    recipe_name: str


def guess_category(name: str) -> str:
    key = name.lower()
    for word, category in CATEGORY_KEYWORDS:
        if word in key:
            return category
    return "produce" if key else "other"


def collect_raw_ingredients(db: Session, meal_plan: MealPlan) -> list[RawIngredient]:
    """Ingredient lines of the plan's recipes, in plan order."""
    raw = []
    for entry in meal_plan.entries:
        recipe = entry.recipe
        if recipe is None:
            continue
        for ing in recipe.ingredients:
            raw.append(RawIngredient(
                name=ing.name,
                quantity=float(ing.quantity or 0),
                unit=ing.unit or "",
                recipe_name=recipe.name,
            ))
    return raw


def _add_to_group(slots: list[dict], key: str, line: RawIngredient):
    """Sum the line into the first slot whose unit it converts to, else open a new slot."""
    for slot in slots:
        conv = convert_unit(line.quantity, line.unit, slot["base_unit"], ingredient_name=key)
        if conv.ok:
            slot["qty"] += conv.qty
            break
    else:
        base_qty, base_unit, u_type = to_base(line.quantity, line.unit)
        slot = {
            "name": line.name.strip(),
            "qty": base_qty,
            "base_unit": base_unit,
            "type": u_type,
            "recipes": [],
        }
        slots.append(slot)
    if line.recipe_name not in slot["recipes"]:
        slot["recipes"].append(line.recipe_name)


def aggregate_needs(
    raw: list[RawIngredient],
    pantry: list[PantrySnapshotItem],
    unit_system: Optional[str] = None,
) -> list[ConsolidatedItem]:
    """
    Deterministic consolidation.

    - Lines whose normalized names match are summed in the unit of the
      first line, bridging mass and volume by density where known; lines
      that cannot be converted get a slot of their own
    - Pantry stock of the same ingredient is subtracted, floored at 0, and
      each pantry row is used up only once across slots
    - What remains is rounded up to a retail step and shown in a readable unit
    """
    unit_system = unit_system or settings.unit_system

    # key -> slots, insertion ordered
    aggregated: dict[str, list[dict]] = {}
    for line in raw:
        key = normalize_ingredient_key(line.name)
        if not key:
            continue
        _add_to_group(aggregated.setdefault(key, []), key, line)

    pantry_by_key: dict[str, list[PantrySnapshotItem]] = {}
    for p in pantry:
        pantry_by_key.setdefault(normalize_ingredient_key(p.name), []).append(p)
    # Unused stock per pantry row, in the row's own unit
    left = {id(p): p.quantity_remaining for p in pantry}

    items = []
    for key, slots in aggregated.items():
        for slot in slots:
            base_unit = slot["base_unit"]
            needed = slot["qty"]
            for p in pantry_by_key.get(key, []):
                if needed <= 0:
                    break
                if left[id(p)] <= 0:
                    continue
                conv = convert_unit(left[id(p)], p.unit, base_unit, ingredient_name=key)
                if not conv.ok or conv.qty <= 0:
                    logger.debug(f"Pantry '{p.name}' ({p.unit}) not comparable to {base_unit}, ignoring")
                    continue
                used = min(needed, conv.qty)
                needed -= used
                left[id(p)] -= left[id(p)] * used / conv.qty

            if needed <= 0:
                continue

            needed = round_up_to_retail(needed, slot["type"])
            display_unit = auto_select_unit(needed, base_unit, unit_system)
            display_qty = convert_unit(needed, base_unit, display_unit).qty if display_unit != base_unit else needed

            items.append(ConsolidatedItem(
                ingredient_name=slot["name"],
                quantity=format_qty(display_qty),
                unit=display_unit,
                category=guess_category(slot["name"]),
                notes=f"for {', '.join(slot['recipes'])}",
            ))

    return items


def build_consolidation_prompt(
    raw: list[RawIngredient],
    pantry: list[PantrySnapshotItem],
    unit_system: Optional[str] = None,
) -> str:
    unit_system = unit_system or settings.unit_system
    if unit_system == "metric":
        unit_rules = (
            "- Proteins: use grams (g) for weight\n"
            "- Liquids: use milliliters (ml)\n"
            "- Produce by weight: use grams (g)"
        )
    else:
        unit_rules = (
            "- Proteins: use pounds (lb) for weight\n"
            "- Liquids: use cups or fluid ounces\n"
            "- Produce by weight: use pounds (lb) or ounces (oz)"
        )

    raw_lines = "\n".join(f"- {r.quantity:g} {r.unit} {r.name} (for {r.recipe_name})" for r in raw)
    pantry_lines = "\n".join(f"- {p.name}: {p.quantity_remaining:g} {p.unit}" for p in pantry) or "(empty)"

    return f"""Convert these recipe ingredients into a practical shopping list.

RAW INGREDIENTS FROM RECIPES:
{raw_lines}

CURRENT PANTRY (already have, don't include unless we need more):
{pantry_lines}

UNIT SYSTEM: {unit_system.upper()}
{unit_rules}

INSTRUCTIONS:
1. Combine duplicate and similar ingredients across recipes
2. Subtract pantry stock: need 800g, have 500g -> list 300g; fully covered -> omit
3. Round up to sensible retail quantities
4. Categorize each item as one of: {"|".join(SHOPPING_CATEGORIES)}
5. Skip water and ice

Respond with ONLY valid JSON:
{json.dumps({"items": [{"ingredientName": "Carrots", "quantity": 3, "unit": "medium", "category": "produce", "notes": None}]})}"""


def sanitize_items(items: list[ConsolidatedItem]) -> list[ConsolidatedItem]:
    """Drop unnamed or non-positive items, clamp excessive quantities, fix categories."""
    clean = []
    for item in items:
        name = (item.ingredient_name or "").strip()
        if not name:
            logger.warning(f"Skipping shopping item without a name: {item}")
            continue

        qty = item.quantity
        if qty is None or qty <= 0:
            logger.warning(f"Skipping '{name}' with invalid quantity {qty}")
            continue
        if qty > MAX_ITEM_QUANTITY:
            logger.warning(f"Clamping excessive quantity for {name}: {qty} -> {MAX_ITEM_QUANTITY}")
            qty = MAX_ITEM_QUANTITY

        category = (item.category or "").strip().lower()
        if category not in SHOPPING_CATEGORIES:
            category = "other"

        clean.append(ConsolidatedItem(
            ingredient_name=name,
            quantity=qty,
            unit=(item.unit or "").strip(),
            category=category,
            notes=item.notes or None,
        ))
    return clean


async def consolidate_with_ai(
    ai: AIClient,
    raw: list[RawIngredient],
    pantry: list[PantrySnapshotItem],
    unit_system: Optional[str] = None,
) -> list[ConsolidatedItem]:
    prompt = build_consolidation_prompt(raw, pantry, unit_system)
    response = await ai.generate_json(
        prompt,
        ShoppingListResponse,
        system_instruction="You are a smart grocery shopping assistant. Respond with valid JSON only.",
        model=settings.gemini_fast_model,
        timeout=settings.consolidation_timeout_seconds,
    )
    return sanitize_items(response.items)


async def generate_shopping_list(
    db: Session,
    meal_plan_id: str,
    ai: Optional[AIClient] = None,
    pantry: Optional[list[PantrySnapshotItem]] = None,
) -> list[ShoppingListItem]:
    """
    Replace the plan's shopping list with a freshly consolidated batch.

    Without an available AI client the local aggregation is used. On any
    failure the previous state is untouched and ConsolidationError is raised.
    """
    meal_plan = db.get(MealPlan, meal_plan_id)
    if meal_plan is None:
        raise NotFoundError(f"Meal plan {meal_plan_id} not found")

    raw = collect_raw_ingredients(db, meal_plan)
    if pantry is None:
        pantry = pantry_snapshot(db)

    try:
        if ai is not None and ai.is_available():
            items = await consolidate_with_ai(ai, raw, pantry)
        else:
            logger.info("AI unavailable, using local shopping list aggregation")
            items = sanitize_items(aggregate_needs(raw, pantry))
    except (MealPlannerError, asyncio.TimeoutError) as e:
        logger.error(f"Shopping list consolidation failed for plan {meal_plan_id}: {e}")
        raise ConsolidationError(str(e)) from e

    # Previous batch for this plan is replaced in the same transaction
    db.query(ShoppingListItem).filter(
        ShoppingListItem.meal_plan_id == meal_plan_id
    ).delete(synchronize_session=False)

    rows = []
    for item in items:
        row = ShoppingListItem(
            meal_plan_id=meal_plan_id,
            ingredient_name=item.ingredient_name,
            quantity=max(item.quantity, 0.0),
            unit=item.unit,
            category=item.category,
            notes=item.notes,
        )
        db.add(row)
        rows.append(row)

    meal_plan.shopping_list_generated_at = datetime.now(timezone.utc)
    db.commit()

    logger.info(f"Shopping list for plan {meal_plan_id}: {len(rows)} items from {len(raw)} ingredient lines")
    return rows
