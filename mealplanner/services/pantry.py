import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from ..core.errors import NotFoundError
from ..models import MealPlan, PantryItem, Recipe, ShoppingListItem
from ..schemas import PantrySnapshotItem
from .unit_conversion import convert_unit

logger = logging.getLogger("mealplanner.pantry")

PERISHABLE_CATEGORIES = ("produce", "protein", "dairy")

# Days until a freshly bought item is considered expired
DEFAULT_SHELF_LIFE_DAYS = {
    "produce": 7,
    "protein": 3,
    "dairy": 10,
}


@dataclass
class DeductionWarning:
    ingredient_name: str
    needed: float
    unit: str
    available: float
    kind: str  # missing | insufficient


def pantry_snapshot(db: Session) -> list[PantrySnapshotItem]:
    """Read-only view of items still in stock."""
    items = db.scalars(
        select(PantryItem)
        .where(PantryItem.quantity_remaining > 0)
        .order_by(PantryItem.name)
    ).all()
    return [
        PantrySnapshotItem(name=p.name, quantity_remaining=p.quantity_remaining, unit=p.unit)
        for p in items
    ]


def find_pantry_item(db: Session, name: str, unit: Optional[str] = None) -> Optional[PantryItem]:
    query = select(PantryItem).where(func.lower(PantryItem.name) == name.strip().lower())
    if unit is not None:
        query = query.where(func.lower(PantryItem.unit) == unit.strip().lower())
    return db.scalars(query.order_by(PantryItem.created_at)).first()


def default_expiry(category: str, today: Optional[date] = None) -> Optional[date]:
    days = DEFAULT_SHELF_LIFE_DAYS.get(category)
    if days is None:
        return None
    return (today or date.today()) + timedelta(days=days)


def deduct_recipe(db: Session, recipe: Recipe) -> list[DeductionWarning]:
    """
    Subtract a cooked recipe's ingredients from the pantry, floored at 0.

    Returns warnings for ingredients that were missing or short. Does not
    commit.
    """
    warnings = []
    now = datetime.now(timezone.utc)

    for ing in recipe.ingredients:
        p_item = find_pantry_item(db, ing.name)
        if not p_item:
            warnings.append(DeductionWarning(ing.name, ing.quantity, ing.unit, 0.0, "missing"))
            continue

        conv = convert_unit(ing.quantity, ing.unit, p_item.unit, ingredient_name=ing.name)
        delta = conv.qty if conv.ok else ing.quantity
        if not conv.ok:
            logger.warning(f"Deducting '{ing.name}' without unit conversion ({ing.unit} -> {p_item.unit})")

        if p_item.quantity_remaining < delta:
            warnings.append(DeductionWarning(
                ing.name, delta, p_item.unit, p_item.quantity_remaining, "insufficient"
            ))

        p_item.quantity_remaining = max(0.0, p_item.quantity_remaining - delta)
        p_item.updated_at = now

    db.flush()
    return warnings


def complete_shopping_trip(db: Session, meal_plan_id: str) -> list[PantryItem]:
    """
    Fold checked shopping items into the pantry and clear the plan's list.

    A checked item adds to an existing pantry row with the same name and
    unit, otherwise a new row is created.
    """
    meal_plan = db.get(MealPlan, meal_plan_id)
    if meal_plan is None:
        raise NotFoundError(f"Meal plan {meal_plan_id} not found")

    checked = db.scalars(
        select(ShoppingListItem).where(
            ShoppingListItem.meal_plan_id == meal_plan_id,
            ShoppingListItem.checked.is_(True),
        )
    ).all()

    touched = []
    for item in checked:
        existing = find_pantry_item(db, item.ingredient_name, item.unit)
        if existing:
            existing.quantity_remaining += item.quantity
            existing.quantity_initial = max(existing.quantity_initial, existing.quantity_remaining)
            expiry = default_expiry(existing.category)
            if expiry:
                existing.expires_on = expiry
            touched.append(existing)
            continue

        category = item.category if item.category else "other"
        p_item = PantryItem(
            name=item.ingredient_name,
            unit=item.unit or "each",
            quantity_initial=item.quantity,
            quantity_remaining=item.quantity,
            category=category,
            perishable=category in PERISHABLE_CATEGORIES,
            expires_on=default_expiry(category),
        )
        db.add(p_item)
        touched.append(p_item)

    db.query(ShoppingListItem).filter(
        ShoppingListItem.meal_plan_id == meal_plan_id
    ).delete(synchronize_session=False)
    db.commit()

    logger.info(f"Shopping trip for plan {meal_plan_id}: {len(checked)} checked items added to pantry")
    return touched
