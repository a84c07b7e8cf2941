"""SQLAlchemy ORM models for the meal planner.

Tables:
- pantry_items: Household inventory (initial + remaining quantity)
- recipes: Saved recipes with ordered ingredients and steps
- recipe_history: Append-only cook/rating log (rated rows get compacted)
- meal_plans / meal_plan_entries: Confirmed weekly plans
- shopping_list_items: Consolidated shopping list per meal plan
- preference_summaries: Single long-horizon taste summary
- generation_sessions: Single-row breadcrumb / persisted recipe pool
- pending_jobs: In-flight background jobs (for restart recovery)
- image_cache: Generated recipe/step/ingredient images
"""

from __future__ import annotations

import uuid
from datetime import datetime, date, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Text,
    Integer,
    Boolean,
    Float,
    ForeignKey,
    Index,
    LargeBinary,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from .db import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on read; treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PantryItem(Base):
    """Pantry item for inventory management."""
    __tablename__ = "pantry_items"
    __table_args__ = (
        Index("ix_pantry_items_name", "name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="piece")
    quantity_initial: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    quantity_remaining: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="other")

    # Expiry for "use soon" prompting
    perishable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Recipe(Base):
    """Saved recipe (either generated and confirmed, or user-entered)."""
    __tablename__ = "recipes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    servings: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    prep_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cook_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    main_protein: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    main_starch: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    meal_format: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    recipe_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    times_cooked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_cooked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    ingredients: Mapped[list["RecipeIngredient"]] = relationship(
        "RecipeIngredient", back_populates="recipe", cascade="all, delete-orphan",
        order_by="RecipeIngredient.position"
    )
    steps: Mapped[list["RecipeStep"]] = relationship(
        "RecipeStep", back_populates="recipe", cascade="all, delete-orphan",
        order_by="RecipeStep.step_index"
    )


class RecipeIngredient(Base):
    """Ingredient line; position preserves the generated order."""
    __tablename__ = "recipe_ingredients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    preparation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="ingredients")


class RecipeStep(Base):
    __tablename__ = "recipe_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False
    )
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    substeps: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="steps")


class MealPlan(Base):
    """Weekly meal plan created when the user confirms a selection."""
    __tablename__ = "meal_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    servings: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    # Null until a consolidated list has been written
    shopping_list_generated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    entries: Mapped[list["MealPlanEntry"]] = relationship(
        "MealPlanEntry", back_populates="meal_plan", cascade="all, delete-orphan",
        order_by="MealPlanEntry.position"
    )
    shopping_items: Mapped[list["ShoppingListItem"]] = relationship(
        "ShoppingListItem", back_populates="meal_plan", cascade="all, delete-orphan"
    )


class MealPlanEntry(Base):
    __tablename__ = "meal_plan_entries"
    __table_args__ = (
        Index("ix_meal_plan_entries_plan", "meal_plan_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    meal_plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    cooked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    meal_plan: Mapped["MealPlan"] = relationship("MealPlan", back_populates="entries")
    recipe: Mapped["Recipe"] = relationship("Recipe")


class ShoppingListItem(Base):
    __tablename__ = "shopping_list_items"
    __table_args__ = (
        Index("ix_shopping_list_items_plan", "meal_plan_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    meal_plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("meal_plans.id", ondelete="CASCADE"), nullable=False
    )
    ingredient_name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="other")

    checked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    in_cart: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    meal_plan: Mapped["MealPlan"] = relationship("MealPlan", back_populates="shopping_items")


class RecipeHistory(Base):
    """Append-only cook log. Rated rows are eventually folded into the summary."""
    __tablename__ = "recipe_history"
    __table_args__ = (
        Index("ix_recipe_history_cooked_at", "cooked_at"),
        Index("ix_recipe_history_name", "recipe_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    recipe_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="SET NULL"), nullable=True
    )
    recipe_name: Mapped[str] = mapped_column(String(200), nullable=False)
    recipe_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 1..5
    would_make_again: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cooked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Snapshot so scoring survives recipe deletion
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ingredients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    meal_format: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    main_protein: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)


class PreferenceSummary(Base):
    """At most one row; updated in place by compaction and user edits."""
    __tablename__ = "preference_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    summary_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    likes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    dislikes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    entries_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class GenerationSession(Base):
    """
    Single-row generation state (id=1).

    - Breadcrumb: generation_started_at set, pool_json null
    - Persisted pool: pool_json set, generation_started_at null
    """
    __tablename__ = "generation_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    pool_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    selected_indices: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    generation_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    saved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PendingJob(Base):
    """Background job marker; a surviving row after restart means the job was killed."""
    __tablename__ = "pending_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)  # meal_generation | shopping_consolidation
    related_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ImageCacheEntry(Base):
    __tablename__ = "image_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    cache_key: Mapped[str] = mapped_column(String(300), unique=True, nullable=False)
    image_data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    content_type: Mapped[str] = mapped_column(String(50), nullable=False, default="image/webp")
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
