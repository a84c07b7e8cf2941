import base64
import io
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from PIL import Image
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.ai_client import AIClient
from ..core.errors import MealPlannerError
from ..models import ImageCacheEntry, utcnow
from ..schemas import GenerationProgress, GeneratedRecipe
from ..settings import settings

logger = logging.getLogger("mealplanner.images")

# 1x1 transparent PNG so the pipeline works without paid calls
PLACEHOLDER_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mP8/x8AAwMCAO+X2f8AAAAASUVORK5CYII="
)


def recipe_image_key(recipe_name: str) -> str:
    return recipe_name.strip().lower()


def step_image_key(recipe_name: str, step_index: int) -> str:
    return f"step:{recipe_name.strip().lower()}:{step_index}"


def ingredient_image_key(ingredient_name: str) -> str:
    return f"ingredient:{ingredient_name.strip().lower()}"


def build_recipe_prompt(title: str, cuisine: Optional[str] = None) -> str:
    # tuned for clean "recipe card" vibe
    base = f"A beautiful overhead food photograph of {title}"
    if cuisine:
        base += f", {cuisine} cuisine"
    base += ". Soft natural light, shallow depth of field, clean plating, no text, no logos, no watermark, appetizing."
    return base


def to_webp(image_bytes: bytes, quality: int = 85) -> bytes:
    img = Image.open(io.BytesIO(image_bytes))
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    buf = io.BytesIO()
    img.save(buf, format="WEBP", quality=quality)
    return buf.getvalue()


def get_cached_image(db: Session, key: str) -> Optional[ImageCacheEntry]:
    return db.scalars(select(ImageCacheEntry).where(ImageCacheEntry.cache_key == key)).first()


def get_or_generate_image(db: Session, ai: Optional[AIClient], key: str, prompt: str) -> bytes:
    """
    Cached WebP bytes for `key`, generating and storing them on a miss.

    Without an available AI client a placeholder is returned and nothing is
    cached, so a later call with AI enabled still generates.
    """
    cached = get_cached_image(db, key)
    if cached is not None:
        return cached.image_data

    if ai is None or not ai.is_available():
        return PLACEHOLDER_PNG

    images = ai.generate_image(prompt)
    if not images:
        raise MealPlannerError(f"No image returned for '{key}'")

    try:
        webp = to_webp(images[0])
    except OSError as e:
        # PIL.UnidentifiedImageError included
        raise MealPlannerError(f"Unreadable image returned for '{key}': {e}") from e

    db.add(ImageCacheEntry(cache_key=key, image_data=webp, content_type="image/webp"))
    db.commit()
    logger.info(f"Cached image '{key}' ({len(webp)} bytes)")
    return webp


def generate_recipe_images(
    db: Session,
    ai: Optional[AIClient],
    recipes: list[GeneratedRecipe],
    on_progress: Optional[Callable[[GenerationProgress], None]] = None,
) -> dict[str, bytes]:
    """One image per recipe, strictly one call at a time. Failures are skipped."""
    results = {}
    total = len(recipes)
    for i, recipe in enumerate(recipes):
        cuisine = recipe.tags[0] if recipe.tags else None
        try:
            results[recipe.name] = get_or_generate_image(
                db, ai, recipe_image_key(recipe.name), build_recipe_prompt(recipe.name, cuisine)
            )
        except MealPlannerError as e:
            logger.warning(f"Image generation failed for '{recipe.name}': {e}")

        if on_progress:
            on_progress(GenerationProgress(
                phase="images", current=i + 1, total=total, recipe_name=recipe.name, state="ready"
            ))
    return results


def cleanup_expired_images(db: Session, max_age_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
    max_age_days = settings.image_cache_max_age_days if max_age_days is None else max_age_days
    cutoff = (now or utcnow()) - timedelta(days=max_age_days)
    deleted = db.query(ImageCacheEntry).filter(
        ImageCacheEntry.generated_at < cutoff
    ).delete(synchronize_session=False)
    db.commit()
    if deleted:
        logger.info(f"Removed {deleted} cached images older than {max_age_days} days")
    return deleted
