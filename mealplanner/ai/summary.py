import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..core.ai_client import AIClient
from ..schemas import PreferenceDigest
from ..settings import settings

logger = logging.getLogger("mealplanner.ai")

MAX_PREFERENCE_ITEMS = 20

SYSTEM_PROMPT = """Return VALID JSON only. No markdown. No extra keys.

You maintain a meal planning user's long-term taste profile from their recipe ratings.

Rules:
1. "summary" is a 500-800 word profile in third person: cuisines, ingredients, cooking methods, flavor patterns, quick vs elaborate meals, spice tolerance.
2. "likes" and "dislikes" hold SPECIFIC items ("cilantro", "Thai cuisine", "spicy food"), max {max_items} each, strongest first.
3. Only list items with clear evidence: 4-5 stars = like, 1-2 stars = dislike.
4. When a previous summary is given, preserve its important preferences and update them with the new ratings.

Output Schema:
{{"summary": "...", "likes": ["..."], "dislikes": ["..."]}}
"""


@dataclass
class HistoryEntryForSummary:
    recipe_name: str
    rating: int
    would_make_again: Optional[bool]
    cooked_at: datetime
    tags: list[str] = field(default_factory=list)
    cuisines: list[str] = field(default_factory=list)
    ingredients: list[str] = field(default_factory=list)


def _render_entry(h: HistoryEntryForSummary) -> str:
    stars = "★" * h.rating + "☆" * (5 - h.rating)
    again = {True: "Yes", False: "No"}.get(h.would_make_again, "N/A")
    return (
        f"- {h.recipe_name} [{stars}] (Make again: {again})\n"
        f"  Tags: {', '.join(h.tags) or 'none'}\n"
        f"  Cuisines: {', '.join(h.cuisines) or 'none'}\n"
        f"  Key ingredients: {', '.join(h.ingredients[:6]) or 'none'}"
    )


def build_summary_prompt(entries: list[HistoryEntryForSummary], existing_summary: Optional[str]) -> str:
    history = "\n\n".join(_render_entry(h) for h in entries)
    prompt = f"Analyze this recipe rating history and update the taste profile.\n\nRECIPE HISTORY:\n{history}"
    if existing_summary:
        prompt += f"\n\nPREVIOUS SUMMARY (merge and update with new data):\n{existing_summary}"
    return prompt


async def summarize_preferences(
    ai: AIClient,
    entries: list[HistoryEntryForSummary],
    existing_summary: Optional[str] = None,
) -> PreferenceDigest:
    """
    Fold rated history into a preference digest.

    Errors propagate so the caller can keep the raw history.
    """
    digest = await ai.generate_json(
        build_summary_prompt(entries, existing_summary),
        PreferenceDigest,
        system_instruction=SYSTEM_PROMPT.format(max_items=MAX_PREFERENCE_ITEMS),
        model=settings.gemini_fast_model,
    )
    logger.info(
        f"Preference digest: {len(digest.likes)} likes, {len(digest.dislikes)} dislikes "
        f"from {len(entries)} entries"
    )
    return digest
