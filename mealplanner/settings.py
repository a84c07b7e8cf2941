from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./mealplanner.db"

    # AI
    ai_mode: str = "mock"  # "mock" or "gemini"
    gemini_api_key: Optional[str] = None
    gemini_text_model: str = "gemini-2.5-pro"
    gemini_fast_model: str = "gemini-2.5-flash"
    ai_image_model: str = "gemini-2.5-flash-image"

    # Generation pipeline
    outline_count: int = 24
    detail_batch_size: int = 4
    max_selections: int = 6
    outline_thinking_budget: int = 8000
    recent_history_months: int = 3

    # Session / job tracking
    session_stale_minutes: int = 60

    # Preference learning
    compaction_threshold: int = 50
    keep_recent: int = 20

    # Shopping list
    consolidation_timeout_seconds: float = 45.0
    unit_system: str = "metric"  # "metric" or "us_customary"
    default_servings: int = 2

    # Image cache
    image_cache_max_age_days: int = 21


settings = Settings()
