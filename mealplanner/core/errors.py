"""Exception taxonomy for the generation and consolidation pipeline.

- Transport errors are never retried silently; the caller decides.
- Malformed responses are fatal for outlines and normalization but only
  drop the affected recipe during detail expansion.
"""

from typing import Optional


class MealPlannerError(Exception):
    """Base class for all library errors."""


class AIUnavailableError(MealPlannerError):
    """AI mode is not enabled or no API key is configured."""


class AITransportError(MealPlannerError):
    """Network failure, SDK exception, non-2xx response or timeout."""


class AIMalformedResponseError(MealPlannerError):
    """The model answered but no valid JSON payload could be extracted."""

    def __init__(self, message: str, raw_text: Optional[str] = None):
        super().__init__(message)
        self.raw_text = raw_text


class GenerationError(MealPlannerError):
    """A phase-fatal failure while building the recipe pool."""

    def __init__(self, phase: str, message: str):
        super().__init__(message)
        self.phase = phase


class GenerationCancelled(MealPlannerError):
    """Cancellation was observed at a phase or batch boundary."""


class ConsolidationError(MealPlannerError):
    """Shopping list could not be produced; the meal plan has no list."""


class NotFoundError(MealPlannerError):
    """A referenced row does not exist."""


class InvalidStateError(MealPlannerError):
    """Operation not allowed in the job's current state."""
