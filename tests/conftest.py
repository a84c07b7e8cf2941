import asyncio
import json
import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("AI_MODE", "mock")

from mealplanner.db import Base
from mealplanner import models  # noqa: F401  registers tables
from mealplanner.core.ai_client import AIClient

# --- Test Database Setup ---

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool  # in-memory db shared by every session
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Direct database session for setup."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


# --- Scripted AI ---

class ScriptedAI(AIClient):
    """
    AIClient whose text calls are answered by `responder(prompt, system)`.

    The responder returns text, or an exception instance to raise.
    """

    def __init__(self, responder, available=True, images=None):
        super().__init__(api_key="", mode="mock")
        self.responder = responder
        self.available = available
        self.images = images or []
        self.calls = []
        self.image_calls = []

    def is_available(self) -> bool:
        return self.available

    async def generate_text(self, prompt, system_instruction=None, thinking_budget=None, model=None, timeout=None):
        self.calls.append({
            "prompt": prompt,
            "system": system_instruction,
            "thinking_budget": thinking_budget,
            "model": model,
            "timeout": timeout,
        })
        await asyncio.sleep(0)
        result = self.responder(prompt, system_instruction)
        if isinstance(result, BaseException):
            raise result
        return result

    def generate_image(self, prompt, model=None):
        self.image_calls.append(prompt)
        return list(self.images)


@pytest.fixture
def scripted_ai():
    return ScriptedAI


# --- Payload builders ---

PROTEINS = ["chicken", "beef", "pork", "fish", "tofu", "none"]
FORMATS = ["bowl", "sandwich", "taco", "stir-fry", "pasta", "soup", "salad", "sheet pan"]


def _outline(i):
    return {
        "name": f"Recipe {i}",
        "description": f"Tasty dish number {i}",
        "servings": 2,
        "prepTimeMinutes": 10,
        "cookTimeMinutes": 20,
        "tags": ["quick"],
        "mainProtein": PROTEINS[i % len(PROTEINS)],
        "mainStarch": "rice",
        "mealFormat": FORMATS[i % len(FORMATS)],
    }


@pytest.fixture
def outlines_payload():
    def build(count=24, selections=(0, 1, 2, 3, 4, 5)):
        return json.dumps({
            "recipes": [_outline(i) for i in range(count)],
            "defaultSelections": list(selections),
        })
    return build


@pytest.fixture
def details_payload():
    def build(name="Recipe", ingredients=None):
        ingredients = ingredients or [
            {"ingredientName": f"{name} base", "quantity": 200, "unit": "g", "preparation": "diced"},
            {"ingredientName": "olive oil", "quantity": "1/2", "unit": "tbsp", "preparation": None},
        ]
        return json.dumps({
            "ingredients": ingredients,
            "steps": [{"title": "**Cook**", "substeps": ["Heat the pan", "Cook it"]}],
        })
    return build


def recipe_name_in(prompt: str) -> str:
    for line in prompt.splitlines():
        if line.startswith("RECIPE: "):
            return line[len("RECIPE: "):]
    return ""


def echo_normalization(prompt: str) -> str:
    """Return the normalization payload unchanged, as a well-behaved model would."""
    payload, _ = json.JSONDecoder().raw_decode(prompt, prompt.index("["))
    return json.dumps({"recipes": payload})


@pytest.fixture
def pipeline_responder(outlines_payload, details_payload):
    """
    Routes prompts to canned answers for every generation phase and for
    shopping list consolidation. `fail_details` names recipes whose detail
    call raises; `outlines`, `normalization` and `consolidation` override
    a phase with a callable taking the prompt.
    """
    def build(
        count=24,
        selections=(0, 1, 2, 3, 4, 5),
        fail_details=(),
        outlines=None,
        normalization=None,
        consolidation=None,
    ):
        def respond(prompt, system):
            if "recipe outlines for meal planning" in prompt:
                return outlines(prompt) if outlines else outlines_payload(count, selections)
            if "Complete this recipe" in prompt:
                name = recipe_name_in(prompt)
                if name in fail_details:
                    return RuntimeError(f"simulated failure for {name}")
                return details_payload(name)
            if "Normalize these ingredient lists" in prompt:
                return normalization(prompt) if normalization else echo_normalization(prompt)
            if "Convert these recipe ingredients" in prompt:
                if consolidation:
                    return consolidation(prompt)
                return json.dumps({"items": [
                    {"ingredientName": "olive oil", "quantity": 1, "unit": "bottle", "category": "condiment"},
                    {"ingredientName": "rice", "quantity": 500, "unit": "g", "category": "dry goods"},
                ]})
            raise AssertionError(f"unexpected prompt: {prompt[:80]}")
        return respond
    return build
