import json
import re
from typing import Any, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import AIMalformedResponseError

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)```", re.DOTALL)


def clean_md(text: str) -> str:
    """
    Sanitize markdown artifacts from text.
    Removes:
    - Leading headers (#, ##)
    - Bold markers (**, __)
    - Leading bullets (-, *)
    """
    if not text:
        return ""

    # Remove bolding (**text** -> text)
    text = re.sub(r"(\*\*|__)(.*?)\1", r"\2", text)

    # Remove leading headers (# Title -> Title)
    text = re.sub(r"^\s*#+\s+", "", text)

    # Remove leading bullets (- Item -> Item)
    text = re.sub(r"^\s*[-*•]\s+", "", text)

    return text.strip()


def _clamp(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length-1].rstrip() + "…"


def clean_step(title: str, substeps: list[str]) -> dict:
    """Strip markdown from a cooking step, drop empty and duplicate substeps."""
    clean_title = _clamp(clean_md(title or ""), 60) or "Step"

    seen = set()
    cleaned = []
    for raw in substeps or []:
        s = clean_md(raw)
        key = s.lower().strip(" .")
        if not key or key in seen:
            continue
        seen.add(key)
        cleaned.append(s)

    return {"title": clean_title, "substeps": cleaned}


def extract_json_text(text: str) -> str:
    """
    Locate the JSON payload inside a model response.

    Fallback order:
    1. Fenced code block (```json ... ``` or bare ```)
    2. Substring starting at the first '{' or '[', whichever comes first
    3. The raw (trimmed) text
    """
    trimmed = (text or "").strip()
    if not trimmed:
        return ""

    fence = _FENCE_RE.search(trimmed)
    if fence and fence.group(1).strip():
        return fence.group(1).strip()

    # Opening fence with no closing fence (truncated response)
    if trimmed.startswith("```"):
        newline = trimmed.find("\n")
        trimmed = trimmed[newline + 1:].strip() if newline != -1 else ""

    starts = [i for i in (trimmed.find("{"), trimmed.find("[")) if i != -1]
    if starts:
        return trimmed[min(starts):]

    return trimmed


def extract_json(text: str) -> Any:
    """
    Decode the first well-formed JSON object/array in a model response.

    Trailing prose after the JSON value is ignored. Raises
    AIMalformedResponseError when nothing decodable is found.
    """
    candidate = extract_json_text(text)
    if not candidate:
        raise AIMalformedResponseError("Model returned an empty response", raw_text=text)

    decoder = json.JSONDecoder()
    try:
        value, _ = decoder.raw_decode(candidate)
        return value
    except json.JSONDecodeError:
        pass

    # A fenced block may itself contain prose before the JSON value
    starts = [i for i in (candidate.find("{"), candidate.find("[")) if i > 0]
    if starts:
        try:
            value, _ = decoder.raw_decode(candidate[min(starts):])
            return value
        except json.JSONDecodeError:
            pass

    raise AIMalformedResponseError("No well-formed JSON found in model response", raw_text=text)


def parse_json_response(text: str, response_model: Type[T]) -> T:
    """Extract JSON from free text and validate it against a pydantic model."""
    data = extract_json(text)
    try:
        return response_model.model_validate(data)
    except ValidationError as e:
        raise AIMalformedResponseError(
            f"{response_model.__name__} validation failed: {e.error_count()} error(s)",
            raw_text=text,
        ) from e
