import asyncio
import base64
import logging
from typing import Optional, Type, TypeVar
from datetime import datetime, timezone
from pydantic import BaseModel
from google import genai
from google.genai import types

from ..settings import settings
from ..ai.utils import normalize_model_id
from .errors import AIUnavailableError, AITransportError, AIMalformedResponseError
from .text import parse_json_response

logger = logging.getLogger("mealplanner.ai")

T = TypeVar("T", bound=BaseModel)


class AIClient:
    """
    Thin wrapper around the google-genai SDK.

    Text calls are async and always return free text; callers extract JSON
    themselves. Failures are raised, never retried here.
    """

    def __init__(self, api_key: Optional[str] = None, mode: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.mode = mode or settings.ai_mode  # "mock" or "gemini"
        self._client: Optional[genai.Client] = None
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[datetime] = None
        self.image_quota_exceeded: bool = False

        if self.mode == "gemini" and self.api_key:
            self._client = genai.Client(api_key=self.api_key)

    def is_available(self) -> bool:
        return self.mode == "gemini" and self._client is not None

    def _record_error(self, e: Exception):
        self.last_error = f"{e.__class__.__name__}: {str(e)}"
        self.last_error_at = datetime.now(timezone.utc)

    async def generate_text(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        thinking_budget: Optional[int] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Single text generation call (async).

        Raises AIUnavailableError when AI is disabled, AITransportError on SDK
        exceptions or timeout, AIMalformedResponseError on an empty body.
        """
        if not self.is_available():
            raise AIUnavailableError(f"AI is not available (mode={self.mode})")

        model_id = normalize_model_id(model or settings.gemini_text_model)

        config_kwargs = {"system_instruction": system_instruction}
        if thinking_budget:
            config_kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=thinking_budget)

        try:
            call = self._client.aio.models.generate_content(
                model=model_id,
                contents=prompt,
                config=types.GenerateContentConfig(**config_kwargs),
            )
            if timeout:
                response = await asyncio.wait_for(call, timeout=timeout)
            else:
                response = await call
        except asyncio.TimeoutError as e:
            self._record_error(e)
            logger.error(f"Gemini call timed out after {timeout}s (model={model_id})")
            raise AITransportError(f"Model call timed out after {timeout}s") from e
        except Exception as e:
            self._record_error(e)
            logger.error(f"Gemini generation failed: {e}")
            raise AITransportError(str(e)) from e

        if not response.text:
            logger.warning(f"Gemini returned empty response from model {model_id}")
            raise AIMalformedResponseError("Model returned an empty response")

        return response.text

    async def generate_json(
        self,
        prompt: str,
        response_model: Type[T],
        system_instruction: Optional[str] = None,
        thinking_budget: Optional[int] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> T:
        text = await self.generate_text(
            prompt,
            system_instruction=system_instruction,
            thinking_budget=thinking_budget,
            model=model,
            timeout=timeout,
        )
        return parse_json_response(text, response_model)

    def _images_from_parts(self, model_id: str, prompt: str) -> list[bytes]:
        response = self._client.models.generate_content(
            model=model_id,
            contents=prompt,
            config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )
        if not response.candidates or not response.candidates[0].content.parts:
            return []
        blobs = []
        for part in response.candidates[0].content.parts:
            if not part.inline_data:
                continue
            data = part.inline_data.data
            blobs.append(base64.b64decode(data) if isinstance(data, str) else data)
        return blobs

    def _images_from_imagen(self, model_id: str, prompt: str) -> list[bytes]:
        response = self._client.models.generate_images(
            model=model_id,
            prompt=prompt,
            config=types.GenerateImagesConfig(number_of_images=1, output_mime_type="image/jpeg"),
        )
        blobs = []
        for generated in response.generated_images or []:
            image = generated.image
            if image is not None and image.image_bytes:
                blobs.append(image.image_bytes)
        return blobs

    def generate_image(self, prompt: str, model: Optional[str] = None) -> list[bytes]:
        """
        Generate images (sync). Gemini image models answer through
        generate_content with an IMAGE modality, Imagen models through
        generate_images.
        """
        if not self.is_available():
            raise AIUnavailableError(f"AI is not available (mode={self.mode})")

        model_id = normalize_model_id(model or settings.ai_image_model)
        logger.info(f"Image request model={model_id} prompt='{prompt[:50]}...'")

        try:
            if "gemini" in model_id.lower():
                blobs = self._images_from_parts(model_id, prompt)
            else:
                blobs = self._images_from_imagen(model_id, prompt)
        except Exception as e:
            self._record_error(e)
            if "429" in str(e) or "quota" in str(e).lower():
                self.image_quota_exceeded = True
            logger.error(f"Image generation failed (model={model_id}): {e}")
            raise AITransportError(str(e)) from e

        if not blobs:
            logger.warning(f"No image data returned by {model_id}")
        return blobs
