"""Google Gen AI SDK try-on provider.

This module provides try-on synthesis with Gemini native image models via
the google-genai SDK, plus a short garment caption with a Gemini text model.

Examples:
    >>> from tryon.core.providers.google import GoogleTryOnProvider
    >>> provider = GoogleTryOnProvider(api_key="your-api-key")
    >>> image = await provider.generate_tryon(subject, garment, "gemini-2.5-flash-image")

Tests:
    - tests/unit/test_providers.py::TestGoogleTryOnProvider
"""

import logging
from typing import Any

from google import genai
from google.genai import errors, types

from tryon.config import Locale, ProviderType
from tryon.core.providers.base import (
    FailureKind,
    ProviderFailure,
    ProviderImage,
    TryOnProvider,
    classify_status,
)
from tryon.images import ImagePayload
from tryon.prompts import SYNTHESIS_PROMPT, get_caption_prompt

logger = logging.getLogger(__name__)

# Finish reasons that mean the content filter stopped generation
_SAFETY_FINISH_REASONS = ("SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST")


class GoogleTryOnProvider(TryOnProvider):
    """Google Gen AI SDK provider for Gemini image models.

    Attributes:
        provider_type: ProviderType.GOOGLE
        api_key: Google AI API key
        locale: Language for captions

    Available Models:
        - gemini-2.5-flash-image: Nano Banana (fast)
        - gemini-3-pro-image-preview: Nano Banana Pro (high quality)
        - gemini-2.5-flash: captions
    """

    provider_type = ProviderType.GOOGLE

    def __init__(self, api_key: str, locale: Locale = Locale.PT_BR) -> None:
        """Initialize Google provider.

        Args:
            api_key: Google AI API key.
            locale: Language for captions.
        """
        super().__init__(api_key)
        self.locale = locale
        self._client: Any = None  # Lazy initialization

    @property
    def client(self) -> Any:
        """Get Gen AI client (lazy initialization)."""
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    @property
    def supports_description(self) -> bool:
        return True

    def _classify_error(self, error: Exception, model: str) -> ProviderFailure:
        """Convert Google API errors to classified provider failures."""
        if isinstance(error, ProviderFailure):
            return error

        message = str(error)
        status_code = error.code if isinstance(error, errors.APIError) else None

        if status_code == 429:
            kind = FailureKind.RATE_LIMITED
        elif status_code == 403 or "quota" in message.lower():
            kind = FailureKind.QUOTA_EXHAUSTED
        elif status_code is not None:
            kind = classify_status(status_code, message)
        else:
            # Network errors and timeouts from the SDK's HTTP layer
            kind = FailureKind.TRANSIENT

        return ProviderFailure(
            kind=kind,
            message=message,
            provider=self.provider_type,
            model=model,
            status_code=status_code,
        )

    def _check_blocked(self, response: Any, model: str) -> None:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None) if feedback else None
        if block_reason:
            raise ProviderFailure(
                kind=FailureKind.SAFETY_BLOCKED,
                message=f"Prompt blocked: {block_reason}",
                provider=self.provider_type,
                model=model,
                status_code=200,
            )

        candidates = getattr(response, "candidates", None) or []
        if candidates:
            finish_reason = str(getattr(candidates[0], "finish_reason", "") or "")
            if any(reason in finish_reason for reason in _SAFETY_FINISH_REASONS):
                raise ProviderFailure(
                    kind=FailureKind.SAFETY_BLOCKED,
                    message=f"Generation stopped: {finish_reason}",
                    provider=self.provider_type,
                    model=model,
                    status_code=200,
                )

    async def generate_tryon(
        self,
        subject: ImagePayload,
        garment: ImagePayload,
        model: str,
    ) -> ProviderImage:
        """Synthesize the subject wearing the garment.

        Uses generate_content() with the prompt and both images inline and
        response_modalities TEXT+IMAGE.

        Raises:
            ProviderFailure: Classified failure.
        """
        try:
            response = await self.client.aio.models.generate_content(
                model=model,
                contents=[
                    types.Part.from_text(text=SYNTHESIS_PROMPT),
                    types.Part.from_bytes(data=subject.data, mime_type=subject.mime_type),
                    types.Part.from_bytes(data=garment.data, mime_type=garment.mime_type),
                ],
                config=types.GenerateContentConfig(
                    response_modalities=["TEXT", "IMAGE"],
                ),
            )
        except Exception as e:
            raise self._classify_error(e, model) from e

        self._check_blocked(response, model)

        image: ProviderImage | None = None
        notes: list[str] = []
        candidates = response.candidates or []
        if candidates and candidates[0].content and candidates[0].content.parts:
            for part in candidates[0].content.parts:
                inline = getattr(part, "inline_data", None)
                mime_type = getattr(inline, "mime_type", None) or ""
                if image is None and inline is not None and inline.data and mime_type.startswith("image/"):
                    image = ProviderImage(data=inline.data, mime_type=mime_type)
                elif getattr(part, "text", None):
                    notes.append(part.text)

        if image is None:
            summary = {
                "candidates": len(candidates),
                "finish_reason": str(getattr(candidates[0], "finish_reason", None)) if candidates else None,
            }
            raise ProviderFailure(
                kind=FailureKind.NO_RESULT,
                message=f"No image in response: {summary}",
                provider=self.provider_type,
                model=model,
                status_code=200,
            )

        image.note = " ".join(notes).strip() or None
        return image

    async def describe_garment(self, garment: ImagePayload, model: str) -> str:
        """Write a short caption for the try-on result from the garment image.

        Raises:
            ProviderFailure: Classified failure.
        """
        try:
            response = await self.client.aio.models.generate_content(
                model=model,
                contents=[
                    types.Part.from_text(text=get_caption_prompt(self.locale)),
                    types.Part.from_bytes(data=garment.data, mime_type=garment.mime_type),
                ],
            )
        except Exception as e:
            raise self._classify_error(e, model) from e

        return (response.text or "").strip()
