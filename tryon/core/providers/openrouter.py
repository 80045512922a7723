"""OpenRouter try-on provider.

This module provides try-on synthesis through OpenRouter's chat-completions
API with image output modality (e.g. google/gemini-2.5-flash-image-preview).

OpenRouter API docs: https://openrouter.ai/docs

Examples:
    >>> from tryon.core.providers.openrouter import OpenRouterTryOnProvider
    >>> provider = OpenRouterTryOnProvider(api_key="sk-or-v1-...")
    >>> image = await provider.generate_tryon(subject, garment, "google/gemini-2.5-flash-image-preview")

Tests:
    - tests/unit/test_providers.py::TestOpenRouterTryOnProvider
"""

import base64
import binascii
import logging
from typing import Any

import httpx

from tryon.config import ProviderType
from tryon.core.providers.base import (
    FailureKind,
    ProviderFailure,
    ProviderImage,
    TryOnProvider,
    classify_status,
)
from tryon.images import ImagePayload
from tryon.prompts import SYNTHESIS_PROMPT

logger = logging.getLogger(__name__)

# OpenRouter API configuration
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def _decode_data_url(url: str) -> tuple[bytes, str] | None:
    """Split a ``data:<mime>;base64,<payload>`` URL into bytes and mime type."""
    if not url.startswith("data:") or "," not in url:
        return None
    header, payload = url.split(",", 1)
    mime_type = header[5:].split(";", 1)[0] or "image/png"
    try:
        return base64.b64decode(payload), mime_type
    except (binascii.Error, ValueError):
        return None


class OpenRouterTryOnProvider(TryOnProvider):
    """OpenRouter API provider for image-output models.

    Attributes:
        provider_type: ProviderType.OPENROUTER
        api_key: OpenRouter API key
        base_url: API base URL
    """

    provider_type = ProviderType.OPENROUTER

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize OpenRouter provider.

        Args:
            api_key: OpenRouter API key.
            base_url: API base URL (default: https://openrouter.ai/api/v1).
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        super().__init__(api_key)
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get httpx async client (lazy initialization)."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "X-Title": "Virtual Try-On",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _failure(
        self,
        status_code: int,
        message: str,
        model: str,
    ) -> ProviderFailure:
        if status_code == 403:
            # OpenRouter answers 403 when moderation flags the input
            kind = FailureKind.SAFETY_BLOCKED
        else:
            kind = classify_status(status_code, message)
        return ProviderFailure(
            kind=kind,
            message=message,
            provider=self.provider_type,
            model=model,
            status_code=status_code,
        )

    def _handle_error(self, response: httpx.Response, model: str) -> ProviderFailure:
        """Convert an HTTP error response to a classified failure."""
        try:
            error_data = response.json()
        except ValueError:
            error_data = None
        error = error_data.get("error") if isinstance(error_data, dict) else None
        message = error.get("message") if isinstance(error, dict) else None
        if not isinstance(message, str):
            message = response.text
        return self._failure(response.status_code, message, model)

    async def generate_tryon(
        self,
        subject: ImagePayload,
        garment: ImagePayload,
        model: str,
    ) -> ProviderImage:
        """Synthesize the subject wearing the garment.

        Raises:
            ProviderFailure: Classified failure.
        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": SYNTHESIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": subject.to_data_url()}},
                        {"type": "image_url", "image_url": {"url": garment.to_data_url()}},
                    ],
                }
            ],
            "modalities": ["image", "text"],
        }

        try:
            response = await self.client.post("/chat/completions", json=payload)
        except httpx.RequestError as e:
            raise ProviderFailure(
                kind=FailureKind.TRANSIENT,
                message=f"Request failed: {e!r}",
                provider=self.provider_type,
                model=model,
            ) from e

        if response.status_code != 200:
            raise self._handle_error(response, model)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderFailure(
                kind=FailureKind.NO_RESULT,
                message="Response was not JSON",
                provider=self.provider_type,
                model=model,
                status_code=200,
            ) from e

        if not isinstance(data, dict):
            raise ProviderFailure(
                kind=FailureKind.NO_RESULT,
                message=f"Unexpected response body: {type(data).__name__}",
                provider=self.provider_type,
                model=model,
                status_code=200,
            )

        # Upstream errors can arrive inside a 200 body
        if isinstance(data.get("error"), dict):
            error = data["error"]
            code = error.get("code")
            raise self._failure(
                code if isinstance(code, int) else 500,
                str(error.get("message") or "Upstream error"),
                model,
            )

        choices = data.get("choices")
        if not isinstance(choices, list):
            choices = []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        message = choice.get("message")
        if not isinstance(message, dict):
            message = {}
        images = message.get("images")
        for image in images if isinstance(images, list) else []:
            image_url = image.get("image_url") if isinstance(image, dict) else None
            url = image_url.get("url") if isinstance(image_url, dict) else None
            decoded = _decode_data_url(url) if isinstance(url, str) else None
            if decoded is not None:
                image_bytes, mime_type = decoded
                note = message.get("content") if isinstance(message.get("content"), str) else None
                return ProviderImage(data=image_bytes, mime_type=mime_type, note=note or None)

        finish_reason = choice.get("finish_reason")
        if finish_reason == "content_filter":
            raise ProviderFailure(
                kind=FailureKind.SAFETY_BLOCKED,
                message="Generation stopped by content filter",
                provider=self.provider_type,
                model=model,
                status_code=200,
            )

        raise ProviderFailure(
            kind=FailureKind.NO_RESULT,
            message=f"No image in response (choices={len(choices)}, finish_reason={finish_reason})",
            provider=self.provider_type,
            model=model,
            status_code=200,
        )
