"""Base try-on provider abstraction layer.

This module defines the narrow capability interface every image-synthesis
backend implements, and the tagged failure type providers raise. Failures
are classified at the point of the provider response so the orchestrator
only ever dispatches on ``FailureKind``.

Examples:
    >>> from tryon.core.providers import TryOnProvider, ProviderImage
    >>> class MyProvider(TryOnProvider):
    ...     provider_type = ProviderType.GOOGLE
    ...     async def generate_tryon(self, subject, garment, model):
    ...         return ProviderImage(data=b"...", mime_type="image/png")

Tests:
    - tests/unit/test_providers.py::TestFailureKind
    - tests/unit/test_providers.py::TestClassifyStatus
    - tests/unit/test_providers.py::TestProviderFailure
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

# Re-export ProviderType from config for convenience
from tryon.config import ProviderType
from tryon.images import ImagePayload

__all__ = [
    "FailureKind",
    "ProviderFailure",
    "ProviderImage",
    "ProviderType",
    "TryOnProvider",
    "classify_status",
]


class FailureKind(str, Enum):
    """Classification of a failed provider attempt.

    - TRANSIENT: 5xx or network error; retry, then fall through
    - RATE_LIMITED: 429; abort the whole request
    - QUOTA_EXHAUSTED: provider billing/capacity; abort the whole request
    - SAFETY_BLOCKED: content filter; retry (false positives), then fall through
    - NO_RESULT: 200 without a usable image; handled like TRANSIENT
    """

    TRANSIENT = "TRANSIENT"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
    SAFETY_BLOCKED = "SAFETY_BLOCKED"
    NO_RESULT = "NO_RESULT"

    @property
    def aborts_request(self) -> bool:
        """Whether no further attempt or candidate should be tried."""
        return self in (FailureKind.RATE_LIMITED, FailureKind.QUOTA_EXHAUSTED)


class ProviderFailure(Exception):
    """A classified provider failure.

    Attributes:
        kind: Failure classification
        provider: The provider that failed
        model: Model the call was made with
        status_code: Raw HTTP status (if applicable)
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        provider: ProviderType,
        model: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.model = model
        self.status_code = status_code

    def __str__(self) -> str:
        parts = [f"[{self.provider.value}]", f"{self.kind.value}:", self.args[0]]
        if self.status_code:
            parts.insert(1, f"({self.status_code})")
        return " ".join(parts)


def classify_status(status_code: int, body: str = "") -> FailureKind:
    """Map an HTTP error status to a failure kind.

    Provider adapters override specific codes (e.g. moderation 403) before
    falling back to this table.
    """
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if status_code == 402 or "quota" in body.lower():
        return FailureKind.QUOTA_EXHAUSTED
    return FailureKind.TRANSIENT


@dataclass
class ProviderImage:
    """Image returned by a provider, with any accompanying text note."""

    data: bytes
    mime_type: str = "image/png"
    note: str | None = None


class TryOnProvider(ABC):
    """Abstract base class for try-on image providers.

    Attributes:
        provider_type: The provider type identifier
        api_key: API key for authentication
    """

    provider_type: ProviderType

    def __init__(self, api_key: str) -> None:
        """Initialize provider with API key.

        Args:
            api_key: API key for authentication.
        """
        self.api_key = api_key

    @property
    def supports_description(self) -> bool:
        """Whether ``describe_garment`` is available."""
        return False

    @abstractmethod
    async def generate_tryon(
        self,
        subject: ImagePayload,
        garment: ImagePayload,
        model: str,
    ) -> ProviderImage:
        """Synthesize the subject wearing the garment.

        Args:
            subject: Photo of the person.
            garment: Photo of the garment.
            model: Model ID to use.

        Returns:
            ProviderImage with the composite.

        Raises:
            ProviderFailure: Classified failure.
        """
        pass

    async def describe_garment(self, garment: ImagePayload, model: str) -> str:
        """Write a short caption for the try-on result.

        Raises:
            NotImplementedError: If the provider has no text capability.
            ProviderFailure: Classified failure.
        """
        raise NotImplementedError(f"{self.provider_type.value} cannot describe images")

    async def close(self) -> None:
        """Release any client resources."""
        return None
