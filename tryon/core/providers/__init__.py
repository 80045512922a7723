"""Try-on provider abstraction and implementations.

Re-exports base classes and provider implementations for convenient imports.
"""

import logging

from tryon.config import Settings

# Base classes (import from base module)
from tryon.core.providers.base import (
    FailureKind,
    ProviderFailure,
    ProviderImage,
    ProviderType,
    TryOnProvider,
    classify_status,
)
from tryon.core.providers.google import GoogleTryOnProvider
from tryon.core.providers.openrouter import OpenRouterTryOnProvider

logger = logging.getLogger(__name__)


def build_providers(settings: Settings) -> dict[ProviderType, TryOnProvider]:
    """Instantiate every provider that has an API key configured.

    Args:
        settings: Application settings.

    Returns:
        dict mapping provider type to provider instance.
    """
    providers: dict[ProviderType, TryOnProvider] = {}
    if settings.has_provider(ProviderType.GOOGLE):
        providers[ProviderType.GOOGLE] = GoogleTryOnProvider(
            api_key=settings.get_api_key(ProviderType.GOOGLE),
            locale=settings.LOCALE,
        )
    if settings.has_provider(ProviderType.OPENROUTER):
        providers[ProviderType.OPENROUTER] = OpenRouterTryOnProvider(
            api_key=settings.get_api_key(ProviderType.OPENROUTER),
            base_url=settings.OPENROUTER_BASE_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    logger.info(f"Configured providers: {[p.value for p in providers]}")
    return providers


__all__ = [
    # Base classes
    "FailureKind",
    "ProviderFailure",
    "ProviderImage",
    "ProviderType",
    "TryOnProvider",
    "classify_status",
    # Implementations
    "GoogleTryOnProvider",
    "OpenRouterTryOnProvider",
    "build_providers",
]
