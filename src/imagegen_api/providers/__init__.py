"""Generation provider adapters."""

from imagegen_api.providers.base import (
    Failed,
    GeneratedImage,
    PollResult,
    ProviderClient,
    Running,
    Succeeded,
)
from imagegen_api.providers.fallback import FallbackProvider, extract_image_urls
from imagegen_api.providers.mock import MockProvider
from imagegen_api.providers.primary import PrimaryProvider

__all__ = [
    "Failed",
    "FallbackProvider",
    "GeneratedImage",
    "MockProvider",
    "PollResult",
    "PrimaryProvider",
    "ProviderClient",
    "Running",
    "Succeeded",
    "extract_image_urls",
]
