"""Generation provider adapters."""

from __future__ import annotations

from photo_tasks.config import ProviderSettings
from photo_tasks.engine.provider.base import GenerationProvider, ProviderOutput, ProviderRequest
from photo_tasks.engine.provider.echo_provider import EchoGenerationProvider
from photo_tasks.engine.provider.http_provider import HttpGenerationProvider

__all__ = [
    "EchoGenerationProvider",
    "GenerationProvider",
    "HttpGenerationProvider",
    "ProviderOutput",
    "ProviderRequest",
    "build_provider",
]


def build_provider(settings: ProviderSettings) -> GenerationProvider:
    """Instantiate the configured provider adapter."""

    if settings.backend == "http":
        return HttpGenerationProvider(base_url=settings.base_url, api_key=settings.api_key)
    if settings.backend == "echo":
        return EchoGenerationProvider()
    raise ValueError(f"Unsupported provider backend: {settings.backend!r}")
