"""Generation provider abstraction layer.

Usage:
    from genorch.services.provider import get_provider

    provider = get_provider()
    response = await provider.send(request)
"""

from typing import Optional

from genorch.config import ProviderConfig, settings
from genorch.services.provider.base import GenerationProvider
from genorch.services.provider.evolink import EvolinkProvider


def get_provider(config: Optional[ProviderConfig] = None) -> GenerationProvider:
    """Return a provider configured from settings.provider unless overridden."""
    return EvolinkProvider(config or settings.provider)


__all__ = ["EvolinkProvider", "GenerationProvider", "get_provider"]
