"""Generation orchestrator - resilient batching of AI image/video requests.

This module provides the startup validation used by the CLI and the API
before any request is sent to a provider.
Call validate_provider_settings() during application startup.
"""

import logging

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_provider_settings(provider_config) -> None:
    """Validate that the provider section is usable before submitting work.

    Fails fast with a clear message instead of letting every request in a
    batch come back with 401.

    Raises:
        RuntimeError: If the base URL or API key is missing.
    """
    if not provider_config.base_url:
        raise RuntimeError(
            "Provider base URL not configured.\n"
            "Set provider.base_url in config.yaml or GENORCH_PROVIDER__BASE_URL."
        )
    if not provider_config.api_key:
        raise RuntimeError(
            "Provider API key not configured.\n"
            "Set provider.api_key in config.yaml or GENORCH_PROVIDER__API_KEY."
        )
    logger.info(f"Provider settings validated: {provider_config.base_url}")
