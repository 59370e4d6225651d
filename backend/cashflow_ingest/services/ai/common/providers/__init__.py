"""Provider factory for the ingest AI scopes.

Unknown, disallowed or keyless providers resolve to ``MockProvider`` so a
batch can still run (every table is then classified as skip).
"""

from __future__ import annotations

import logging

from cashflow_ingest.core.config import get_settings

from .base import Attachment, BaseProvider, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "Attachment", "BaseProvider", "ProviderResult", "MockProvider"]

# provider name -> settings attribute holding its API key
_API_KEYS = {
    "claude": "anthropic_api_key",
    "openai": "openai_api_key",
}


def _build(name: str, api_key: str) -> BaseProvider:
    if name == "claude":
        from .claude import ClaudeProvider

        return ClaudeProvider(api_key=api_key)
    from .openai import OpenAIProvider

    return OpenAIProvider(api_key=api_key)


def get_provider(provider_name: str) -> BaseProvider:
    settings = get_settings()
    name = provider_name.lower().strip()

    if name == "mock":
        return MockProvider()
    if name not in settings.ai_allowed_providers:
        logger.warning("AI provider %r is not allowed, using mock", name)
        return MockProvider()
    key_attr = _API_KEYS.get(name)
    if key_attr is None:
        logger.warning("AI provider %r is not supported, using mock", name)
        return MockProvider()
    api_key = getattr(settings, key_attr)
    if not api_key:
        logger.warning("%s is not set, using mock for %r", key_attr.upper(), name)
        return MockProvider()
    return _build(name, api_key)
