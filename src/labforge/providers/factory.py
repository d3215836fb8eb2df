from __future__ import annotations
from typing import Optional, Union

from labforge.core.ports import DEFAULT_MODELS, AIService, ProviderConfig, ProviderKind
from labforge.providers.registry import ProviderRegistry
from labforge.resilience.retry import RetryPolicy

__all__ = ["DEFAULT_MODELS", "create_ai_service", "default_model"]


def default_model(provider: Union[str, ProviderKind]) -> str:
    key = getattr(provider, "value", provider)
    return DEFAULT_MODELS.get(str(key).lower(), "")


def create_ai_service(config: ProviderConfig, *, retry_policy: Optional[RetryPolicy] = None) -> AIService:
    """Build the adapter for config.provider. Cloud providers without a key fail here, before any request."""
    ProviderRegistry.ensure_imports()
    config.validate()
    Adapter = ProviderRegistry.get(config.provider)
    return Adapter.create(config, retry_policy=retry_policy)
