"""AI chat providers for the enrichment pipeline."""

from .base import (
    ChatProvider,
    ProviderRegistry,
    get_registry,
    select_providers,
)

__all__ = [
    "ChatProvider",
    "ProviderRegistry",
    "get_registry",
    "select_providers",
]
