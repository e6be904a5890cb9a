"""
Metadata Provider Registry and Factory.

Provider adapters register themselves with the @register_provider decorator
and instances are created via get_provider() or get_provider_by_name().

Usage:
    from models.providers import register_provider, get_provider, MetadataSource

    @register_provider
    class MyProvider(BaseProvider):
        source = MetadataSource.METRON
        ...

    provider = get_provider(MetadataSource.METRON, credentials)
    series = provider.get_series("1234")
"""
from typing import Dict, Type, List, Optional

from .base import (
    BaseProvider,
    MetadataSource,
    ProviderCredentials,
    Credit,
    SeriesMetadata,
    IssueMetadata,
    MergedMetadata,
)

# Registry of provider implementations
_PROVIDER_REGISTRY: Dict[MetadataSource, Type[BaseProvider]] = {}


def register_provider(provider_class: Type[BaseProvider]) -> Type[BaseProvider]:
    """
    Decorator to register a provider implementation.

    Usage:
        @register_provider
        class MetronProvider(BaseProvider):
            source = MetadataSource.METRON
            ...
    """
    if not hasattr(provider_class, 'source'):
        raise ValueError(f"Provider class {provider_class.__name__} must define source")
    _PROVIDER_REGISTRY[provider_class.source] = provider_class
    return provider_class


def unregister_provider(source: MetadataSource) -> None:
    """Remove a registered provider (no-op when absent)."""
    _PROVIDER_REGISTRY.pop(source, None)


def get_provider(
    source: MetadataSource,
    credentials: Optional[ProviderCredentials] = None
) -> BaseProvider:
    """
    Factory function to create a provider instance.

    Raises:
        ValueError: If the source has no registered provider
    """
    if source not in _PROVIDER_REGISTRY:
        raise ValueError(f"No provider registered for source: {source.value}")
    return _PROVIDER_REGISTRY[source](credentials)


def get_provider_by_name(
    name: str,
    credentials: Optional[ProviderCredentials] = None
) -> BaseProvider:
    """
    Factory function to create a provider instance using string name.

    Raises:
        ValueError: If the provider name is not recognized
    """
    return get_provider(MetadataSource.parse(name), credentials)


def get_registered_providers() -> List[Type[BaseProvider]]:
    return list(_PROVIDER_REGISTRY.values())


def get_available_providers() -> List[Dict]:
    """
    Get list of available providers with their configuration details.

    Returns:
        List of dictionaries containing provider metadata
    """
    return [
        {
            "source": p.source.value,
            "name": p.display_name,
            "requires_auth": p.requires_auth,
            "auth_fields": p.auth_fields,
        }
        for p in _PROVIDER_REGISTRY.values()
    ]


def is_provider_registered(source: MetadataSource) -> bool:
    return source in _PROVIDER_REGISTRY


__all__ = [
    'BaseProvider',
    'MetadataSource',
    'ProviderCredentials',
    'Credit',
    'SeriesMetadata',
    'IssueMetadata',
    'MergedMetadata',
    'register_provider',
    'unregister_provider',
    'get_provider',
    'get_provider_by_name',
    'get_registered_providers',
    'get_available_providers',
    'is_provider_registered',
]
