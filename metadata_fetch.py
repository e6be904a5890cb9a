"""
Fetch one record per source through the registered provider adapters and merge them.
"""
from typing import Dict, Optional

from app_logging import app_logger
from config import config, get_metadata_settings
from metadata_merge import merge_series_with_all_values, merge_issue_with_all_values
from models.providers import (
    BaseProvider,
    MetadataSource,
    ProviderCredentials,
    get_provider,
    is_provider_registered,
)


def get_credentials(source: MetadataSource) -> Optional[ProviderCredentials]:
    """Credentials for a source from [SETTINGS], or None when it needs none."""
    if source == MetadataSource.COMICVINE:
        api_key = config.get("SETTINGS", "COMICVINE_API_KEY", fallback="").strip()
        return ProviderCredentials(api_key=api_key) if api_key else None
    if source == MetadataSource.METRON:
        username = config.get("SETTINGS", "METRON_USERNAME", fallback="").strip()
        password = config.get("SETTINGS", "METRON_PASSWORD", fallback="").strip()
        if username and password:
            return ProviderCredentials(username=username, password=password)
    return None


def resolve_provider(source: MetadataSource, providers=None) -> Optional[BaseProvider]:
    """
    Provider instance for a source.

    Args:
        source: Source to fetch from
        providers: Optional source -> provider instance overrides

    Returns:
        The override, a registered adapter built with configured credentials,
        or None when the source has no adapter
    """
    if providers is not None and source in providers:
        return providers[source]
    if is_provider_registered(source):
        return get_provider(source, get_credentials(source))
    return None


def _fetch(source_ids, fetch_name, providers=None):
    records = {}
    for key, source_id in (source_ids or {}).items():
        source = MetadataSource.parse(key)
        if not source_id:
            continue

        try:
            provider = resolve_provider(source, providers)
            if provider is None:
                app_logger.debug(f"No provider registered for {source.value}, skipping")
                continue

            records[source] = getattr(provider, fetch_name)(str(source_id))
        except Exception as e:
            app_logger.warning(f"Failed to fetch {source.value} record {source_id}: {e}")
            records[source] = None

    return records


def fetch_series_records(source_ids: Dict, providers=None):
    """
    Fetch a series record from each source.

    Args:
        source_ids: source -> provider-specific series ID
        providers: Optional source -> provider instance overrides

    Returns:
        source -> SeriesMetadata, or None where the adapter failed or found nothing
    """
    return _fetch(source_ids, "get_series", providers)


def fetch_issue_records(source_ids: Dict, providers=None):
    """Issue counterpart of fetch_series_records."""
    return _fetch(source_ids, "get_issue", providers)


def fetch_and_merge_series(source_ids: Dict, providers=None, settings=None,
                           priority_order=None, field_overrides=None):
    """Fetch every source's series record and merge them with per-field source values."""
    records = fetch_series_records(source_ids, providers)
    return merge_series_with_all_values(records, priority_order=priority_order,
                                        field_overrides=field_overrides,
                                        settings=settings or get_metadata_settings())


def fetch_and_merge_issue(source_ids: Dict, providers=None, settings=None,
                          priority_order=None, field_overrides=None):
    records = fetch_issue_records(source_ids, providers)
    return merge_issue_with_all_values(records, priority_order=priority_order,
                                       field_overrides=field_overrides,
                                       settings=settings or get_metadata_settings())
