"""Shared fixtures for mocked tests -- MagicMock collaborators for the invalidation and repair services."""
import pytest
from unittest.mock import MagicMock

from keyed_lock import KeyedLock
from metadata_cache import CacheResult
from series_matcher import LinkResult


def make_file(file_id=1, series_id=10, metadata_series="Batman", series_name="Batman",
              publisher=None, series_publisher=None, path="/data/DC/Batman/Batman 001.cbz"):
    """A get_comic_file()-shaped dict."""
    return {
        "id": file_id,
        "path": path,
        "filename": path.rsplit("/", 1)[-1],
        "series_id": series_id,
        "metadata": None if metadata_series is False else {
            "series": metadata_series,
            "publisher": publisher,
        },
        "series": None if series_id is None else {
            "id": series_id,
            "name": series_name,
            "publisher": series_publisher,
        },
    }


@pytest.fixture
def store():
    store = MagicMock(name="store")
    store.compare_and_set_file_series.return_value = True
    store.update_series_progress.return_value = True
    store.get_series.return_value = None
    store.update_file_metadata_series.return_value = True
    return store


@pytest.fixture
def cache():
    cache = MagicMock(name="cache")
    cache.refresh_metadata_cache.return_value = True
    cache.cache_file_metadata.return_value = CacheResult(success=True)
    return cache


@pytest.fixture
def linker():
    linker = MagicMock(name="linker")
    linker.auto_link_file_to_series.return_value = LinkResult(success=True, series_id=20, match_type="exact")
    return linker


@pytest.fixture
def events():
    return MagicMock(name="events")


@pytest.fixture
def invalidator(store, cache, linker, events):
    from metadata_invalidation import MetadataInvalidator

    return MetadataInvalidator(
        store=store,
        cache=cache,
        linker=linker,
        stats=MagicMock(name="stats"),
        tags=MagicMock(name="tags"),
        events=events,
        sidecar=MagicMock(name="sidecar"),
        locks=KeyedLock(),
        max_workers=2,
    )
