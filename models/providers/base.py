"""
Base classes and data types for metadata providers.

This module defines the normalized records every provider adapter produces
(series and issue metadata), along with the abstract base class that adapters
implement. Records are immutable; adapters build them once per fetch.
"""
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from typing import Optional, List, Dict, Any, Tuple
from enum import Enum


class MetadataSource(Enum):
    """Enumeration of supported metadata sources."""
    COMICVINE = "comicvine"
    METRON = "metron"
    GCD = "gcd"
    ANILIST = "anilist"
    MAL = "mal"

    @classmethod
    def parse(cls, value) -> "MetadataSource":
        """Accept an enum member or its string value (any case)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown metadata source: {value}")


SERIES_SCALAR_FIELDS = (
    "name", "publisher", "start_year", "end_year", "issue_count",
    "description", "short_description", "cover_url", "url", "series_type",
    "volume", "first_issue_number", "last_issue_number",
)
SERIES_ARRAY_FIELDS = (
    "characters", "creators", "locations", "objects", "aliases", "genres", "tags",
)
# Series arrays holding Credit entries rather than plain strings
SERIES_CREDIT_FIELDS = ("characters", "creators", "locations", "objects")

ISSUE_SCALAR_FIELDS = (
    "series_name", "number", "title", "cover_date", "store_date", "description",
    "cover_url", "url", "publisher", "writer", "penciller", "inker", "colorist",
    "letterer", "cover_artist", "editor", "story_arc",
)
ISSUE_ARRAY_FIELDS = ("characters", "teams", "locations")

_CAMEL_RE = re.compile(r'(?<!^)(?=[A-Z])')


def to_snake_case(key: str) -> str:
    """coverUrl -> cover_url; snake_case keys pass through."""
    return _CAMEL_RE.sub('_', key).lower()


def to_camel_case(key: str) -> str:
    """cover_url -> coverUrl"""
    head, *rest = key.split('_')
    return head + ''.join(part.capitalize() for part in rest)


@dataclass(frozen=True)
class Credit:
    """A person, character, location or object credited by a source."""
    id: Optional[int]
    name: str
    count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {"id": self.id, "name": self.name}
        if self.count is not None:
            data["count"] = self.count
        return data

    @classmethod
    def from_value(cls, value) -> "Credit":
        """Build from a Credit, a dict, or a bare name."""
        if isinstance(value, Credit):
            return value
        if isinstance(value, dict):
            return cls(id=value.get("id"), name=value.get("name", ""), count=value.get("count"))
        return cls(id=None, name=str(value))


def _normalize_input(data: Dict[str, Any]) -> Dict[str, Any]:
    return {to_snake_case(k): v for k, v in data.items()}


def _record_to_dict(record) -> Dict[str, Any]:
    result = {"source": record.source.value, "source_id": record.source_id}
    for f in fields(record):
        if f.name in ("source", "source_id"):
            continue
        value = getattr(record, f.name)
        if value is None:
            continue
        if isinstance(value, tuple):
            value = [v.to_dict() if isinstance(v, Credit) else v for v in value]
        result[f.name] = value
    return result


@dataclass(frozen=True)
class SeriesMetadata:
    """Normalized series record from a single source."""
    source: MetadataSource
    source_id: str
    name: Optional[str] = None
    publisher: Optional[str] = None
    start_year: Optional[int] = None
    end_year: Optional[int] = None
    issue_count: Optional[int] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    cover_url: Optional[str] = None
    url: Optional[str] = None
    series_type: Optional[str] = None
    volume: Optional[int] = None
    first_issue_number: Optional[str] = None
    last_issue_number: Optional[str] = None
    characters: Optional[Tuple[Credit, ...]] = None
    creators: Optional[Tuple[Credit, ...]] = None
    locations: Optional[Tuple[Credit, ...]] = None
    objects: Optional[Tuple[Credit, ...]] = None
    aliases: Optional[Tuple[str, ...]] = None
    genres: Optional[Tuple[str, ...]] = None
    tags: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SeriesMetadata":
        """Create from a dictionary (snake_case or camelCase keys)."""
        data = _normalize_input(data)
        kwargs = {
            "source": MetadataSource.parse(data["source"]),
            "source_id": str(data.get("source_id", "")),
        }
        for name in SERIES_SCALAR_FIELDS:
            if name in data:
                kwargs[name] = data[name]
        for name in SERIES_ARRAY_FIELDS:
            value = data.get(name)
            if value is None:
                continue
            if name in SERIES_CREDIT_FIELDS:
                kwargs[name] = tuple(Credit.from_value(v) for v in value)
            else:
                kwargs[name] = tuple(value)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization (None fields omitted)."""
        return _record_to_dict(self)


@dataclass(frozen=True)
class IssueMetadata:
    """Normalized issue record from a single source."""
    source: MetadataSource
    source_id: str
    series_id: Optional[str] = None
    series_name: Optional[str] = None
    number: Optional[str] = None
    title: Optional[str] = None
    cover_date: Optional[str] = None
    store_date: Optional[str] = None
    description: Optional[str] = None
    cover_url: Optional[str] = None
    url: Optional[str] = None
    publisher: Optional[str] = None
    writer: Optional[str] = None
    penciller: Optional[str] = None
    inker: Optional[str] = None
    colorist: Optional[str] = None
    letterer: Optional[str] = None
    cover_artist: Optional[str] = None
    editor: Optional[str] = None
    story_arc: Optional[str] = None
    characters: Optional[Tuple[str, ...]] = None
    teams: Optional[Tuple[str, ...]] = None
    locations: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IssueMetadata":
        """Create from a dictionary (snake_case or camelCase keys)."""
        data = _normalize_input(data)
        kwargs = {
            "source": MetadataSource.parse(data["source"]),
            "source_id": str(data.get("source_id", "")),
        }
        if data.get("series_id") is not None:
            kwargs["series_id"] = str(data["series_id"])
        for name in ISSUE_SCALAR_FIELDS:
            if name in data:
                kwargs[name] = data[name]
        for name in ISSUE_ARRAY_FIELDS:
            if data.get(name) is not None:
                kwargs[name] = tuple(data[name])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization (None fields omitted)."""
        return _record_to_dict(self)


@dataclass(frozen=True)
class MergedMetadata:
    """
    One authoritative record folded from several source records.

    values maps field name to the winning value; field_sources records which
    source supplied each field. all_field_values, when present, keeps every
    source's raw value per field so callers can re-pick winners later.
    """
    source: MetadataSource
    source_id: str
    values: Dict[str, Any] = field(default_factory=dict)
    field_sources: Dict[str, MetadataSource] = field(default_factory=dict)
    contributing_sources: Tuple[MetadataSource, ...] = ()
    all_field_values: Optional[Dict[str, Dict[MetadataSource, Any]]] = None
    field_source_overrides: Optional[Dict[str, MetadataSource]] = None

    def get(self, name: str, default=None):
        return self.values.get(name, default)

    def with_changes(self, **changes) -> "MergedMetadata":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        values = {}
        for key, value in self.values.items():
            if isinstance(value, tuple):
                value = [v.to_dict() if isinstance(v, Credit) else v for v in value]
            values[key] = value

        data = {
            "source": self.source.value,
            "source_id": self.source_id,
            "values": values,
            "field_sources": {k: v.value for k, v in self.field_sources.items()},
            "contributing_sources": [s.value for s in self.contributing_sources],
        }
        if self.all_field_values is not None:
            data["all_field_values"] = {
                name: {
                    src.value: ([v.to_dict() if isinstance(v, Credit) else v for v in raw]
                                if isinstance(raw, tuple) else raw)
                    for src, raw in per_source.items()
                }
                for name, per_source in self.all_field_values.items()
            }
        if self.field_source_overrides is not None:
            data["field_source_overrides"] = {k: v.value for k, v in self.field_source_overrides.items()}
        return data


@dataclass
class ProviderCredentials:
    """Credentials for a metadata provider."""
    api_key: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        return {k: v for k, v in {
            "api_key": self.api_key,
            "username": self.username,
            "password": self.password,
        }.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderCredentials":
        """Create from dictionary."""
        return cls(
            api_key=data.get("api_key"),
            username=data.get("username"),
            password=data.get("password"),
        )


class BaseProvider(ABC):
    """
    Abstract base class for all metadata providers.

    Adapters own their HTTP/scraping details; the rest of the application only
    sees the SeriesMetadata / IssueMetadata records they return.
    """

    # Class attributes to be overridden by subclasses
    source: MetadataSource
    display_name: str
    requires_auth: bool = True
    auth_fields: List[str] = []  # e.g., ["api_key"] or ["username", "password"]

    def __init__(self, credentials: Optional[ProviderCredentials] = None):
        """
        Initialize the provider with optional credentials.

        Args:
            credentials: Provider credentials for authentication
        """
        self.credentials = credentials

    @abstractmethod
    def search_series(self, query: str, year: Optional[int] = None,
                      publisher: Optional[str] = None, limit: int = 10) -> List[SeriesMetadata]:
        """
        Search for series matching the query.

        Args:
            query: Search string (series name)
            year: Optional start year to narrow results
            publisher: Optional publisher to narrow results
            limit: Maximum number of results

        Returns:
            List of matching SeriesMetadata records
        """
        pass

    @abstractmethod
    def get_series(self, source_id: str) -> Optional[SeriesMetadata]:
        """
        Get series details by provider-specific ID.

        Returns:
            SeriesMetadata, or None if not found
        """
        pass

    @abstractmethod
    def get_issues(self, series_id: str) -> List[IssueMetadata]:
        """
        Get all issues for a series.

        Args:
            series_id: The provider's series ID

        Returns:
            List of IssueMetadata records for the series
        """
        pass

    @abstractmethod
    def get_issue(self, source_id: str) -> Optional[IssueMetadata]:
        """
        Get issue details by provider-specific ID.

        Returns:
            IssueMetadata, or None if not found
        """
        pass

    def test_connection(self) -> bool:
        """Verify credentials and connectivity. Adapters override when they can check."""
        return True

    def get_provider_info(self) -> Dict[str, Any]:
        """Get provider metadata for API responses."""
        return {
            "source": self.source.value,
            "name": self.display_name,
            "requires_auth": self.requires_auth,
            "auth_fields": self.auth_fields,
        }
