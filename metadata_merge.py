"""
Metadata merge engine.

Folds series/issue records fetched from several sources into one record
with per-field provenance. For every field the first non-empty value in
source priority order wins; arrays are taken whole from one source, never
concatenated.
"""
from typing import Dict, Iterable, List, Mapping, Optional

from app_logging import app_logger
from models.providers.base import (
    MetadataSource,
    MergedMetadata,
    SERIES_SCALAR_FIELDS,
    SERIES_ARRAY_FIELDS,
    ISSUE_SCALAR_FIELDS,
    ISSUE_ARRAY_FIELDS,
)

# Issue series identity comes from the primary source only
ISSUE_IDENTITY_FIELDS = ("series_id", "series_name")


def is_empty(value) -> bool:
    """None, blank strings and empty collections carry no data."""
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, tuple, dict, set)) and len(value) == 0:
        return True
    return False


def _resolve_priority(priority_order=None, settings=None) -> List[MetadataSource]:
    if priority_order is None:
        if settings is None:
            from config import get_metadata_settings
            settings = get_metadata_settings()
        priority_order = settings.priority_order
    return [MetadataSource.parse(s) for s in priority_order]


def _normalize_records(records: Mapping) -> Dict[MetadataSource, object]:
    return {MetadataSource.parse(source): record for source, record in records.items()}


def _sources_with_data(records: Dict[MetadataSource, object],
                       priority: Iterable[MetadataSource]) -> List[MetadataSource]:
    """Sources holding a record, priority order first then mapping order."""
    ordered = []
    for source in priority:
        if records.get(source) is not None and source not in ordered:
            ordered.append(source)
    for source, record in records.items():
        if record is not None and source not in ordered:
            ordered.append(source)
    return ordered


def _record_values(record, names) -> Dict[str, object]:
    return {name: getattr(record, name) for name in names if not is_empty(getattr(record, name, None))}


def _merge(records: Mapping, field_names, identity_fields=(), priority_order=None,
           settings=None) -> Optional[MergedMetadata]:
    records = _normalize_records(records)
    ordered = _sources_with_data(records, _resolve_priority(priority_order, settings))
    if not ordered:
        return None

    primary = ordered[0]
    primary_record = records[primary]

    # Primary record is the base; winners overwrite it field by field
    values = _record_values(primary_record, tuple(field_names) + tuple(identity_fields))
    field_sources = {}

    for name in identity_fields:
        if not is_empty(getattr(primary_record, name, None)):
            field_sources[name] = primary

    for name in field_names:
        for source in ordered:
            value = getattr(records[source], name, None)
            if not is_empty(value):
                values[name] = value
                field_sources[name] = source
                break

    if len(ordered) == 1:
        contributing = (primary,)
    else:
        contributing = tuple(s for s in ordered if s in field_sources.values())

    return MergedMetadata(
        source=primary,
        source_id=primary_record.source_id,
        values=values,
        field_sources=field_sources,
        contributing_sources=contributing,
    )


def merge_series(records: Mapping, priority_order=None, settings=None) -> Optional[MergedMetadata]:
    """
    Merge series records keyed by source.

    Args:
        records: Mapping of source -> SeriesMetadata or None
        priority_order: Sources in priority order (highest first). Sources
            missing from it are visited afterwards in mapping order.
        settings: MetadataSettings used when priority_order is omitted

    Returns:
        MergedMetadata, or None if no source had a record
    """
    return _merge(records, SERIES_SCALAR_FIELDS + SERIES_ARRAY_FIELDS,
                  priority_order=priority_order, settings=settings)


def merge_issue(records: Mapping, priority_order=None, settings=None) -> Optional[MergedMetadata]:
    """
    Merge issue records keyed by source.

    series_id and series_name are taken from the primary source only so an
    issue never ends up pointing at a mix of two sources' series.
    """
    merge_fields = tuple(f for f in ISSUE_SCALAR_FIELDS + ISSUE_ARRAY_FIELDS
                         if f not in ISSUE_IDENTITY_FIELDS)
    return _merge(records, merge_fields, identity_fields=ISSUE_IDENTITY_FIELDS,
                  priority_order=priority_order, settings=settings)


def collect_all_field_values(records: Mapping, field_names) -> Dict[str, Dict[MetadataSource, object]]:
    """field -> source -> raw value (None when the source lacks it) for every source with a record."""
    records = _normalize_records(records)
    present = [(source, record) for source, record in records.items() if record is not None]
    return {
        name: {source: getattr(record, name, None) for source, record in present}
        for name in field_names
    }


def apply_field_overrides(merged: MergedMetadata, all_field_values, overrides) -> MergedMetadata:
    """
    Re-pick specific fields from a chosen source.

    Overrides pointing at a missing or empty value are ignored and the
    original winner kept. Returns a new MergedMetadata; the input is left
    untouched.
    """
    if not overrides:
        return merged

    values = dict(merged.values)
    field_sources = dict(merged.field_sources)
    pinned = dict(merged.field_source_overrides or {})

    for name, preferred in overrides.items():
        preferred = MetadataSource.parse(preferred)
        pinned[name] = preferred
        per_source = (all_field_values or {}).get(name) or {}
        value = per_source.get(preferred, per_source.get(preferred.value))
        if is_empty(value):
            app_logger.debug(f"Ignoring override {name} -> {preferred.value}: no value from that source")
            continue
        values[name] = value
        field_sources[name] = preferred

    contributing = list(merged.contributing_sources)
    for source in field_sources.values():
        if source not in contributing:
            contributing.append(source)

    return merged.with_changes(
        values=values,
        field_sources=field_sources,
        contributing_sources=tuple(contributing),
        field_source_overrides=pinned,
    )


def _merge_with_all_values(merge_fn, field_names, records, priority_order, field_overrides, settings):
    merged = merge_fn(records, priority_order=priority_order, settings=settings)
    if merged is None:
        return None

    all_values = collect_all_field_values(records, field_names)
    merged = merged.with_changes(all_field_values=all_values)
    if field_overrides:
        merged = apply_field_overrides(merged, all_values, field_overrides)
    return merged


def merge_series_with_all_values(records: Mapping, priority_order=None, field_overrides=None,
                                 settings=None) -> Optional[MergedMetadata]:
    """merge_series plus every source's value per field, then field_overrides on top."""
    return _merge_with_all_values(merge_series, SERIES_SCALAR_FIELDS + SERIES_ARRAY_FIELDS,
                                  records, priority_order, field_overrides, settings)


def merge_issue_with_all_values(records: Mapping, priority_order=None, field_overrides=None,
                                settings=None) -> Optional[MergedMetadata]:
    """merge_issue plus every source's value per field, then field_overrides on top."""
    return _merge_with_all_values(merge_issue, ISSUE_SCALAR_FIELDS + ISSUE_ARRAY_FIELDS,
                                  records, priority_order, field_overrides, settings)
