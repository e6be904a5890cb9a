"""
Series auto-linking.

Links a file to a series using the series name in its cached metadata.
With trust_metadata the name is taken literally: the file is linked to a
series with exactly that name (case-insensitive) or a new series is
created, never fuzzy-matched to a similar one.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

import database
from app_logging import app_logger
from cross_match import rank_candidates, EXACT_NAME_SCORE, CONTAINS_NAME_SCORE

# Default for expected_series_id: link regardless of the current link
ANY_SERIES = object()
LINK_CONFLICT_ERROR = "File was relinked by another operation"


@dataclass
class LinkResult:
    success: bool
    series_id: Optional[int] = None
    match_type: Optional[str] = None  # exact | fuzzy | created
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    suggestions: List[dict] = field(default_factory=list)


def _series_fields_from_metadata(file, metadata):
    return {
        "publisher": metadata.get("publisher"),
        "start_year": metadata.get("year"),
        "genres": metadata.get("genre"),
        "age_rating": metadata.get("age_rating"),
        "language_iso": metadata.get("language_iso"),
        "primary_folder": os.path.dirname(file["path"]) or None,
    }


def find_or_create_series(name, file, metadata):
    """
    Return (series, created) for an exact name, creating the series if needed.

    A concurrent creator losing the unique-index race re-reads the winner's row.
    """
    publisher = metadata.get("publisher")
    existing = database.find_series_by_identity(name, publisher)
    if existing:
        return existing, False

    series_id = database.create_series(name, **_series_fields_from_metadata(file, metadata))
    if series_id is None:
        # Someone else created it between our lookup and insert
        existing = database.find_series_by_identity(name, publisher)
        if existing:
            return existing, False
        raise RuntimeError(f"Could not create series {name}")

    return database.get_series(series_id), True


def _similar_series_warnings(name, publisher, exclude_id):
    target = {"name": name, "publisher": publisher}
    candidates = [s for s in database.get_all_series_names() if s["id"] != exclude_id]
    ranked = [r for r in rank_candidates(target, candidates) if r.score >= CONTAINS_NAME_SCORE]

    warnings = []
    if ranked:
        warnings.append(f'Similar series "{ranked[0].candidate["name"]}" exists. '
                        f'Created new series "{name}" instead.')
        for alt in ranked[1:3]:
            warnings.append(f'Also similar: "{alt.candidate["name"]}"')
    return warnings


def _link(file_id, series_id, expected_series_id):
    """Write the link; with an expected_series_id only if the file still points there."""
    if expected_series_id is ANY_SERIES:
        database.link_file_to_series(file_id, series_id)
        return True
    return database.compare_and_set_file_series(file_id, series_id, expected_series_id)


def _conflict():
    return LinkResult(success=False, error=LINK_CONFLICT_ERROR)


def auto_link_file_to_series(file_id, trust_metadata=False, expected_series_id=ANY_SERIES) -> LinkResult:
    """
    Link a file to the series named in its cached metadata.

    Args:
        file_id: ID of the comic_files row
        trust_metadata: Use the metadata name literally (exact match or create)
        expected_series_id: When given, the link is only written if the file
            is still linked to this series (None for unlinked). Otherwise the
            result carries LINK_CONFLICT_ERROR and nothing is written.

    Returns:
        LinkResult. A fuzzy near-miss without trust_metadata returns
        success=False with suggestions instead of guessing. The link write is
        the last database change, so a failed result means the file's link
        was left alone.
    """
    file = database.get_comic_file(file_id)
    if not file:
        return LinkResult(success=False, error="File not found")

    metadata = file.get("metadata") or {}
    series_name = (metadata.get("series") or "").strip()
    if not series_name:
        return LinkResult(success=False, error="No series name found")

    if trust_metadata:
        series, created = find_or_create_series(series_name, file, metadata)
        warnings = []
        if created:
            warnings = _similar_series_warnings(series_name, metadata.get("publisher"), series["id"])
        if not _link(file_id, series["id"], expected_series_id):
            return _conflict()
        if created:
            app_logger.info(f"Created series '{series_name}' for {file['filename']}")
        return LinkResult(success=True, series_id=series["id"],
                          match_type="created" if created else "exact", warnings=warnings)

    exact = database.find_series_by_identity(series_name, metadata.get("publisher"))
    if exact:
        if not _link(file_id, exact["id"], expected_series_id):
            return _conflict()
        return LinkResult(success=True, series_id=exact["id"], match_type="exact")

    target = {"name": series_name, "publisher": metadata.get("publisher"), "start_year": metadata.get("year")}
    ranked = rank_candidates(target, database.get_all_series_names())

    if ranked and ranked[0].score >= EXACT_NAME_SCORE:
        best = ranked[0].candidate
        if not _link(file_id, best["id"], expected_series_id):
            return _conflict()
        app_logger.debug(f"Fuzzy-linked {file['filename']} to '{best['name']}'")
        return LinkResult(success=True, series_id=best["id"], match_type="fuzzy")

    if ranked and ranked[0].score >= CONTAINS_NAME_SCORE:
        return LinkResult(
            success=False,
            error="Needs confirmation",
            suggestions=[{"series_id": r.candidate["id"], "name": r.candidate["name"], "score": r.score}
                         for r in ranked[:5]],
        )

    series, created = find_or_create_series(series_name, file, metadata)
    if not _link(file_id, series["id"], expected_series_id):
        return _conflict()
    return LinkResult(success=True, series_id=series["id"], match_type="created" if created else "exact")
