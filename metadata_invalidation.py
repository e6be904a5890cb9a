"""
Metadata invalidation.

Whenever a file's or a series' metadata changes, the derived state has to
follow: the cached metadata row, the file's series link, series progress
counts, series.json sidecars, dirty-stats flags, the tag autocomplete index
and connected clients. MetadataInvalidator runs that cascade.

Single-item calls never raise; problems come back in the result's errors
and warnings. Batches isolate failures per item.

Per-file flow:
    refresh cache -> reload -> check linkage -> (relink | unchanged | rollback)
    -> mark stats dirty -> refresh tag index -> notify
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from app_logging import app_logger
from series_matcher import LINK_CONFLICT_ERROR

# Series column -> file_metadata column, keyed by every accepted field name
INHERITABLE_FIELDS = {
    "publisher": ("publisher", "publisher"),
    "genres": ("genres", "genre"),
    "age_rating": ("age_rating", "age_rating"),
    "ageRating": ("age_rating", "age_rating"),
    "language_iso": ("language_iso", "language_iso"),
    "languageISO": ("language_iso", "language_iso"),
}


@dataclass
class InvalidationResult:
    success: bool = True
    cache_refreshed: bool = False
    series_linkage_updated: bool = False
    series_json_synced: bool = False
    related_files_updated: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def fail(self, message):
        self.success = False
        self.errors.append(message)
        return self

    def to_dict(self):
        return asdict(self)


@dataclass
class BatchInvalidationResult:
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


@dataclass
class BulkApplyResult:
    files_processed: int = 0
    series_processed: int = 0
    file_ids: list = field(default_factory=list)
    series_ids: list = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


@dataclass
class LinkageOutcome:
    """What the linkage step did for one file."""
    changed: bool = False
    old_series_id: Optional[int] = None
    new_series_id: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def touched_series(self):
        if not self.changed:
            return []
        return [sid for sid in (self.old_series_id, self.new_series_id) if sid is not None]


def _same(a, b):
    return (a or "").strip().lower() == (b or "").strip().lower()


def _ordered_ids(ids):
    return sorted(ids, key=lambda x: (str(type(x)), x))


class MetadataInvalidator:
    """
    Runs invalidation cascades against injected collaborators.

    Every collaborator defaults to the module that implements it:
        store    database
        cache    metadata_cache
        linker   series_matcher
        stats    stats_dirty
        tags     tag_autocomplete
        events   events
        sidecar  series_json
        locks    app_state.entity_locks
    """

    def __init__(self, store=None, cache=None, linker=None, stats=None, tags=None,
                 events=None, sidecar=None, locks=None, max_workers=None):
        if store is None:
            import database as store
        if cache is None:
            import metadata_cache as cache
        if linker is None:
            import series_matcher as linker
        if stats is None:
            import stats_dirty as stats
        if tags is None:
            import tag_autocomplete as tags
        if events is None:
            import events
        if sidecar is None:
            import series_json as sidecar
        if locks is None:
            from app_state import entity_locks as locks
        if max_workers is None:
            from config import get_invalidation_workers
            max_workers = get_invalidation_workers()

        self.store = store
        self.cache = cache
        self.linker = linker
        self.stats = stats
        self.tags = tags
        self.events = events
        self.sidecar = sidecar
        self.locks = locks
        self.max_workers = max(1, int(max_workers))

    # ------------------------------------------------------------------
    # Linkage
    # ------------------------------------------------------------------

    def _linkage_matches(self, metadata, series):
        if not _same(metadata.get("series"), series.get("name")):
            return False
        meta_pub = (metadata.get("publisher") or "").strip()
        series_pub = (series.get("publisher") or "").strip()
        if meta_pub and series_pub:
            return _same(meta_pub, series_pub)
        return True

    def update_linkage(self, file) -> LinkageOutcome:
        """
        Bring a file's series link in line with its cached metadata.

        The auto-linker, trusting the metadata name, writes the new link only
        if the file still points at the series read here, so a concurrent
        writer's link is never overwritten. If the linker fails after writing,
        the previous series is restored, again with a compare-and-set.

        Raises:
            sqlite3.Error from the store
        """
        file_id = file["id"]
        old_series_id = file.get("series_id")
        outcome = LinkageOutcome(old_series_id=old_series_id, new_series_id=old_series_id)

        metadata = file.get("metadata") or {}
        if not (metadata.get("series") or "").strip():
            return outcome

        series = file.get("series")
        if old_series_id is not None and series and self._linkage_matches(metadata, series):
            return outcome

        if old_series_id is not None:
            app_logger.info(
                f"File {file_id} metadata series '{metadata.get('series')}' no longer matches "
                f"'{series.get('name') if series else old_series_id}', relinking"
            )

        try:
            link = self.linker.auto_link_file_to_series(file_id, trust_metadata=True,
                                                        expected_series_id=old_series_id)
            link_error = None if (link.success and link.series_id is not None) else (link.error or "Unknown error")
            raised = False
        except Exception as e:
            link = None
            link_error = str(e)
            raised = True

        if link_error is None:
            outcome.changed = link.series_id != old_series_id
            outcome.new_series_id = link.series_id
            outcome.warnings.extend(link.warnings or [])
            app_logger.info(
                f"✓ Linked file {file_id} to series {link.series_id} ({link.match_type})"
            )
            return outcome

        if link_error == LINK_CONFLICT_ERROR:
            outcome.warnings.append(
                f"File {file_id} was relinked by another operation; skipped relink"
            )
            return outcome

        app_logger.warning(f"Failed to auto-link file {file_id}: {link_error}")
        outcome.warnings.append(f"Could not relink file {file_id}: {link_error}")
        if raised:
            self._restore_link(file_id, old_series_id, outcome)
        return outcome

    def _restore_link(self, file_id, old_series_id, outcome):
        current = self.store.get_file_series_id(file_id)
        if current == old_series_id:
            return
        if self.store.compare_and_set_file_series(file_id, old_series_id, current):
            app_logger.info(f"Restored file {file_id} to series {old_series_id}")
        else:
            outcome.warnings.append(
                f"File {file_id} was linked by another operation during rollback; kept that link"
            )

    def _refresh_progress(self, series_ids, warnings):
        for series_id in series_ids:
            try:
                self.store.update_series_progress(series_id)
            except Exception as e:
                warnings.append(f"Failed to update progress for series {series_id}: {e}")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _mark_and_index(self, file_id, warnings):
        try:
            self.stats.mark_dirty_for_metadata_change(file_id)
        except Exception as e:
            app_logger.warning(f"Failed to mark stats dirty for file {file_id}: {e}")
            warnings.append(f"Failed to mark stats dirty: {e}")
        try:
            self.tags.refresh_tags_from_file(file_id)
        except Exception as e:
            app_logger.warning(f"Failed to refresh tag autocomplete for file {file_id}: {e}")
            warnings.append(f"Failed to refresh tag autocomplete: {e}")

    def _invalidate_one(self, file_id, comic_info=None, refresh_from_archive=True,
                        update_series_linkage=True):
        result = InvalidationResult()
        outcome = LinkageOutcome()

        with self.locks.hold(("file", file_id)):
            try:
                file = self.store.get_comic_file(file_id)
                if not file:
                    return result.fail("File not found"), outcome

                if comic_info is not None:
                    cache_result = self.cache.cache_file_metadata(file_id, comic_info)
                    result.cache_refreshed = cache_result.success
                    if not cache_result.success:
                        return result.fail(f"Failed to cache metadata: {cache_result.error}"), outcome
                elif refresh_from_archive:
                    result.cache_refreshed = bool(self.cache.refresh_metadata_cache(file_id))
                    if not result.cache_refreshed:
                        return result.fail("Failed to refresh metadata cache from archive"), outcome

                if update_series_linkage:
                    file = self.store.get_comic_file(file_id)
                    if file:
                        outcome = self.update_linkage(file)
                        result.warnings.extend(outcome.warnings)
                        if outcome.changed:
                            result.series_linkage_updated = True
                            self._refresh_progress(outcome.touched_series, result.warnings)

                self._mark_and_index(file_id, result.warnings)
                result.success = not result.errors

            except Exception as e:
                app_logger.error(f"Failed to invalidate metadata for file {file_id}: {e}")
                result.fail(str(e))

        return result, outcome

    def invalidate_file(self, file_id, comic_info=None, refresh_from_archive=True,
                        update_series_linkage=True) -> InvalidationResult:
        """
        Re-derive everything that depends on one file's metadata.

        Args:
            file_id: ID of the comic_files row
            comic_info: Already-known ComicInfo values; skips the archive read
            refresh_from_archive: Re-read ComicInfo.xml when comic_info is None
            update_series_linkage: Relink the file if its series name changed
        """
        app_logger.debug(f"Invalidating metadata for file {file_id}")
        result, outcome = self._invalidate_one(file_id, comic_info, refresh_from_archive,
                                               update_series_linkage)
        if result.success:
            self._notify(lambda: self.events.send_file_refresh([file_id]))
            self._notify(lambda: self.events.send_metadata_change(
                "file", {"file_ids": [file_id], "action": "updated"}))
            if outcome.touched_series:
                self._notify(lambda: self.events.send_series_refresh(outcome.touched_series))
        return result

    def batch_invalidate_files(self, file_ids, **options) -> BatchInvalidationResult:
        """
        invalidate_file for many files on a small worker pool.

        One failing file never stops the rest. Clients get one notification
        listing the files that succeeded, in input order.
        """
        file_ids = list(file_ids or [])
        batch = BatchInvalidationResult(total=len(file_ids))
        if not file_ids:
            return batch

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(file_ids))) as executor:
            futures = [executor.submit(self._invalidate_one, file_id, **options) for file_id in file_ids]

        successful_ids = []
        touched_series = set()
        for file_id, future in zip(file_ids, futures):
            try:
                result, outcome = future.result()
            except Exception as e:
                result, outcome = InvalidationResult().fail(str(e)), LinkageOutcome()

            if result.success:
                batch.successful += 1
                successful_ids.append(file_id)
                touched_series.update(outcome.touched_series)
            else:
                batch.failed += 1
                batch.errors.append({
                    "file_id": file_id,
                    "error": ", ".join(result.errors) or "Unknown error",
                })

        app_logger.info(
            f"Batch metadata invalidation complete: {batch.successful}/{batch.total} succeeded"
        )

        if successful_ids:
            self._notify(lambda: self.events.send_file_refresh(successful_ids))
            self._notify(lambda: self.events.send_metadata_change(
                "batch", {"file_ids": successful_ids, "action": "updated"}))
        if touched_series:
            self._notify(lambda: self.events.send_series_refresh(_ordered_ids(touched_series)))
        return batch

    # ------------------------------------------------------------------
    # Series
    # ------------------------------------------------------------------

    def invalidate_series(self, series_id, sync_to_series_json=True, sync_to_issue_files=False,
                          inheritable_fields=()) -> InvalidationResult:
        """
        Propagate a series change to its sidecar and, optionally, its issues.

        inheritable_fields names series values (publisher, genres, age_rating,
        language_iso) to copy into every linked file's cached metadata.
        """
        result = InvalidationResult()

        with self.locks.hold(("series", series_id)):
            try:
                series = self.store.get_series_with_files(series_id)
                if not series:
                    return result.fail("Series not found")

                if sync_to_series_json and series.get("primary_folder"):
                    try:
                        if self.sidecar.sync_series_to_series_json(series_id):
                            result.series_json_synced = True
                        else:
                            result.warnings.append("Failed to sync series.json")
                    except Exception as e:
                        app_logger.warning(f"Failed to sync series.json for series {series_id}: {e}")
                        result.warnings.append(f"Failed to sync series.json: {e}")

                file_ids = [f["id"] for f in series.get("files", [])]
                if sync_to_issue_files and inheritable_fields and file_ids:
                    updates = {}
                    for name in inheritable_fields:
                        if name not in INHERITABLE_FIELDS:
                            result.warnings.append(f"Field '{name}' cannot be inherited from a series")
                            continue
                        series_column, metadata_column = INHERITABLE_FIELDS[name]
                        updates[metadata_column] = series.get(series_column)

                    if updates:
                        result.related_files_updated = self.store.apply_series_inheritance(file_ids, updates)
                        app_logger.info(
                            f"Copied {', '.join(updates)} from series {series_id} "
                            f"to {result.related_files_updated} files"
                        )
                        for file_id in file_ids:
                            try:
                                self.stats.mark_dirty_for_metadata_change(file_id)
                            except Exception as e:
                                result.warnings.append(f"Failed to mark stats dirty for file {file_id}: {e}")
                        self._trigger_stats(result.warnings)

                result.success = not result.errors

            except Exception as e:
                app_logger.error(f"Failed to invalidate series {series_id}: {e}")
                result.fail(str(e))

        if result.success:
            self._notify(lambda: self.events.send_series_refresh([series_id]))
            self._notify(lambda: self.events.send_metadata_change(
                "series", {"series_ids": [series_id], "action": "updated"}))
        return result

    # ------------------------------------------------------------------
    # Bulk apply
    # ------------------------------------------------------------------

    def _bulk_file(self, file_id):
        errors, warnings = [], []
        refreshed = False
        outcome = LinkageOutcome()

        with self.locks.hold(("file", file_id)):
            try:
                refreshed = bool(self.cache.refresh_metadata_cache(file_id))
                if not refreshed:
                    errors.append(f"Failed to refresh cache for file {file_id}")
            except Exception as e:
                errors.append(f"Error refreshing file {file_id}: {e}")

            try:
                file = self.store.get_comic_file(file_id)
                if file:
                    outcome = self.update_linkage(file)
                    warnings.extend(outcome.warnings)
            except Exception as e:
                errors.append(f"Error updating series linkage for file {file_id}: {e}")

        return refreshed, outcome, errors, warnings

    def invalidate_after_bulk_apply(self, processed_files, affected_series_ids=()) -> BulkApplyResult:
        """
        Follow-up after a bulk metadata apply.

        Args:
            processed_files: Iterable of {"file_id": ..., "success": bool}
            affected_series_ids: Series the caller already knows changed. The
                caller's collection is copied, never modified.
        """
        result = BulkApplyResult()
        processed_files = list(processed_files or [])
        affected = set(affected_series_ids or ())
        if not processed_files and not affected:
            return result

        successful_ids = [f["file_id"] for f in processed_files if f.get("success")]

        if successful_ids:
            app_logger.info(f"Refreshing metadata for {len(successful_ids)} bulk-applied files")
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(successful_ids))) as executor:
                futures = [executor.submit(self._bulk_file, file_id) for file_id in successful_ids]

            for file_id, future in zip(successful_ids, futures):
                try:
                    refreshed, outcome, errors, warnings = future.result()
                except Exception as e:
                    app_logger.error(f"Bulk refresh failed for file {file_id}: {e}")
                    refreshed, outcome, errors, warnings = False, LinkageOutcome(), [f"Error refreshing file {file_id}: {e}"], []
                if refreshed:
                    result.files_processed += 1
                result.errors.extend(errors)
                result.warnings.extend(warnings)
                affected.update(outcome.touched_series)

        series_ids = _ordered_ids(affected)
        for series_id in series_ids:
            with self.locks.hold(("series", series_id)):
                try:
                    self.store.update_series_progress(series_id)
                    result.series_processed += 1
                except Exception as e:
                    result.errors.append(f"Error updating series {series_id}: {e}")

                try:
                    series = self.store.get_series(series_id)
                    if series and series.get("primary_folder"):
                        if not self.sidecar.sync_series_to_series_json(series_id):
                            result.warnings.append(f"Error syncing series.json for {series_id}")
                except Exception as e:
                    result.warnings.append(f"Error syncing series.json for {series_id}: {e}")

        if successful_ids:
            for file_id in successful_ids:
                try:
                    self.stats.mark_dirty_for_metadata_change(file_id)
                except Exception as e:
                    result.warnings.append(f"Failed to mark stats dirty for file {file_id}: {e}")
            self._trigger_stats(result.warnings)

        result.file_ids = successful_ids
        result.series_ids = series_ids

        app_logger.info(
            f"Post-apply invalidation complete: {result.files_processed} files, "
            f"{result.series_processed} series, {len(result.errors)} errors"
        )

        if successful_ids:
            self._notify(lambda: self.events.send_file_refresh(successful_ids))
            self._notify(lambda: self.events.send_metadata_change(
                "batch", {"file_ids": successful_ids, "action": "updated"}))
        if series_ids:
            self._notify(lambda: self.events.send_series_refresh(series_ids))
            self._notify(lambda: self.events.send_metadata_change(
                "series", {"series_ids": series_ids, "action": "updated"}))
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _trigger_stats(self, warnings):
        try:
            self.stats.trigger_dirty_stats_processing()
        except Exception as e:
            app_logger.error(f"Failed to trigger stats processing: {e}")
            warnings.append(f"Failed to trigger stats processing: {e}")

    def _notify(self, send):
        try:
            send()
        except Exception as e:
            app_logger.warning(f"Failed to notify clients: {e}")


_default_invalidator = None
_default_lock = threading.Lock()


def get_invalidator():
    """Shared MetadataInvalidator wired to the default collaborators."""
    global _default_invalidator
    with _default_lock:
        if _default_invalidator is None:
            _default_invalidator = MetadataInvalidator()
        return _default_invalidator


def invalidate_file_metadata(file_id, **options):
    return get_invalidator().invalidate_file(file_id, **options)


def batch_invalidate_file_metadata(file_ids, **options):
    return get_invalidator().batch_invalidate_files(file_ids, **options)


def invalidate_series_data(series_id, **options):
    return get_invalidator().invalidate_series(series_id, **options)


def invalidate_after_bulk_apply(processed_files, affected_series_ids=()):
    return get_invalidator().invalidate_after_bulk_apply(processed_files, affected_series_ids)
