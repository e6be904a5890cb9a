"""Tests for metadata_invalidation.py -- invalidation cascades against mocked collaborators."""
import sqlite3
from contextlib import contextmanager
from unittest.mock import call

import pytest

from keyed_lock import KeyedLock
from metadata_cache import CacheResult
from series_matcher import LinkResult, LINK_CONFLICT_ERROR
from tests.mocked.conftest import make_file


# ===== invalidate_file =====

class TestInvalidateFile:

    def test_missing_file(self, invalidator, store, cache, events):
        store.get_comic_file.return_value = None

        result = invalidator.invalidate_file(99)

        assert result.success is False
        assert result.errors == ["File not found"]
        cache.refresh_metadata_cache.assert_not_called()
        events.send_file_refresh.assert_not_called()

    def test_refresh_failure_stops_cascade(self, invalidator, store, cache, linker):
        store.get_comic_file.return_value = make_file()
        cache.refresh_metadata_cache.return_value = False

        result = invalidator.invalidate_file(1)

        assert result.success is False
        assert result.cache_refreshed is False
        assert "Failed to refresh metadata cache from archive" in result.errors
        linker.auto_link_file_to_series.assert_not_called()
        invalidator.stats.mark_dirty_for_metadata_change.assert_not_called()

    def test_known_comic_info_skips_archive(self, invalidator, store, cache):
        store.get_comic_file.return_value = make_file()

        result = invalidator.invalidate_file(1, comic_info={"Series": "Batman"})

        assert result.success is True
        assert result.cache_refreshed is True
        cache.cache_file_metadata.assert_called_once_with(1, {"Series": "Batman"})
        cache.refresh_metadata_cache.assert_not_called()

    def test_cache_write_failure_reported(self, invalidator, store, cache):
        store.get_comic_file.return_value = make_file()
        cache.cache_file_metadata.return_value = CacheResult(success=False, error="disk full")

        result = invalidator.invalidate_file(1, comic_info={"Series": "Batman"})

        assert result.success is False
        assert result.errors == ["Failed to cache metadata: disk full"]

    def test_no_refresh_requested(self, invalidator, store, cache):
        store.get_comic_file.return_value = make_file()

        result = invalidator.invalidate_file(1, refresh_from_archive=False)

        assert result.success is True
        assert result.cache_refreshed is False
        cache.refresh_metadata_cache.assert_not_called()

    def test_matching_linkage_left_alone(self, invalidator, store, linker, events):
        store.get_comic_file.return_value = make_file(metadata_series="batman ")

        result = invalidator.invalidate_file(1)

        assert result.success is True
        assert result.series_linkage_updated is False
        store.compare_and_set_file_series.assert_not_called()
        linker.auto_link_file_to_series.assert_not_called()
        events.send_file_refresh.assert_called_once_with([1])
        events.send_metadata_change.assert_called_once_with(
            "file", {"file_ids": [1], "action": "updated"})
        events.send_series_refresh.assert_not_called()

    def test_changed_series_name_relinks(self, invalidator, store, linker, events):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")

        result = invalidator.invalidate_file(1)

        assert result.success is True
        assert result.series_linkage_updated is True
        store.compare_and_set_file_series.assert_not_called()
        linker.auto_link_file_to_series.assert_called_once_with(1, trust_metadata=True,
                                                                expected_series_id=10)
        store.update_series_progress.assert_has_calls([call(10), call(20)])
        events.send_series_refresh.assert_called_once_with([10, 20])

    def test_publisher_disagreement_relinks(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(publisher="Marvel", series_publisher="DC Comics")

        invalidator.invalidate_file(1)

        linker.auto_link_file_to_series.assert_called_once()

    def test_missing_publisher_on_one_side_is_not_a_mismatch(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(publisher=None, series_publisher="DC Comics")

        invalidator.invalidate_file(1)

        linker.auto_link_file_to_series.assert_not_called()

    def test_unlinked_file_gets_linked(self, invalidator, store, linker, events):
        store.get_comic_file.return_value = make_file(series_id=None, metadata_series="Saga")

        result = invalidator.invalidate_file(1)

        linker.auto_link_file_to_series.assert_called_once_with(1, trust_metadata=True,
                                                                expected_series_id=None)
        assert result.series_linkage_updated is True
        events.send_series_refresh.assert_called_once_with([20])

    def test_relink_to_same_series_is_not_a_change(self, invalidator, store, linker, events):
        store.get_comic_file.return_value = make_file(metadata_series="Batman",
                                                      publisher="DC", series_publisher="Marvel")
        linker.auto_link_file_to_series.return_value = LinkResult(success=True, series_id=10,
                                                                  match_type="exact")

        result = invalidator.invalidate_file(1)

        assert result.series_linkage_updated is False
        events.send_series_refresh.assert_not_called()

    def test_concurrent_relink_skips(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")
        linker.auto_link_file_to_series.return_value = LinkResult(success=False, error=LINK_CONFLICT_ERROR)

        result = invalidator.invalidate_file(1)

        assert result.success is True
        assert result.series_linkage_updated is False
        store.compare_and_set_file_series.assert_not_called()
        assert any("relinked by another operation" in w for w in result.warnings)

    def test_failed_link_leaves_link_alone(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")
        linker.auto_link_file_to_series.return_value = LinkResult(success=False, error="Needs confirmation")

        result = invalidator.invalidate_file(1)

        assert result.success is True
        assert result.series_linkage_updated is False
        store.compare_and_set_file_series.assert_not_called()
        store.link_file_to_series.assert_not_called()
        assert any("Needs confirmation" in w for w in result.warnings)

    def test_linker_exception_after_write_rolls_back(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")
        store.get_file_series_id.return_value = 20
        linker.auto_link_file_to_series.side_effect = sqlite3.OperationalError("locked")

        result = invalidator.invalidate_file(1)

        assert result.success is True
        assert result.series_linkage_updated is False
        store.compare_and_set_file_series.assert_called_once_with(1, 10, 20)
        assert any("locked" in w for w in result.warnings)

    def test_linker_exception_before_write_needs_no_rollback(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")
        store.get_file_series_id.return_value = 10
        linker.auto_link_file_to_series.side_effect = sqlite3.OperationalError("locked")

        invalidator.invalidate_file(1)

        store.compare_and_set_file_series.assert_not_called()

    def test_rollback_never_overwrites_concurrent_link(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")
        store.get_file_series_id.return_value = 20
        store.compare_and_set_file_series.return_value = False
        linker.auto_link_file_to_series.side_effect = RuntimeError("boom")

        result = invalidator.invalidate_file(1)

        assert any("during rollback" in w for w in result.warnings)
        store.link_file_to_series.assert_not_called()

    def test_skip_linkage(self, invalidator, store, linker):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")

        invalidator.invalidate_file(1, update_series_linkage=False)

        linker.auto_link_file_to_series.assert_not_called()

    def test_stats_and_tag_failures_are_warnings(self, invalidator, store):
        store.get_comic_file.return_value = make_file()
        invalidator.stats.mark_dirty_for_metadata_change.side_effect = sqlite3.OperationalError("locked")
        invalidator.tags.refresh_tags_from_file.side_effect = sqlite3.OperationalError("locked")

        result = invalidator.invalidate_file(1)

        assert result.success is True
        assert len(result.warnings) == 2

    def test_store_error_becomes_result_error(self, invalidator, store, events):
        store.get_comic_file.side_effect = sqlite3.OperationalError("database is locked")

        result = invalidator.invalidate_file(1)

        assert result.success is False
        assert result.errors == ["database is locked"]
        events.send_file_refresh.assert_not_called()

    def test_notification_failure_does_not_fail_result(self, invalidator, store, events):
        store.get_comic_file.return_value = make_file()
        events.send_file_refresh.side_effect = RuntimeError("broker down")

        result = invalidator.invalidate_file(1)

        assert result.success is True
        events.send_metadata_change.assert_called_once()

    def test_file_lock_released(self, invalidator, store):
        store.get_comic_file.return_value = make_file()
        invalidator.invalidate_file(1)
        assert len(invalidator.locks) == 0


# ===== batch_invalidate_files =====

class TestBatchInvalidate:

    def test_empty(self, invalidator, events):
        result = invalidator.batch_invalidate_files([])
        assert result.total == 0
        events.send_file_refresh.assert_not_called()

    def test_failures_isolated_and_one_notification(self, invalidator, store, events):
        store.get_comic_file.side_effect = lambda fid: None if fid == 2 else make_file(file_id=fid)

        result = invalidator.batch_invalidate_files([1, 2, 3])

        assert result.total == 3
        assert result.successful == 2
        assert result.failed == 1
        assert result.errors == [{"file_id": 2, "error": "File not found"}]
        events.send_file_refresh.assert_called_once_with([1, 3])
        events.send_metadata_change.assert_called_once_with(
            "batch", {"file_ids": [1, 3], "action": "updated"})

    def test_collaborator_exception_isolated(self, invalidator, store, cache, events):
        store.get_comic_file.side_effect = lambda fid: make_file(file_id=fid)

        def refresh(file_id):
            if file_id == 2:
                raise OSError("disk gone")
            return True
        cache.refresh_metadata_cache.side_effect = refresh

        result = invalidator.batch_invalidate_files([1, 2])

        assert (result.total, result.successful, result.failed) == (2, 1, 1)
        assert result.errors == [{"file_id": 2, "error": "disk gone"}]
        assert call(1) in cache.refresh_metadata_cache.call_args_list
        events.send_file_refresh.assert_called_once_with([1])
        events.send_metadata_change.assert_called_once_with(
            "batch", {"file_ids": [1], "action": "updated"})

    def test_worker_exception_isolated(self, invalidator, store, cache, events):
        store.get_comic_file.side_effect = lambda fid: make_file(file_id=fid)

        class BrokenForFileTwo(KeyedLock):
            @contextmanager
            def hold(self, key):
                if key == ("file", 2):
                    raise RuntimeError("lock table corrupted")
                with super().hold(key):
                    yield
        invalidator.locks = BrokenForFileTwo()

        result = invalidator.batch_invalidate_files([1, 2])

        assert (result.total, result.successful, result.failed) == (2, 1, 1)
        assert result.errors == [{"file_id": 2, "error": "lock table corrupted"}]
        cache.refresh_metadata_cache.assert_called_once_with(1)
        events.send_file_refresh.assert_called_once_with([1])

    def test_touched_series_sent_once_sorted(self, invalidator, store, linker, events):
        store.get_comic_file.side_effect = lambda fid: make_file(file_id=fid, series_id=30,
                                                                 metadata_series="Nightwing")

        invalidator.batch_invalidate_files([1, 2], refresh_from_archive=False)

        events.send_series_refresh.assert_called_once_with([20, 30])


# ===== invalidate_series =====

class TestInvalidateSeries:

    @pytest.fixture
    def series_row(self):
        return {
            "id": 10, "name": "Batman", "publisher": "DC Comics", "genres": "Superhero",
            "age_rating": "Teen", "language_iso": "en", "primary_folder": "/data/DC/Batman",
            "files": [{"id": 1, "path": "/a.cbz"}, {"id": 2, "path": "/b.cbz"}],
        }

    def test_missing_series(self, invalidator, store, events):
        store.get_series_with_files.return_value = None
        result = invalidator.invalidate_series(10)
        assert result.success is False
        assert result.errors == ["Series not found"]
        events.send_series_refresh.assert_not_called()

    def test_syncs_series_json(self, invalidator, store, events, series_row):
        store.get_series_with_files.return_value = series_row
        invalidator.sidecar.sync_series_to_series_json.return_value = True

        result = invalidator.invalidate_series(10)

        assert result.success is True
        assert result.series_json_synced is True
        store.apply_series_inheritance.assert_not_called()
        events.send_series_refresh.assert_called_once_with([10])
        events.send_metadata_change.assert_called_once_with(
            "series", {"series_ids": [10], "action": "updated"})

    def test_no_primary_folder_skips_series_json(self, invalidator, store, series_row):
        series_row["primary_folder"] = None
        store.get_series_with_files.return_value = series_row

        result = invalidator.invalidate_series(10)

        assert result.success is True
        invalidator.sidecar.sync_series_to_series_json.assert_not_called()

    def test_series_json_failure_is_a_warning(self, invalidator, store, events, series_row):
        store.get_series_with_files.return_value = series_row
        invalidator.sidecar.sync_series_to_series_json.return_value = False

        result = invalidator.invalidate_series(10)

        assert result.success is True
        assert result.series_json_synced is False
        assert result.errors == []
        assert result.warnings == ["Failed to sync series.json"]
        events.send_series_refresh.assert_called_once_with([10])
        events.send_metadata_change.assert_called_once_with(
            "series", {"series_ids": [10], "action": "updated"})

    def test_series_json_exception_is_a_warning(self, invalidator, store, series_row):
        store.get_series_with_files.return_value = series_row
        invalidator.sidecar.sync_series_to_series_json.side_effect = PermissionError("read-only")

        result = invalidator.invalidate_series(10)

        assert result.success is True
        assert result.warnings == ["Failed to sync series.json: read-only"]

    def test_inherits_fields_into_issue_files(self, invalidator, store, series_row):
        store.get_series_with_files.return_value = series_row
        store.apply_series_inheritance.return_value = 2

        result = invalidator.invalidate_series(
            10, sync_to_series_json=False, sync_to_issue_files=True,
            inheritable_fields=("publisher", "genres", "ageRating", "title"),
        )

        assert result.related_files_updated == 2
        store.apply_series_inheritance.assert_called_once_with(
            [1, 2], {"publisher": "DC Comics", "genre": "Superhero", "age_rating": "Teen"})
        assert result.warnings == ["Field 'title' cannot be inherited from a series"]
        assert invalidator.stats.mark_dirty_for_metadata_change.call_count == 2
        invalidator.stats.trigger_dirty_stats_processing.assert_called_once()

    def test_inheritance_needs_flag(self, invalidator, store, series_row):
        store.get_series_with_files.return_value = series_row
        invalidator.invalidate_series(10, inheritable_fields=("publisher",))
        store.apply_series_inheritance.assert_not_called()


# ===== invalidate_after_bulk_apply =====

class TestBulkApply:

    def test_empty_input(self, invalidator, cache, events):
        result = invalidator.invalidate_after_bulk_apply([])
        assert result.to_dict() == {
            "files_processed": 0, "series_processed": 0, "file_ids": [],
            "series_ids": [], "errors": [], "warnings": [],
        }
        cache.refresh_metadata_cache.assert_not_called()
        events.send_file_refresh.assert_not_called()

    def test_processes_successful_files_only(self, invalidator, store, cache, events):
        store.get_comic_file.side_effect = lambda fid: make_file(file_id=fid)
        processed = [
            {"file_id": 1, "success": True},
            {"file_id": 2, "success": False},
            {"file_id": 3, "success": True},
        ]
        affected = {12, 11}

        result = invalidator.invalidate_after_bulk_apply(processed, affected)

        assert result.files_processed == 2
        assert result.file_ids == [1, 3]
        assert result.series_ids == [11, 12]
        assert result.series_processed == 2
        assert affected == {12, 11}
        assert sorted(c.args[0] for c in cache.refresh_metadata_cache.call_args_list) == [1, 3]
        events.send_file_refresh.assert_called_once_with([1, 3])
        events.send_series_refresh.assert_called_once_with([11, 12])
        invalidator.stats.trigger_dirty_stats_processing.assert_called_once()

    def test_affected_series_processed_without_files(self, invalidator, store, cache, events):
        result = invalidator.invalidate_after_bulk_apply([], {5})

        assert result.files_processed == 0
        assert result.series_processed == 1
        assert result.series_ids == [5]
        store.update_series_progress.assert_called_once_with(5)
        cache.refresh_metadata_cache.assert_not_called()
        events.send_file_refresh.assert_not_called()
        events.send_series_refresh.assert_called_once_with([5])
        invalidator.stats.trigger_dirty_stats_processing.assert_not_called()

    def test_worker_exception_isolated(self, invalidator, store, cache, events):
        store.get_comic_file.side_effect = lambda fid: make_file(file_id=fid)

        class BrokenForFileTwo(KeyedLock):
            @contextmanager
            def hold(self, key):
                if key == ("file", 2):
                    raise RuntimeError("lock table corrupted")
                with super().hold(key):
                    yield
        invalidator.locks = BrokenForFileTwo()

        result = invalidator.invalidate_after_bulk_apply(
            [{"file_id": 1, "success": True}, {"file_id": 2, "success": True}])

        assert result.files_processed == 1
        assert "Error refreshing file 2: lock table corrupted" in result.errors
        cache.refresh_metadata_cache.assert_called_once_with(1)
        events.send_file_refresh.assert_called_once_with([1, 2])

    def test_relinked_series_added(self, invalidator, store):
        store.get_comic_file.return_value = make_file(metadata_series="Nightwing")

        result = invalidator.invalidate_after_bulk_apply([{"file_id": 1, "success": True}])

        assert result.series_ids == [10, 20]

    def test_syncs_series_json_for_series_with_folder(self, invalidator, store):
        store.get_comic_file.return_value = make_file()
        store.get_series.side_effect = lambda sid: {"id": sid, "primary_folder": "/x" if sid == 10 else None}
        invalidator.sidecar.sync_series_to_series_json.return_value = True

        invalidator.invalidate_after_bulk_apply([{"file_id": 1, "success": True}], {10, 11})

        invalidator.sidecar.sync_series_to_series_json.assert_called_once_with(10)

    def test_errors_collected(self, invalidator, store, cache):
        store.get_comic_file.return_value = make_file()
        cache.refresh_metadata_cache.return_value = False
        store.update_series_progress.side_effect = sqlite3.OperationalError("locked")

        result = invalidator.invalidate_after_bulk_apply([{"file_id": 1, "success": True}], {10})

        assert result.files_processed == 0
        assert "Failed to refresh cache for file 1" in result.errors
        assert "Error updating series 10: locked" in result.errors
        assert result.series_processed == 0
