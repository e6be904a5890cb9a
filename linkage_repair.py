"""
Series linkage repair.

A file is mismatched when the series name in its cached metadata differs
(case-insensitively) from the name of the series it is linked to, or when
it names a series but is not linked at all. Repair relinks such files from
their metadata; sync goes the other way and rewrites the metadata from the
linked series.
"""
import threading
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from app_logging import app_logger


@dataclass
class RepairResult:
    total_mismatched: int = 0
    repaired: int = 0
    new_series_created: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[dict] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


@dataclass
class SyncToSeriesResult:
    success: bool
    old_series_name: Optional[str] = None
    new_series_name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        data = asdict(self)
        if data["error"] is None:
            data.pop("error")
        return data


class LinkageRepairer:

    def __init__(self, store=None, linker=None, events=None, writer=None, locks=None):
        if store is None:
            import database as store
        if linker is None:
            import series_matcher as linker
        if events is None:
            import events
        if writer is None:
            from comicinfo import merge_comicinfo as writer
        if locks is None:
            from app_state import entity_locks as locks

        self.store = store
        self.linker = linker
        self.events = events
        self.writer = writer
        self.locks = locks

    def find_mismatched_series_files(self):
        """
        Files whose metadata series name disagrees with their linked series.

        Returns:
            List of dicts: file_id, file_name, metadata_series,
            linked_series_name, linked_series_id (None when unlinked)
        """
        mismatched = []
        for row in self.store.get_files_with_metadata_and_series():
            metadata_series = (row.get("metadata_series") or "").strip()
            if not metadata_series:
                continue

            linked_name = row.get("linked_series_name")
            if row.get("series_id") is None:
                linked_name = None
            elif linked_name and linked_name.strip().lower() == metadata_series.lower():
                continue

            mismatched.append({
                "file_id": row["file_id"],
                "file_name": row["file_name"],
                "metadata_series": row.get("metadata_series"),
                "linked_series_name": linked_name,
                "linked_series_id": row.get("series_id"),
            })
        return mismatched

    def _repair_one(self, item):
        file_id = item["file_id"]
        detail = {
            "file_id": file_id,
            "file_name": item["file_name"],
            "old_series_name": item["linked_series_name"],
            "new_series_name": None,
        }

        with self.locks.hold(("file", file_id)):
            link = self.linker.auto_link_file_to_series(
                file_id, trust_metadata=True, expected_series_id=item["linked_series_id"])

        if not (link.success and link.series_id is not None):
            detail["action"] = "error"
            detail["error"] = link.error or "Unknown error"
            return detail, None

        series = self.store.get_series(link.series_id)
        detail["new_series_name"] = series["name"] if series else None
        detail["action"] = "created" if link.match_type == "created" else "relinked"
        return detail, link.series_id

    def repair_series_linkages(self, file_ids=None, on_progress=None) -> RepairResult:
        """
        Relink every mismatched file (or just file_ids) from its metadata.

        Files are processed one at a time. The auto-linker, trusting the
        metadata, only links to a series with exactly that name or creates
        one, so a second run finds nothing left to repair.

        Args:
            file_ids: Restrict repair to these files
            on_progress: Called as on_progress(current, total, description)
                after each file
        """
        result = RepairResult()
        mismatched = self.find_mismatched_series_files()

        if file_ids:
            wanted = set(file_ids)
            mismatched = [m for m in mismatched if m["file_id"] in wanted]

        result.total_mismatched = len(mismatched)
        if not mismatched:
            app_logger.info("No mismatched series linkages found")
            return result

        app_logger.info(f"🔧 Repairing {len(mismatched)} mismatched series linkages")
        affected = []

        for index, item in enumerate(mismatched, start=1):
            if item["linked_series_id"] is not None and item["linked_series_id"] not in affected:
                affected.append(item["linked_series_id"])

            try:
                detail, new_series_id = self._repair_one(item)
            except Exception as e:
                app_logger.error(f"Error repairing series linkage for file {item['file_id']}: {e}")
                detail = {
                    "file_id": item["file_id"],
                    "file_name": item["file_name"],
                    "old_series_name": item["linked_series_name"],
                    "new_series_name": None,
                    "action": "error",
                    "error": str(e),
                }
                new_series_id = None

            result.details.append(detail)
            if detail["action"] == "error":
                result.errors.append(f"{item['file_name']}: {detail['error']}")
            else:
                result.repaired += 1
                if detail["action"] == "created":
                    result.new_series_created += 1
                if new_series_id not in affected:
                    affected.append(new_series_id)
                app_logger.info(
                    f"✓ {item['file_name']}: {detail['old_series_name'] or '(unlinked)'} -> "
                    f"{detail['new_series_name']} ({detail['action']})"
                )

            if on_progress:
                on_progress(index, len(mismatched), f"Repairing: {item['file_name']}")

        for series_id in affected:
            try:
                self.store.update_series_progress(series_id)
            except Exception as e:
                app_logger.warning(f"Failed to update progress for series {series_id} after repair: {e}")

        if affected:
            try:
                self.events.send_series_refresh(affected)
                self.events.send_metadata_change("series", {"series_ids": affected, "action": "updated"})
            except Exception as e:
                app_logger.warning(f"Failed to notify clients after repair: {e}")

        app_logger.info(
            f"Series linkage repair complete: {result.repaired}/{result.total_mismatched} repaired, "
            f"{result.new_series_created} series created, {len(result.errors)} errors"
        )
        return result

    def sync_file_metadata_to_series(self, file_id) -> SyncToSeriesResult:
        """
        Rewrite a file's series name from the series it is linked to.

        The archive's ComicInfo.xml is written first; the cached metadata row
        only changes once that succeeded, so a failed write leaves both as
        they were.
        """
        try:
            with self.locks.hold(("file", file_id)):
                file = self.store.get_comic_file(file_id)
                if not file:
                    return SyncToSeriesResult(success=False, error="File not found")

                series = file.get("series")
                if not series:
                    return SyncToSeriesResult(success=False, error="File is not linked to a series")

                old_name = (file.get("metadata") or {}).get("series")
                new_name = series["name"]

                if not self.writer(file["path"], {"Series": new_name}):
                    return SyncToSeriesResult(success=False, old_series_name=old_name,
                                              error="Failed to write ComicInfo.xml")

                if not self.store.update_file_metadata_series(file_id, new_name):
                    # Archive already carries the new name; next refresh picks it up
                    return SyncToSeriesResult(success=False, old_series_name=old_name,
                                              new_series_name=new_name,
                                              error="Failed to update cached metadata")

            app_logger.info(f"Synced file {file_id} metadata series '{old_name}' -> '{new_name}'")
            try:
                self.events.send_file_refresh([file_id])
            except Exception as e:
                app_logger.warning(f"Failed to notify clients for file {file_id}: {e}")
            return SyncToSeriesResult(success=True, old_series_name=old_name, new_series_name=new_name)

        except Exception as e:
            app_logger.error(f"Failed to sync file {file_id} metadata to series: {e}")
            return SyncToSeriesResult(success=False, error=str(e))

    def batch_sync_file_metadata_to_series(self, file_ids):
        result = {"total": 0, "synced": 0, "errors": [], "details": []}
        for file_id in file_ids or []:
            result["total"] += 1
            sync = self.sync_file_metadata_to_series(file_id)
            result["details"].append({"file_id": file_id, **sync.to_dict()})
            if sync.success:
                result["synced"] += 1
            else:
                result["errors"].append(f"{file_id}: {sync.error}")

        app_logger.info(f"Batch sync to series complete: {result['synced']}/{result['total']} synced")
        return result


_default_repairer = None
_default_lock = threading.Lock()


def get_repairer():
    global _default_repairer
    with _default_lock:
        if _default_repairer is None:
            _default_repairer = LinkageRepairer()
        return _default_repairer


def find_mismatched_series_files():
    return get_repairer().find_mismatched_series_files()


def repair_series_linkages(file_ids=None, on_progress=None):
    return get_repairer().repair_series_linkages(file_ids=file_ids, on_progress=on_progress)


def sync_file_metadata_to_series(file_id):
    return get_repairer().sync_file_metadata_to_series(file_id)


def batch_sync_file_metadata_to_series(file_ids):
    return get_repairer().batch_sync_file_metadata_to_series(file_ids)
