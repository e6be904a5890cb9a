"""
Dirty-stats tracking.

Metadata changes only record which aggregates went stale. The stats
scheduler recomputes them in batches, either on its interval or right away
when trigger_dirty_stats_processing() is called after a bulk change.
"""
from collections import Counter

from apscheduler.triggers.interval import IntervalTrigger

import database
from app_logging import app_logger
from app_state import stats_scheduler

# file_metadata column -> entity type
ENTITY_COLUMNS = {
    "publisher": "publisher",
    "genre": "genre",
    "characters": "character",
    "teams": "team",
    "locations": "location",
    "story_arc": "story_arc",
}
CREATOR_COLUMNS = ("writer", "penciller", "inker", "colorist", "letterer", "cover_artist", "editor")

PROCESS_JOB_ID = "process_dirty_stats"
PROCESS_NOW_JOB_ID = "process_dirty_stats_now"


def _split(value):
    if not value:
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _entity_column(entity_type):
    if entity_type.startswith("creator:"):
        return entity_type.split(":", 1)[1]
    for column, etype in ENTITY_COLUMNS.items():
        if etype == entity_type:
            return column
    return None


def build_dirty_flags(metadata, reason="metadata_change"):
    """(scope, entity_type, entity_name, reason) tuples for one file's metadata."""
    flags = [
        ("library", None, None, reason),
        ("user", None, None, reason),
    ]
    if not metadata:
        return flags

    for column, entity_type in ENTITY_COLUMNS.items():
        for name in _split(metadata.get(column)):
            flags.append(("entity", entity_type, name, reason))

    for role in CREATOR_COLUMNS:
        for name in _split(metadata.get(role)):
            flags.append(("entity", f"creator:{role}", name, reason))

    return flags


def mark_dirty_for_metadata_change(file_id):
    """
    Flag every aggregate touched by a file's cached metadata as stale.

    Raises:
        sqlite3.Error on database failure
    """
    metadata = database.get_file_metadata(file_id)
    count = database.add_stats_dirty_flags(build_dirty_flags(metadata))
    app_logger.debug(f"Marked {count} stats dirty for file {file_id}")
    return count


def process_dirty_stats(batch_size=500):
    """
    Recompute stale aggregates and clear their flags.

    Returns:
        Number of flags processed
    """
    flags = database.get_pending_dirty_flags(limit=batch_size)
    if not flags:
        return 0

    entity_types = {f["entity_type"] for f in flags if f["scope"] == "entity" and f["entity_type"]}
    wanted = {(f["entity_type"], f["entity_name"]) for f in flags if f["scope"] == "entity"}

    entries = []
    for entity_type in entity_types:
        column = _entity_column(entity_type)
        if not column:
            app_logger.warning(f"Unknown stats entity type: {entity_type}")
            continue
        counts = Counter()
        for value in database.get_metadata_column_values(column):
            counts.update(set(_split(value)))
        for etype, name in wanted:
            if etype == entity_type:
                entries.append((etype, name, counts.get(name, 0)))

    if any(f["scope"] in ("library", "user") for f in flags):
        entries.append(("library", "total", len(database.get_files_with_metadata_and_series())))

    if entries and not database.save_entity_stats(entries):
        app_logger.error("Failed to save recomputed stats; flags left pending")
        return 0

    database.clear_dirty_flags([f["id"] for f in flags])
    app_logger.info(f"📊 Processed {len(flags)} dirty stats flags ({len(entries)} aggregates)")
    return len(flags)


def trigger_dirty_stats_processing():
    """Run stats processing now: on the scheduler when it is running, inline otherwise."""
    if stats_scheduler.running:
        stats_scheduler.add_job(process_dirty_stats, id=PROCESS_NOW_JOB_ID, replace_existing=True)
        return
    process_dirty_stats()


def configure_stats_scheduler(interval_seconds=300):
    """(Re)schedule periodic stats processing and start the scheduler if needed."""
    stats_scheduler.remove_all_jobs()
    stats_scheduler.add_job(
        process_dirty_stats,
        trigger=IntervalTrigger(seconds=max(30, int(interval_seconds))),
        id=PROCESS_JOB_ID,
        replace_existing=True,
    )
    if not stats_scheduler.running:
        stats_scheduler.start()
    app_logger.info(f"Stats processing scheduled every {interval_seconds}s")
