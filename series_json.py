import json
import os
import tempfile
from datetime import datetime, timezone

import database
from app_logging import app_logger

SERIES_JSON_NAME = "series.json"


def _split_list(value):
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def build_series_json(series):
    """Sidecar document for a series row (None fields omitted)."""
    data = {
        "seriesName": series["name"],
        "publisher": series.get("publisher"),
        "startYear": series.get("start_year"),
        "endYear": series.get("end_year"),
        "volume": series.get("volume"),
        "summary": series.get("description"),
        "genres": _split_list(series.get("genres")),
        "ageRating": series.get("age_rating"),
        "languageISO": series.get("language_iso"),
        "lastUpdated": datetime.now(timezone.utc).isoformat(),
    }
    return {k: v for k, v in data.items() if v is not None}


def write_series_json(folder, data):
    """Atomically write series.json into folder."""
    target = os.path.join(folder, SERIES_JSON_NAME)
    fd, temp_path = tempfile.mkstemp(suffix=".json", dir=folder)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(temp_path, target)
    except OSError:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise
    return target


def read_series_json(folder):
    """Parsed series.json from folder, or None when missing or invalid."""
    path = os.path.join(folder, SERIES_JSON_NAME)
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        app_logger.warning(f"Could not read {path}: {e}")
        return None


def sync_series_to_series_json(series_id):
    """
    Write the series row out to series.json in its primary folder.

    Returns:
        True if written, False if the series is missing, has no primary
        folder, or the write failed
    """
    series = database.get_series(series_id)
    if not series:
        app_logger.warning(f"Cannot sync series.json: series {series_id} not found")
        return False

    folder = series.get("primary_folder")
    if not folder:
        app_logger.debug(f"Series {series_id} has no primary folder, skipping series.json")
        return False

    if not os.path.isdir(folder):
        app_logger.error(f"Cannot sync series.json: folder {folder} does not exist")
        return False

    try:
        path = write_series_json(folder, build_series_json(series))
        app_logger.info(f"📝 Wrote {path}")
        return True
    except OSError as e:
        app_logger.error(f"Failed to write series.json for series {series_id}: {e}")
        return False
