"""
Factory helpers for creating test database records.

These call actual database.py CRUD functions with sensible defaults,
so they validate the same code paths as production.  Every factory
returns the ID of the created record.
"""


# ---------------------------------------------------------------------------
# Counters for unique defaults
# ---------------------------------------------------------------------------
_counters = {}


def _next(prefix="item"):
    _counters.setdefault(prefix, 0)
    _counters[prefix] += 1
    return _counters[prefix]


def reset_counters():
    _counters.clear()


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------
def create_series(name=None, publisher="DC Comics", start_year=2020, primary_folder=None, **kwargs):
    """Add a series row via the real create_series()."""
    from database import create_series as db_create_series

    n = _next("series")
    name = name or f"Series {n}"
    series_id = db_create_series(
        name,
        publisher=publisher,
        start_year=start_year,
        primary_folder=primary_folder,
        **kwargs,
    )
    assert series_id is not None, f"create_series failed for {name}"
    return series_id


# ---------------------------------------------------------------------------
# Comic files
# ---------------------------------------------------------------------------
def create_file(path=None, series_id=None, folder="/data/DC Comics/Series"):
    """Add a comic_files row via the real add_comic_file()."""
    from database import add_comic_file

    n = _next("file")
    path = path or f"{folder}/Comic Issue {n:03d}.cbz"
    file_id = add_comic_file(path, series_id=series_id)
    assert file_id is not None, f"create_file failed for {path}"
    return file_id


def create_file_with_metadata(series_name, series_id=None, path=None, **metadata):
    """Add a file and its cached metadata row; metadata keys are file_metadata columns."""
    from database import upsert_file_metadata

    file_id = create_file(path=path, series_id=series_id)
    ok = upsert_file_metadata(file_id, {"series": series_name, **metadata})
    assert ok, f"upsert_file_metadata failed for file {file_id}"
    return file_id
