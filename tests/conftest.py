"""
Root test configuration and fixtures.

Sets up environment variables BEFORE any app modules are imported,
to prevent import-time side effects (log file creation, config loading,
scheduler start-up) from touching production paths.
"""
import os
import sys
import tempfile
import logging

# ---------------------------------------------------------------------------
# Environment setup (runs at import time, before any test module loads)
# ---------------------------------------------------------------------------
# Create a temp dir for config/logs/cache that persists for the test session
_TEST_CONFIG_DIR = tempfile.mkdtemp(prefix="clu_test_config_")
_TEST_CACHE_DIR = os.path.join(_TEST_CONFIG_DIR, "cache")
os.makedirs(_TEST_CACHE_DIR, exist_ok=True)
os.environ["CONFIG_DIR"] = _TEST_CONFIG_DIR
os.environ["STATS_SCHEDULER"] = "no"

# Seed config.ini so the default CACHE_DIR never points at /cache
with open(os.path.join(_TEST_CONFIG_DIR, "config.ini"), "w") as _f:
    _f.write(f"[SETTINGS]\nCACHE_DIR = {_TEST_CACHE_DIR}\n")

# Ensure the project root is on sys.path so imports work
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

# ---------------------------------------------------------------------------
# Now we can safely import pytest (fixtures below)
# ---------------------------------------------------------------------------
import pytest
import zipfile
import io
from unittest.mock import patch


# ---------------------------------------------------------------------------
# Fixture: Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_path(tmp_path_factory):
    """Path to a temporary SQLite database file."""
    return str(tmp_path_factory.mktemp("db") / "test_comic_metadata.db")


@pytest.fixture
def db_connection(db_path):
    """
    Create a fresh SQLite database with the full schema.
    Patches get_db_path() so all database.py functions use this test DB.
    """
    with patch("database.get_db_path", return_value=db_path):
        from database import init_db, get_db_connection

        init_db()
        conn = get_db_connection()
        yield conn
        conn.close()


# ---------------------------------------------------------------------------
# Fixture: Sample CBZ creation
# ---------------------------------------------------------------------------
@pytest.fixture
def create_cbz(tmp_path):
    """
    Factory fixture to create minimal CBZ files for testing.

    Usage:
        path = create_cbz("test.cbz", num_images=3, comicinfo_xml="<ComicInfo>...</ComicInfo>")
    """
    def _create_cbz(filename="test.cbz", num_images=2, comicinfo_xml=None, folder=None):
        from PIL import Image

        target_dir = tmp_path / folder if folder else tmp_path
        target_dir.mkdir(parents=True, exist_ok=True)
        cbz_path = target_dir / filename
        with zipfile.ZipFile(str(cbz_path), "w") as zf:
            for i in range(num_images):
                img = Image.new("RGB", (100, 150), color=(i * 50, 100, 200))
                buf = io.BytesIO()
                img.save(buf, format="PNG")
                zf.writestr(f"page_{i:03d}.png", buf.getvalue())
            if comicinfo_xml:
                zf.writestr("ComicInfo.xml", comicinfo_xml)
        return str(cbz_path)

    return _create_cbz


def comicinfo(**tags):
    """Build a ComicInfo.xml string from tag=value pairs."""
    body = "".join(f"<{tag}>{value}</{tag}>" for tag, value in tags.items())
    return f'<?xml version="1.0" encoding="utf-8"?><ComicInfo>{body}</ComicInfo>'


@pytest.fixture
def make_comicinfo():
    return comicinfo


# ---------------------------------------------------------------------------
# Fixture: Logging suppression (autouse)
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _suppress_app_logging():
    """Redirect app_logger to a NullHandler to avoid file I/O in tests."""
    from app_logging import app_logger

    original_handlers = app_logger.handlers[:]
    app_logger.handlers = [logging.NullHandler()]
    yield
    app_logger.handlers = original_handlers
