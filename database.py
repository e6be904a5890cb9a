import json
import sqlite3
import os
import time
from typing import Optional
from config import config
from app_logging import app_logger

# Flattened ComicInfo columns cached per file
FILE_METADATA_COLUMNS = [
    'series',        # Series name
    'number',        # Issue number
    'volume',        # Volume number
    'title',         # Issue title
    'summary',       # Summary / description
    'publisher',     # Publisher name
    'year',          # Publication year
    'month',         # Publication month
    'writer',        # Writer(s) - comma-separated
    'penciller',     # Penciller(s) - comma-separated
    'inker',         # Inker(s) - comma-separated
    'colorist',      # Colorist(s) - comma-separated
    'letterer',      # Letterer(s) - comma-separated
    'cover_artist',  # Cover artist(s) - comma-separated
    'editor',        # Editor(s) - comma-separated
    'genre',         # Genre(s) - comma-separated
    'characters',    # Characters - comma-separated
    'teams',         # Teams - comma-separated
    'locations',     # Locations - comma-separated
    'story_arc',     # Story arc(s) - comma-separated
    'age_rating',
    'language_iso',
]

# Series columns that can be pushed down into issue metadata
SERIES_INHERITABLE_COLUMNS = {
    'publisher': 'publisher',
    'genres': 'genre',
    'age_rating': 'age_rating',
    'language_iso': 'language_iso',
}


def get_db_path():
    # Ensure we get the latest config value
    cache_dir = config.get("SETTINGS", "CACHE_DIR", fallback="/cache")
    if not os.path.exists(cache_dir):
        try:
            os.makedirs(cache_dir, exist_ok=True)
        except OSError as e:
            app_logger.error(f"Failed to create cache directory {cache_dir}: {e}")
            # Fallback to a local directory if /cache is not writable (e.g. running locally without docker)
            cache_dir = "cache"
            os.makedirs(cache_dir, exist_ok=True)

    return os.path.join(cache_dir, "comic_metadata.db")


def init_db():
    """Initialize the SQLite database and create tables if they don't exist."""
    try:
        db_path = get_db_path()
        app_logger.info(f"Initializing database at {db_path}")

        conn = sqlite3.connect(db_path, timeout=30)
        c = conn.cursor()

        # Enable WAL mode for better concurrency (allows reads during writes)
        c.execute('PRAGMA journal_mode=WAL')
        c.execute('PRAGMA busy_timeout=30000')
        # Enable foreign key enforcement for ON DELETE CASCADE
        c.execute('PRAGMA foreign_keys=ON')

        c.execute('''
            CREATE TABLE IF NOT EXISTS series (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                publisher TEXT,
                start_year INTEGER,
                end_year INTEGER,
                volume INTEGER,
                description TEXT,
                primary_folder TEXT,
                genres TEXT,
                age_rating TEXT,
                language_iso TEXT,
                owned_issue_count INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # One series per (name, publisher), compared case-insensitively
        c.execute('''
            CREATE UNIQUE INDEX IF NOT EXISTS idx_series_identity
            ON series(lower(name), lower(COALESCE(publisher, '')))
        ''')

        c.execute('''
            CREATE TABLE IF NOT EXISTS comic_files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL UNIQUE,
                filename TEXT NOT NULL,
                series_id INTEGER REFERENCES series(id) ON DELETE SET NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        c.execute('CREATE INDEX IF NOT EXISTS idx_comic_files_series ON comic_files(series_id)')

        metadata_columns = ",\n".join(
            f"{col} {'INTEGER' if col == 'year' else 'TEXT'}" for col in FILE_METADATA_COLUMNS
        )
        c.execute(f'''
            CREATE TABLE IF NOT EXISTS file_metadata (
                file_id INTEGER PRIMARY KEY REFERENCES comic_files(id) ON DELETE CASCADE,
                {metadata_columns},
                series_inherited INTEGER DEFAULT 0,
                last_scanned REAL
            )
        ''')

        # Migration: add any metadata column missing from older databases
        c.execute("PRAGMA table_info(file_metadata)")
        columns = [col[1] for col in c.fetchall()]
        for col in FILE_METADATA_COLUMNS + ['series_inherited', 'last_scanned']:
            if col not in columns:
                col_type = {'year': 'INTEGER', 'series_inherited': 'INTEGER', 'last_scanned': 'REAL'}.get(col, 'TEXT')
                c.execute(f'ALTER TABLE file_metadata ADD COLUMN {col} {col_type}')
                app_logger.info(f"Migrating file_metadata: adding {col} column")

        c.execute('CREATE INDEX IF NOT EXISTS idx_file_metadata_series ON file_metadata(series)')

        c.execute('''
            CREATE TABLE IF NOT EXISTS stats_dirty_flags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scope TEXT NOT NULL,
                entity_type TEXT,
                entity_name TEXT,
                reason TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        c.execute('''
            CREATE TABLE IF NOT EXISTS entity_stats (
                entity_type TEXT NOT NULL,
                entity_name TEXT NOT NULL,
                file_count INTEGER DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (entity_type, entity_name)
            )
        ''')

        c.execute('''
            CREATE TABLE IF NOT EXISTS tag_values (
                field_type TEXT NOT NULL,
                value TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (field_type, value)
            )
        ''')
        c.execute('CREATE INDEX IF NOT EXISTS idx_tag_values_lookup ON tag_values(field_type, value COLLATE NOCASE)')

        c.execute('''
            CREATE TABLE IF NOT EXISTS cross_source_mappings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                primary_source TEXT NOT NULL,
                primary_source_id TEXT NOT NULL,
                matched_source TEXT NOT NULL,
                matched_source_id TEXT NOT NULL,
                confidence REAL NOT NULL,
                match_method TEXT NOT NULL,
                match_factors TEXT,
                verified INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (primary_source, primary_source_id, matched_source)
            )
        ''')
        c.execute('''
            CREATE INDEX IF NOT EXISTS idx_cross_source_matched
            ON cross_source_mappings(matched_source, matched_source_id)
        ''')

        conn.commit()
        conn.close()
        app_logger.info("Database initialized successfully")
        return True
    except Exception as e:
        app_logger.error(f"Failed to initialize database: {e}")
        return False


def get_db_connection():
    """Get a connection to the SQLite database."""
    try:
        conn = sqlite3.connect(get_db_path(), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA busy_timeout=30000')
        # Enable foreign key enforcement for ON DELETE CASCADE
        conn.execute('PRAGMA foreign_keys=ON')
        return conn
    except Exception as e:
        app_logger.error(f"Failed to connect to database: {e}")
        return None


def _open_or_raise():
    """Connection for helpers that must surface failures to their caller."""
    conn = get_db_connection()
    if conn is None:
        raise sqlite3.OperationalError("Database connection unavailable")
    return conn


# =============================================================================
# Comic Files
# =============================================================================

def add_comic_file(path, filename=None, series_id=None):
    """
    Register a comic archive.

    Args:
        path: Absolute path to the archive
        filename: Display filename (defaults to the basename of path)
        series_id: Optional series to link to

    Returns:
        New file ID, or None on error
    """
    try:
        conn = get_db_connection()
        if not conn:
            return None

        c = conn.cursor()
        c.execute('''
            INSERT INTO comic_files (path, filename, series_id)
            VALUES (?, ?, ?)
        ''', (path, filename or os.path.basename(path), series_id))
        file_id = c.lastrowid

        conn.commit()
        conn.close()
        return file_id

    except Exception as e:
        app_logger.error(f"Failed to add comic file {path}: {e}")
        return None


def get_comic_file(file_id):
    """
    Get a comic file with its cached metadata and linked series.

    Args:
        file_id: ID of the comic_files row

    Returns:
        Dict with file columns plus 'metadata' and 'series' (each a dict or None),
        or None if the file does not exist
    """
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('SELECT * FROM comic_files WHERE id = ?', (file_id,))
        row = c.fetchone()
        if not row:
            return None

        file = dict(row)

        c.execute('SELECT * FROM file_metadata WHERE file_id = ?', (file_id,))
        meta_row = c.fetchone()
        file['metadata'] = dict(meta_row) if meta_row else None

        file['series'] = None
        if file['series_id'] is not None:
            c.execute('SELECT * FROM series WHERE id = ?', (file['series_id'],))
            series_row = c.fetchone()
            file['series'] = dict(series_row) if series_row else None

        return file
    finally:
        conn.close()


def get_file_series_id(file_id):
    """Return the file's current series_id (None when unlinked or missing)."""
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('SELECT series_id FROM comic_files WHERE id = ?', (file_id,))
        row = c.fetchone()
        return row['series_id'] if row else None
    finally:
        conn.close()


def compare_and_set_file_series(file_id, new_series_id, expected_series_id):
    """
    Change a file's series link only if it still points at expected_series_id.

    Bumps the row version so concurrent readers can detect the write.

    Returns:
        True if the row was updated, False if another writer got there first

    Raises:
        sqlite3.Error on database failure
    """
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('''
            UPDATE comic_files
            SET series_id = ?, version = version + 1, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND series_id IS ?
        ''', (new_series_id, file_id, expected_series_id))
        conn.commit()
        return c.rowcount == 1
    finally:
        conn.close()


def link_file_to_series(file_id, series_id):
    """
    Unconditionally link a file to a series.

    Raises:
        sqlite3.Error on database failure
    """
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('''
            UPDATE comic_files
            SET series_id = ?, version = version + 1, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        ''', (series_id, file_id))
        conn.commit()
        return c.rowcount == 1
    finally:
        conn.close()


def get_files_with_metadata_and_series():
    """
    Get every file that has cached metadata, with its linked series name.

    Returns:
        List of dicts: file_id, file_name, series_id, metadata_series,
        linked_series_name
    """
    try:
        conn = get_db_connection()
        if not conn:
            return []

        c = conn.cursor()
        c.execute('''
            SELECT f.id AS file_id, f.filename AS file_name, f.series_id,
                   m.series AS metadata_series, s.name AS linked_series_name
            FROM comic_files f
            JOIN file_metadata m ON m.file_id = f.id
            LEFT JOIN series s ON s.id = f.series_id
            ORDER BY f.id
        ''')
        rows = c.fetchall()
        conn.close()

        return [dict(row) for row in rows]

    except Exception as e:
        app_logger.error(f"Failed to load files with metadata: {e}")
        return []


# =============================================================================
# File Metadata Cache
# =============================================================================

def upsert_file_metadata(file_id, metadata_dict, scanned_at=None):
    """
    Insert or replace the cached metadata row for a file.

    Args:
        file_id: ID of the comic_files row
        metadata_dict: Dict keyed by FILE_METADATA_COLUMNS names
        scanned_at: Unix timestamp of the scan (defaults to now)

    Returns:
        True if successful, False otherwise
    """
    try:
        conn = get_db_connection()
        if not conn:
            return False

        columns = ', '.join(FILE_METADATA_COLUMNS)
        placeholders = ', '.join('?' for _ in FILE_METADATA_COLUMNS)
        values = [metadata_dict.get(col) for col in FILE_METADATA_COLUMNS]

        c = conn.cursor()
        c.execute(f'''
            INSERT OR REPLACE INTO file_metadata
            (file_id, {columns}, series_inherited, last_scanned)
            VALUES (?, {placeholders}, 0, ?)
        ''', [file_id] + values + [scanned_at or time.time()])

        conn.commit()
        conn.close()
        return True

    except Exception as e:
        app_logger.error(f"Failed to cache metadata for file {file_id}: {e}")
        return False


def get_file_metadata(file_id):
    """Get the cached metadata row for a file, or None."""
    try:
        conn = get_db_connection()
        if not conn:
            return None

        c = conn.cursor()
        c.execute('SELECT * FROM file_metadata WHERE file_id = ?', (file_id,))
        row = c.fetchone()
        conn.close()

        return dict(row) if row else None

    except Exception as e:
        app_logger.error(f"Failed to get metadata for file {file_id}: {e}")
        return None


def update_file_metadata_series(file_id, series_name):
    """
    Overwrite the cached series name for a file.

    Returns:
        True if a row was updated, False otherwise
    """
    try:
        conn = get_db_connection()
        if not conn:
            return False

        c = conn.cursor()
        c.execute('''
            UPDATE file_metadata
            SET series = ?, last_scanned = ?
            WHERE file_id = ?
        ''', (series_name, time.time(), file_id))
        updated = c.rowcount

        conn.commit()
        conn.close()
        return updated == 1

    except Exception as e:
        app_logger.error(f"Failed to update series name for file {file_id}: {e}")
        return False


def apply_series_inheritance(file_ids, updates):
    """
    Copy series-level values into the cached metadata of the given files.

    Args:
        file_ids: Files to update
        updates: Dict of file_metadata column -> value

    Returns:
        Number of metadata rows updated

    Raises:
        sqlite3.Error on database failure
    """
    if not file_ids or not updates:
        return 0

    unknown = [col for col in updates if col not in FILE_METADATA_COLUMNS]
    if unknown:
        raise ValueError(f"Unknown metadata columns: {', '.join(unknown)}")

    assignments = ', '.join(f"{col} = ?" for col in updates)
    id_placeholders = ', '.join('?' for _ in file_ids)

    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute(f'''
            UPDATE file_metadata
            SET {assignments}, series_inherited = 1, last_scanned = ?
            WHERE file_id IN ({id_placeholders})
        ''', list(updates.values()) + [time.time()] + list(file_ids))
        conn.commit()
        return c.rowcount
    finally:
        conn.close()


# =============================================================================
# Series
# =============================================================================

def create_series(name, publisher=None, start_year=None, primary_folder=None,
                  genres=None, age_rating=None, language_iso=None, volume=None):
    """
    Create a series row.

    Returns:
        New series ID, or None if it already exists or on error
    """
    try:
        conn = get_db_connection()
        if not conn:
            return None

        c = conn.cursor()
        c.execute('''
            INSERT INTO series
            (name, publisher, start_year, volume, primary_folder, genres, age_rating, language_iso)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (name, publisher, start_year, volume, primary_folder, genres, age_rating, language_iso))
        series_id = c.lastrowid

        conn.commit()
        conn.close()

        app_logger.info(f"Created series: {name} ({publisher or 'no publisher'})")
        return series_id

    except sqlite3.IntegrityError:
        app_logger.debug(f"Series already exists: {name} ({publisher or 'no publisher'})")
        return None
    except Exception as e:
        app_logger.error(f"Failed to create series {name}: {e}")
        return None


def get_series(series_id):
    """
    Get a series by ID.

    Returns:
        Dict with series info, or None if not found
    """
    try:
        conn = get_db_connection()
        if not conn:
            return None

        c = conn.cursor()
        c.execute('SELECT * FROM series WHERE id = ?', (series_id,))
        row = c.fetchone()
        conn.close()

        return dict(row) if row else None

    except Exception as e:
        app_logger.error(f"Failed to get series {series_id}: {e}")
        return None


def get_series_with_files(series_id):
    """
    Get a series plus the IDs and paths of its linked files.

    Returns:
        Dict with series columns and 'files' (list of {id, path}), or None

    Raises:
        sqlite3.Error on database failure
    """
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('SELECT * FROM series WHERE id = ?', (series_id,))
        row = c.fetchone()
        if not row:
            return None

        series = dict(row)
        c.execute('SELECT id, path FROM comic_files WHERE series_id = ? ORDER BY id', (series_id,))
        series['files'] = [dict(r) for r in c.fetchall()]
        return series
    finally:
        conn.close()


def find_series_by_identity(name, publisher=None):
    """
    Find a series whose name matches exactly (case-insensitive).

    When several series share the name, the one whose publisher also matches
    wins. A lone name match is accepted when either side has no publisher.

    Returns:
        Series dict, or None
    """
    if not name:
        return None

    try:
        conn = get_db_connection()
        if not conn:
            return None

        c = conn.cursor()
        c.execute('SELECT * FROM series WHERE lower(name) = lower(?) ORDER BY id', (name.strip(),))
        rows = [dict(r) for r in c.fetchall()]
        conn.close()

        if not rows:
            return None

        wanted = (publisher or '').strip().lower()
        for row in rows:
            if (row.get('publisher') or '').strip().lower() == wanted:
                return row

        if not wanted:
            return rows[0]
        for row in rows:
            if not row.get('publisher'):
                return row
        return None

    except Exception as e:
        app_logger.error(f"Failed to look up series {name}: {e}")
        return None


def get_all_series_names():
    """Return [{id, name, publisher}] for every series."""
    try:
        conn = get_db_connection()
        if not conn:
            return []

        c = conn.cursor()
        c.execute('SELECT id, name, publisher FROM series ORDER BY id')
        rows = c.fetchall()
        conn.close()

        return [dict(row) for row in rows]

    except Exception as e:
        app_logger.error(f"Failed to list series: {e}")
        return []


def update_series_progress(series_id):
    """
    Recompute the owned issue count for a series from its linked files.

    Raises:
        sqlite3.Error on database failure
    """
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('''
            UPDATE series
            SET owned_issue_count = (SELECT COUNT(*) FROM comic_files WHERE series_id = ?),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        ''', (series_id, series_id))
        conn.commit()
        return c.rowcount == 1
    finally:
        conn.close()


# =============================================================================
# Stats Dirty Flags
# =============================================================================

def add_stats_dirty_flags(flags):
    """
    Insert dirty-stats flags.

    Args:
        flags: Iterable of (scope, entity_type, entity_name, reason) tuples

    Returns:
        Number of flags inserted

    Raises:
        sqlite3.Error on database failure
    """
    flags = list(flags)
    if not flags:
        return 0

    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.executemany('''
            INSERT INTO stats_dirty_flags (scope, entity_type, entity_name, reason)
            VALUES (?, ?, ?, ?)
        ''', flags)
        conn.commit()
        return len(flags)
    finally:
        conn.close()


def get_pending_dirty_flags(limit=100):
    """Oldest pending dirty flags first."""
    try:
        conn = get_db_connection()
        if not conn:
            return []

        c = conn.cursor()
        c.execute('SELECT * FROM stats_dirty_flags ORDER BY id LIMIT ?', (limit,))
        rows = c.fetchall()
        conn.close()

        return [dict(row) for row in rows]

    except Exception as e:
        app_logger.error(f"Failed to get dirty stats flags: {e}")
        return []


def clear_dirty_flags(flag_ids):
    """Delete processed dirty flags. Returns True on success."""
    if not flag_ids:
        return True

    try:
        conn = get_db_connection()
        if not conn:
            return False

        placeholders = ', '.join('?' for _ in flag_ids)
        c = conn.cursor()
        c.execute(f'DELETE FROM stats_dirty_flags WHERE id IN ({placeholders})', list(flag_ids))

        conn.commit()
        conn.close()
        return True

    except Exception as e:
        app_logger.error(f"Failed to clear dirty stats flags: {e}")
        return False


def get_dirty_flag_count():
    try:
        conn = get_db_connection()
        if not conn:
            return 0

        c = conn.cursor()
        c.execute('SELECT COUNT(*) FROM stats_dirty_flags')
        count = c.fetchone()[0]
        conn.close()
        return count

    except Exception as e:
        app_logger.error(f"Failed to count dirty stats flags: {e}")
        return 0


def get_metadata_column_values(column):
    """
    Return every non-empty value of one file_metadata column.

    Used by stats processing to recount entities.
    """
    if column not in FILE_METADATA_COLUMNS:
        raise ValueError(f"Unknown metadata column: {column}")

    try:
        conn = get_db_connection()
        if not conn:
            return []

        c = conn.cursor()
        c.execute(f"SELECT {column} FROM file_metadata WHERE {column} IS NOT NULL AND {column} != ''")
        values = [row[0] for row in c.fetchall()]
        conn.close()
        return values

    except Exception as e:
        app_logger.error(f"Failed to read metadata column {column}: {e}")
        return []


def save_entity_stats(entries):
    """
    Store recomputed entity counts.

    Args:
        entries: Iterable of (entity_type, entity_name, file_count)

    Returns:
        True if successful, False otherwise
    """
    try:
        conn = get_db_connection()
        if not conn:
            return False

        c = conn.cursor()
        c.executemany('''
            INSERT OR REPLACE INTO entity_stats (entity_type, entity_name, file_count, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ''', list(entries))

        conn.commit()
        conn.close()
        return True

    except Exception as e:
        app_logger.error(f"Failed to save entity stats: {e}")
        return False


def get_entity_stat(entity_type, entity_name) -> Optional[int]:
    """File count recorded for an entity, or None if never computed."""
    try:
        conn = get_db_connection()
        if not conn:
            return None

        c = conn.cursor()
        c.execute('''
            SELECT file_count FROM entity_stats
            WHERE entity_type = ? AND entity_name = ?
        ''', (entity_type, entity_name))
        row = c.fetchone()
        conn.close()
        return row['file_count'] if row else None

    except Exception as e:
        app_logger.error(f"Failed to get entity stat {entity_type}/{entity_name}: {e}")
        return None


# =============================================================================
# Tag Autocomplete Values
# =============================================================================

def upsert_tag_values(field_type, values):
    """
    Record autocomplete values for a field type (duplicates are ignored).

    Raises:
        sqlite3.Error on database failure
    """
    values = [v for v in values if v]
    if not values:
        return 0

    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.executemany('''
            INSERT OR IGNORE INTO tag_values (field_type, value) VALUES (?, ?)
        ''', [(field_type, v) for v in values])
        conn.commit()
        return len(values)
    finally:
        conn.close()


def search_tag_values(field_type, prefix='', limit=20):
    """Case-insensitive prefix search over recorded tag values."""
    try:
        conn = get_db_connection()
        if not conn:
            return []

        # Escape LIKE wildcards in user input
        escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        c = conn.cursor()
        c.execute('''
            SELECT value FROM tag_values
            WHERE field_type = ? AND value LIKE ? ESCAPE '\\'
            ORDER BY value COLLATE NOCASE
            LIMIT ?
        ''', (field_type, f"{escaped}%", limit))
        values = [row['value'] for row in c.fetchall()]
        conn.close()
        return values

    except Exception as e:
        app_logger.error(f"Failed to search tag values for {field_type}: {e}")
        return []


# =============================================================================
# Cross-Source Mappings
# =============================================================================

MATCH_METHODS = ('auto', 'user', 'api_link')


def _source_key(source):
    return getattr(source, 'value', None) or str(source).strip().lower()


def get_cached_mappings(source, source_id):
    """
    Mappings stored for a series, seen from the queried side.

    A mapping saved as A -> B is returned for both A and B, always with the
    other side in matched_source / matched_source_id.
    """
    source, source_id = _source_key(source), str(source_id)
    try:
        conn = get_db_connection()
        if not conn:
            return []

        c = conn.cursor()
        c.execute('''
            SELECT * FROM cross_source_mappings
            WHERE (primary_source = ? AND primary_source_id = ?)
               OR (matched_source = ? AND matched_source_id = ?)
            ORDER BY confidence DESC, id
        ''', (source, source_id, source, source_id))
        rows = c.fetchall()
        conn.close()

        mappings = []
        for row in rows:
            if row['primary_source'] == source and row['primary_source_id'] == source_id:
                other, other_id = row['matched_source'], row['matched_source_id']
            else:
                other, other_id = row['primary_source'], row['primary_source_id']
            mappings.append({
                "matched_source": other,
                "matched_source_id": other_id,
                "confidence": row['confidence'],
                "match_method": row['match_method'],
                "match_factors": json.loads(row['match_factors']) if row['match_factors'] else None,
                "verified": bool(row['verified']),
            })
        return mappings

    except Exception as e:
        app_logger.error(f"Failed to get cross-source mappings for {source}:{source_id}: {e}")
        return []


def save_cross_source_mapping(primary_source, primary_source_id, matched_source, matched_source_id,
                              confidence, match_method, match_factors=None):
    """
    Insert or update the mapping for (primary_source, primary_source_id, matched_source).

    'user' mappings are stored as verified. A verified mapping is only
    replaced by another 'user' mapping.

    Returns:
        True if the row was written, False if a verified mapping was kept

    Raises:
        ValueError for an unknown match_method, sqlite3.Error on database failure
    """
    if match_method not in MATCH_METHODS:
        raise ValueError(f"Unknown match method: {match_method}")

    verified = 1 if match_method == 'user' else 0
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('''
            INSERT INTO cross_source_mappings
                (primary_source, primary_source_id, matched_source, matched_source_id,
                 confidence, match_method, match_factors, verified)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (primary_source, primary_source_id, matched_source) DO UPDATE SET
                matched_source_id = excluded.matched_source_id,
                confidence = excluded.confidence,
                match_method = excluded.match_method,
                match_factors = excluded.match_factors,
                verified = MAX(cross_source_mappings.verified, excluded.verified),
                updated_at = CURRENT_TIMESTAMP
            WHERE cross_source_mappings.verified = 0 OR excluded.verified = 1
        ''', (_source_key(primary_source), str(primary_source_id),
              _source_key(matched_source), str(matched_source_id),
              float(confidence), match_method,
              json.dumps(match_factors) if match_factors else None, verified))
        conn.commit()
        return c.rowcount > 0
    finally:
        conn.close()


def invalidate_cross_source_mappings(source, source_id):
    """
    Drop every mapping that involves a series, on either side.

    Returns:
        Number of mappings removed

    Raises:
        sqlite3.Error on database failure
    """
    source, source_id = _source_key(source), str(source_id)
    conn = _open_or_raise()
    try:
        c = conn.cursor()
        c.execute('''
            DELETE FROM cross_source_mappings
            WHERE (primary_source = ? AND primary_source_id = ?)
               OR (matched_source = ? AND matched_source_id = ?)
        ''', (source, source_id, source, source_id))
        conn.commit()
        return c.rowcount
    finally:
        conn.close()


def has_cached_mappings_for_all_sources(source, source_id, enabled_sources):
    """True when every enabled source other than `source` has a mapping for the series."""
    source = _source_key(source)
    others = {_source_key(s) for s in enabled_sources} - {source}
    if not others:
        return True

    mapped = {m["matched_source"] for m in get_cached_mappings(source, source_id)}
    return others <= mapped
