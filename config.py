import configparser
import threading
import os
import time
from dataclasses import dataclass
from typing import List
from app_logging import app_logger, set_debug_logging

# Use /config volume if it exists (Docker), otherwise use current directory
CONFIG_DIR = os.environ.get('CONFIG_DIR', '/config' if os.path.exists('/config') else os.getcwd())
# Ensure config directory exists
os.makedirs(CONFIG_DIR, exist_ok=True)
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.ini")

# Use RawConfigParser to allow special characters like % in values (no interpolation)
config = configparser.RawConfigParser()
config.optionxform = str  # Preserve case sensitivity

KNOWN_SOURCES = ("comicvine", "metron", "gcd", "anilist", "mal")

DEFAULT_SETTINGS = {
    "CACHE_DIR": "/cache",
    "ENABLE_DEBUG_LOGGING": "False",
    "METADATA_PRIMARY_SOURCE": "comicvine",
    "METADATA_SOURCE_PRIORITY": "comicvine,metron,gcd,anilist,mal",
    "METADATA_AUTO_MATCH_THRESHOLD": "0.95",
    "INVALIDATION_WORKERS": "4",
    "STATS_PROCESSING_INTERVAL": "300",
    "COMICVINE_API_KEY": "",
    "METRON_USERNAME": "",
    "METRON_PASSWORD": "",
}


@dataclass(frozen=True)
class MetadataSettings:
    """Source selection settings handed to the merge engine."""
    primary_source: str = "comicvine"
    source_priority: tuple = ("comicvine", "metron", "gcd", "anilist", "mal")
    auto_match_threshold: float = 0.95

    @property
    def priority_order(self) -> List[str]:
        """Priority list, falling back to the primary source alone."""
        if self.source_priority:
            return list(self.source_priority)
        return [self.primary_source]


def write_config():
    """Writes the current in-memory config object to config.ini."""
    config.optionxform = str  # Preserve case sensitivity
    with open(CONFIG_FILE, "w") as configfile:
        config.write(configfile)


def load_config():
    """
    Loads or (if missing) creates the config file, ensuring
    that the [SETTINGS] section exists.
    """
    app_logger.debug(f"📁 Config file location: {CONFIG_FILE}")

    if not os.path.exists(CONFIG_FILE):
        # Create a default config.ini if none exists
        config["SETTINGS"] = dict(DEFAULT_SETTINGS)
        write_config()
    else:
        config.read(CONFIG_FILE)

        if "SETTINGS" not in config:
            config["SETTINGS"] = {}

        # Migrate/add any missing keys with defaults (preserves existing values)
        missing_keys = []
        for key, default_value in DEFAULT_SETTINGS.items():
            if key not in config["SETTINGS"]:
                config["SETTINGS"][key] = default_value
                missing_keys.append(key)

        if missing_keys:
            app_logger.info(f"🔄 Migrated {len(missing_keys)} new config keys: {', '.join(missing_keys)}")
            write_config()
        else:
            app_logger.debug("✅ Config file loaded successfully (no migration needed)")

    set_debug_logging(config.getboolean("SETTINGS", "ENABLE_DEBUG_LOGGING", fallback=False))


def parse_source_list(value):
    """Split a comma-separated source list, dropping unknown and duplicate names."""
    sources = []
    for item in (value or "").split(","):
        name = item.strip().lower()
        if not name:
            continue
        if name not in KNOWN_SOURCES:
            app_logger.warning(f"Ignoring unknown metadata source in config: {name}")
            continue
        if name not in sources:
            sources.append(name)
    return sources


def get_metadata_settings():
    """
    Build a MetadataSettings object from the [SETTINGS] section.

    Returns a fresh object each call so callers never share mutable state.
    """
    primary = config.get("SETTINGS", "METADATA_PRIMARY_SOURCE", fallback="comicvine").strip().lower()
    if primary not in KNOWN_SOURCES:
        app_logger.warning(f"Unknown METADATA_PRIMARY_SOURCE '{primary}', using comicvine")
        primary = "comicvine"

    priority = parse_source_list(config.get("SETTINGS", "METADATA_SOURCE_PRIORITY", fallback=""))
    return MetadataSettings(primary_source=primary, source_priority=tuple(priority),
                            auto_match_threshold=get_auto_match_threshold())


def get_auto_match_threshold():
    """Confidence (0..1) at which a cross-source match is accepted without review."""
    try:
        threshold = config.getfloat("SETTINGS", "METADATA_AUTO_MATCH_THRESHOLD", fallback=0.95)
    except ValueError:
        threshold = 0.95
    return max(0.0, min(threshold, 1.0))


def get_invalidation_workers():
    """Worker pool size for batch invalidation (clamped to 1..8)."""
    try:
        workers = config.getint("SETTINGS", "INVALIDATION_WORKERS", fallback=4)
    except ValueError:
        workers = 4
    return max(1, min(workers, 8))


def load_flask_config(app, logger=None):
    """
    Helper function to populate a Flask app's config with
    the latest [SETTINGS] from config.ini.
    """
    load_config()

    if logger:
        logger.info("Loading config file values...")

    settings = config["SETTINGS"] if "SETTINGS" in config else {}

    app.config["CACHE_DIR"] = settings.get("CACHE_DIR", "/cache")
    app.config["ENABLE_DEBUG_LOGGING"] = config.getboolean("SETTINGS", "ENABLE_DEBUG_LOGGING", fallback=False)
    app.config["METADATA_SETTINGS"] = get_metadata_settings()
    app.config["INVALIDATION_WORKERS"] = get_invalidation_workers()
    app.config["STATS_PROCESSING_INTERVAL"] = config.getint("SETTINGS", "STATS_PROCESSING_INTERVAL", fallback=300)

    if logger:
        logger.info(f"Metadata source priority: {', '.join(app.config['METADATA_SETTINGS'].priority_order)}")


def monitor_config(interval=5):
    """
    Background thread to watch config.ini for changes.
    If modified, automatically reloads the in-memory 'config' object.
    """
    last_mtime = os.path.getmtime(CONFIG_FILE) if os.path.exists(CONFIG_FILE) else None

    while True:
        time.sleep(interval)
        try:
            current_mtime = os.path.getmtime(CONFIG_FILE)
            if last_mtime is None or current_mtime != last_mtime:
                load_config()
                last_mtime = current_mtime
                app_logger.debug(f"Config file reloaded at: {time.ctime(last_mtime)}")
        except FileNotFoundError:
            app_logger.info(f"Warning: {CONFIG_FILE} not found.")
            last_mtime = None  # Reset because file may appear later


# Start monitoring config.ini in the background
thread = threading.Thread(target=monitor_config, args=(5,), daemon=True)
thread.start()

# Initial config load
load_config()
