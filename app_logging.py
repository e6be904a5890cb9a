import logging
import os
from logging.handlers import RotatingFileHandler

# Logs live next to config.ini so a Docker /config volume keeps them
CONFIG_DIR = os.environ.get('CONFIG_DIR', '/config' if os.path.exists('/config') else os.getcwd())
LOG_DIR = os.path.join(CONFIG_DIR, "logs")
os.makedirs(LOG_DIR, exist_ok=True)
LOG_FILE = os.path.join(LOG_DIR, "app.log")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

app_logger = logging.getLogger("clu_metadata")
app_logger.setLevel(logging.INFO)
app_logger.propagate = False

if not app_logger.handlers:
    _file_handler = RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    _file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    app_logger.addHandler(_file_handler)

    _console_handler = logging.StreamHandler()
    _console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    app_logger.addHandler(_console_handler)


def set_debug_logging(enabled):
    """Switch the app logger between DEBUG and INFO."""
    app_logger.setLevel(logging.DEBUG if enabled else logging.INFO)
