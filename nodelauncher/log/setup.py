import sys
import logging

from nodelauncher.local import app_globals as config
from nodelauncher.log.handler import SQLiteHandler, LokiHandler

# Chain output is logged under 'proc.<chain_id>' by the process supervisor.
CHAIN_LOGGER_PREFIX = "proc."


def chain_id_for(record: logging.LogRecord) -> str:
    """Returns the chain id of a chain-output record, or an empty string."""
    if record.name.startswith(CHAIN_LOGGER_PREFIX):
        return record.name[len(CHAIN_LOGGER_PREFIX):]
    return ""


class MainFormatter(logging.Formatter):
    """Formats launcher records normally and prefixes raw chain output with its chain id."""

    def __init__(self):
        super().__init__('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s')

    def format(self, record):
        chain_id = chain_id_for(record)
        if chain_id:
            return f"[{chain_id}] {record.getMessage()}"
        return super().format(record)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the launcher.
    This sets up handlers for console, SQLite, and optionally Loki,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    config.LOG_DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- SQLite Handler (always enabled for all levels) ---
    try:
        sqlite_handler = SQLiteHandler(db_path=config.LOG_DB_PATH)
        sqlite_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(sqlite_handler)
    except Exception as e:
        root_logger.error(f"Failed to initialize SQLite logging handler: {e}. Logging to DB will be disabled.")

    # --- Loki Handler (conditional) ---
    if config.LOKI_ENABLED:
        loki_handler = LokiHandler(url=config.LOKI_URL, org_id=config.LOKI_ORG_ID)
        loki_handler.setLevel(logging.INFO)
        root_logger.addHandler(loki_handler)
        root_logger.info(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")

    # aiohttp logs every connection detail at DEBUG; keep it out of the log database.
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
