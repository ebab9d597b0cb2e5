"""
This module contains almost all the configuration settings for the node launcher.
It defines paths, download and supervision timings, logging configuration and the
runtime-modifiable settings used by the 'config' console command.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
PACKAGE_DIR = pathlib.Path(__file__).resolve().parent
HOME_DIR = pathlib.Path(os.getenv("NODELAUNCHER_HOME_DIR", str(pathlib.Path.home())))
USER_DATA_DIR = pathlib.Path(os.getenv("NODELAUNCHER_DATA_DIR", str(HOME_DIR / ".nodelauncher")))
DOWNLOADS_DIR = pathlib.Path(os.getenv("NODELAUNCHER_DOWNLOADS_DIR", str(HOME_DIR / "Downloads")))
LOGS_DIR = USER_DATA_DIR / "logs"

#* --- Application File Paths ---
CHAIN_CONFIG_PATH = pathlib.Path(os.getenv("NODELAUNCHER_CHAIN_CONFIG", str(PACKAGE_DIR / "chain_config.json")))
DOWNLOAD_TIMESTAMPS_PATH = USER_DATA_DIR / "downloads.json"
OVERRIDES_JSON_PATH = USER_DATA_DIR / "overrides.json"
LOG_DB_PATH = LOGS_DIR / "launcher_logs.db"

#* --- Release Lookup ---
GITHUB_API_URL = os.getenv("NODELAUNCHER_GITHUB_API_URL", "https://api.github.com")
RELEASE_LOOKUP_TIMEOUT = 10  # seconds
USER_AGENT = "nodelauncher/0.1"

#* --- Download Settings ---
DOWNLOAD_CHUNK_SIZE = 64 * 1024
DOWNLOAD_CONNECT_TIMEOUT = 30     # seconds
DOWNLOAD_READ_TIMEOUT = 60        # seconds without data before the transfer fails
PROGRESS_EMIT_INTERVAL = 0.25     # at most 4 progress notifications per second

#* --- Supervisor Settings ---
READINESS_POLL_INTERVAL = 1.0     # seconds between control-endpoint probes
RPC_TIMEOUT = 5                   # seconds for a single control request
GRACEFUL_STOP_TIMEOUT = 15        # seconds to wait for exit after a stop request
TERMINATE_TIMEOUT = 5             # seconds to wait after SIGTERM before killing
KILL_TIMEOUT = 3                  # seconds to wait for exit after a kill
APP_BUNDLE_POLL_INTERVAL = 2.0    # seconds between process-table scans for app bundles
SYNC_POLL_INTERVAL = 1.0          # seconds between initial block download checks
DEPENDENCY_POLL_INTERVAL = 0.5    # seconds between dependency readiness checks
SHUTDOWN_TIMEOUT = 10             # overall budget before every process is force-killed

#* --- Loki (optional log shipping) ---
LOKI_ENABLED = os.getenv("LOKI_ENABLED", "False").lower() in ('true', '1', 't')
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")

#* --- Application variables ---
VERBOSE_LOGGING = False

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config' command) ---
MODIFIABLE_SETTINGS = {
    # Downloads
    "DOWNLOAD_MAX_RETRIES", "DOWNLOAD_RETRY_DELAY",
    # Supervision
    "READINESS_TIMEOUT", "DEPENDENCY_WAIT_TIMEOUT",
    # Logging
    "LOG_BUFFER_SIZE", "LOG_BUFFER_FLUSH_INTERVAL",
    "MAX_LOG_DB_SIZE_MB", "LOG_DB_SIZE_CHECK_INTERVAL_SECONDS", "LOG_HISTORY_COUNT",
}

#* --- Default Values for Modifiable Settings ---
DOWNLOAD_MAX_RETRIES = 3
DOWNLOAD_RETRY_DELAY = 2.0        # seconds, multiplied by the attempt number
READINESS_TIMEOUT = 120           # seconds before readiness probing gives up
DEPENDENCY_WAIT_TIMEOUT = 180     # seconds a dependent waits for its dependencies
LOG_BUFFER_SIZE = 100
LOG_BUFFER_FLUSH_INTERVAL = 10
MAX_LOG_DB_SIZE_MB = 100
LOG_DB_SIZE_CHECK_INTERVAL_SECONDS = 12 * 3600  # 12 hours
LOG_HISTORY_COUNT = 50
