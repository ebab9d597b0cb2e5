import sqlite3
import logging
import threading
from pathlib import Path
from typing import List, Dict, Any, Optional
from nodelauncher.local import app_globals
from nodelauncher.local.database import LogDBManager


class SQLiteHandler(logging.Handler):
    """
    A logging handler that buffers records and writes them to the log
    database in batches from a background thread.
    """

    def __init__(self, db_path: Path):
        """
        :param db_path: The path to the SQLite database file.
        """
        super().__init__()
        self.db_path = db_path
        self.log_buffer: List[Dict[str, Any]] = []
        self.buffer_lock = threading.Lock()
        self.stop_event = threading.Event()
        self.max_db_size_mb = app_globals.MAX_LOG_DB_SIZE_MB
        self.log_db = LogDBManager(self.db_path)
        self.log_db.initialize_database()
        self.flush_thread = self._start_thread(self._periodic_flush, "SQLiteFlushThread")
        self.size_check_thread: Optional[threading.Thread] = self._start_thread(
            self._periodic_db_size_check, "LogDbSizeCheckThread"
        )

    @staticmethod
    def _start_thread(target, name: str) -> threading.Thread:
        thread = threading.Thread(target=target, daemon=True, name=name)
        thread.start()
        return thread

    def _periodic_flush(self) -> None:
        """Flushes the buffer every LOG_BUFFER_FLUSH_INTERVAL seconds until stopped."""
        while not self.stop_event.wait(app_globals.LOG_BUFFER_FLUSH_INTERVAL):
            self.flush()
        self.flush()

    def emit(self, record: logging.LogRecord) -> None:
        """
        Adds a record to the buffer, flushing once LOG_BUFFER_SIZE is reached.

        :param record: The log record to be processed.
        """
        if record.name.startswith("proc."):
            chain = record.name[len("proc."):]
            source = "stderr" if record.levelno >= logging.WARNING else "stdout"
        else:
            chain = None
            source = record.name

        entry = {
            "timestamp": record.created,
            "level": record.levelname,
            "source": source,
            "chain": chain,
            "message": record.getMessage(),
        }
        with self.buffer_lock:
            self.log_buffer.append(entry)
            if len(self.log_buffer) < app_globals.LOG_BUFFER_SIZE:
                return
            entries = self._drain_buffer()
        self._write(entries)

    def _drain_buffer(self) -> List[Dict[str, Any]]:
        """Takes the buffered entries. Assumes the buffer lock is held."""
        entries = list(self.log_buffer)
        self.log_buffer.clear()
        return entries

    def _write(self, entries: List[Dict[str, Any]]) -> None:
        if not entries:
            return
        try:
            self.log_db.insert_log_batch(entries)
        except sqlite3.Error as e:
            # Logging here would recurse into this handler.
            print(f"Error writing logs to DB: {e}. Log entries: {len(entries)}")

    def flush(self) -> None:
        """Writes everything currently buffered."""
        with self.buffer_lock:
            entries = self._drain_buffer()
        self._write(entries)

    def _periodic_db_size_check(self) -> None:
        """Warns when the log database grows past MAX_LOG_DB_SIZE_MB."""
        logger = logging.getLogger(__name__)
        while not self.stop_event.wait(app_globals.LOG_DB_SIZE_CHECK_INTERVAL_SECONDS):
            try:
                size_mb = self.db_path.stat().st_size / (1024 * 1024)
            except FileNotFoundError:
                continue
            if size_mb > self.max_db_size_mb:
                logger.warning(
                    f"Log database file '{self.db_path}' size ({size_mb:.2f} MB) "
                    f"exceeds configured limit ({self.max_db_size_mb} MB)."
                )

    def close(self) -> None:
        """Stops the background threads and writes any remaining records."""
        self.stop_event.set()
        for thread in (self.flush_thread, self.size_check_thread):
            if thread and thread.is_alive():
                thread.join(timeout=5)
        self.flush()
        super().close()
