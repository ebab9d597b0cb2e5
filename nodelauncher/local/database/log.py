import time
import sqlite3
import logging
from pathlib import Path
from collections import namedtuple
from typing import List, Dict, Any, Optional
from nodelauncher.local.database.base import BaseDBManager

LogEntry = namedtuple('LogEntry', ['timestamp', 'level', 'source', 'chain', 'message'])
log = logging.getLogger(__name__)


class LogDBManager(BaseDBManager):
    """
    Manages the launcher's logging SQLite database.

    Launcher records and chain output share one table; chain output rows carry
    the chain id in the ``chain`` column so they can be filtered per chain.
    """

    def __init__(self, db_path: Path):
        """
        :param db_path: The path to the logging SQLite database file.
        """
        super().__init__(db_path, lock=None, enable_wal=True)

    def initialize_database(self) -> None:
        """Ensures the log table and its chain index exist."""
        try:
            self.execute('''
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL,
                    level TEXT,
                    source TEXT,
                    chain TEXT,
                    message TEXT
                )
            ''')
            self.execute("CREATE INDEX IF NOT EXISTS idx_logs_chain ON logs (chain, timestamp)")
            log.debug("Log database tables created/verified.")
        except sqlite3.Error as e:
            log.critical(f"Could not create log database tables: {e}", exc_info=True)
            raise

    def insert_log_batch(self, log_entries: List[Dict[str, Any]]) -> None:
        """
        Inserts multiple log entries in a single transaction.

        :param log_entries: Dicts with keys timestamp, level, source, chain and message.
        """
        if not log_entries:
            return

        params = [(
            entry['timestamp'],
            entry['level'],
            entry['source'],
            entry.get('chain'),
            entry['message']
        ) for entry in log_entries]
        try:
            self.execute_many(
                'INSERT INTO logs (timestamp, level, source, chain, message) VALUES (?, ?, ?, ?, ?)',
                params
            )
        except sqlite3.Error as e:
            log.error(f"Failed to insert log batch of {len(log_entries)} entries: {e}", exc_info=True)
            raise

    def fetch_last_entries(self, limit: int, chain: Optional[str] = None, include_debug: bool = False) -> List[LogEntry]:
        """
        Fetches the most recent log entries, oldest first.

        :param limit: The maximum number of log entries to retrieve.
        :param chain: Only return output captured from this chain.
        :param include_debug: Whether DEBUG records are included.
        :return list: A list of LogEntry namedtuples.
        """
        clauses, params = [], []
        if chain:
            clauses.append("chain = ?")
            params.append(chain)
        if not include_debug:
            clauses.append("level != 'DEBUG'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        entries = []
        try:
            rows = self.fetch_all(
                f"SELECT timestamp, level, source, chain, message FROM logs {where} ORDER BY id DESC LIMIT ?",
                tuple(params) + (limit,)
            )
        except sqlite3.Error as e:
            log.error(f"Failed to fetch log entries from database: {e}")
            return entries

        for row in reversed(rows):
            dt = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(row['timestamp']))
            if row['chain']:
                text = f"{dt} - [{row['chain']}] {row['message']}"
            else:
                text = f"{dt} - {row['level']:<8} - [{row['source']}] - {row['message']}"
            entries.append(LogEntry(
                timestamp=row['timestamp'], level=row['level'], source=row['source'],
                chain=row['chain'], message=text
            ))
        return entries
