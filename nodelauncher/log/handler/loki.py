import sys
import socket
import logging
import requests
import threading
from collections import deque
from nodelauncher.local import app_globals
from typing import Deque, Dict, Any, List, Optional

LOKI_BATCH_SIZE = 200


class LokiHandler(logging.Handler):
    """
    Ships log records to a Grafana Loki instance in batches.

    Chain output carries a ``chain`` stream label so each node's output can be
    queried on its own.
    """

    def __init__(self, url: str, org_id: Optional[str] = None):
        """
        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID sent as 'X-Scope-OrgID'.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.hostname = socket.gethostname()
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.buffer_lock = threading.Lock()
        self.flush_interval = app_globals.LOG_BUFFER_FLUSH_INTERVAL
        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True, name="LokiFlushThread")
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def emit(self, record: logging.LogRecord) -> None:
        """
        Buffers one record as a Loki stream entry.

        :param record: The log record to be processed.
        """
        labels = {
            "job": "nodelauncher",
            "level": record.levelname.lower(),
            "hostname": self.hostname,
        }
        if record.name.startswith("proc."):
            labels["chain"] = record.name[len("proc."):]
            message = record.getMessage()
        else:
            labels["logger"] = record.name
            message = self.format(record)

        entry = {"stream": labels, "values": [[str(int(record.created * 1e9)), message]]}
        with self.buffer_lock:
            self.log_buffer.append(entry)
            if len(self.log_buffer) < LOKI_BATCH_SIZE:
                return
            batch = self._drain_buffer()
        self._send(batch)

    def _drain_buffer(self) -> List[Dict[str, Any]]:
        """Takes the buffered entries. Assumes the buffer lock is held."""
        batch = list(self.log_buffer)
        self.log_buffer.clear()
        return batch

    def _send(self, batch: List[Dict[str, Any]]) -> None:
        if not batch:
            return
        headers = {'Content-Type': 'application/json'}
        if self.org_id:
            headers['X-Scope-OrgID'] = self.org_id
        try:
            response = requests.post(self.url, json={"streams": batch}, headers=headers, timeout=5)
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(batch)} logs to Loki: {e}", file=sys.stderr)
            return
        # 204 No Content is the success status for Loki push
        if response.status_code != 204:
            print(f"Loki returned non-204 status: {response.status_code} - {response.text}", file=sys.stderr)

    def flush(self) -> None:
        with self.buffer_lock:
            batch = self._drain_buffer()
        self._send(batch)

    def close(self) -> None:
        """Stops the flush thread after a final push."""
        self.stop_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        super().close()
