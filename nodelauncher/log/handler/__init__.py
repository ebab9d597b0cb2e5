"""
Logging handlers for the launcher: a buffered SQLite store and an optional
Grafana Loki shipper.
"""

from .loki import LokiHandler
from .sql import SQLiteHandler

__all__ = ["SQLiteHandler", "LokiHandler"]
