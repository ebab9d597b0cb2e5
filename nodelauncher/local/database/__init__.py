"""
This module initializes the local database management system.
"""

from .log import LogDBManager

__all__ = ["LogDBManager"]
