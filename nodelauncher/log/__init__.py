"""
Logging module for the launcher.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
