"""
Local package for the node launcher.

This package provides application-level global configuration through the
app_globals singleton, plus the download, supervision and console subsystems.
"""

from .global_config import app_globals

__all__ = ["app_globals"]
