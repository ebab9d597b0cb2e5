"""Download, launch and supervise a local set of dependent node binaries."""

__version__ = "0.1.0"
