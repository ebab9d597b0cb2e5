"""
Exception types raised inside the launcher core.

Command-level callers never see these directly: the ChainManager converts them
into ``{"success": False, "error": ...}`` results.
"""


class LauncherError(Exception):
    """Base class for every error raised by the launcher."""


class ChainConfigError(LauncherError):
    """The chain table is malformed or does not cover the current platform."""


class TransferError(LauncherError):
    """A download failed. ``retriable`` marks transient network failures."""

    def __init__(self, message: str, retriable: bool = False):
        super().__init__(message)
        self.retriable = retriable


class ExtractionError(LauncherError):
    """An archive could not be unpacked."""


class SpawnError(LauncherError):
    """A chain binary could not be launched."""


class ControlError(LauncherError):
    """A request to a chain's control endpoint failed."""


class DependencyError(LauncherError):
    """A start or stop request would break the dependency invariant."""
