"""
Download & extraction engine: resumable transfers, archive extraction behind a
single-slot queue, and the coordinator that owns per-chain download state.
"""

from .transfer import Transfer, TransferProgress
from .extractor import Extractor, ExtractionTask
from .extraction_queue import ExtractionQueue
from .timestamps import DownloadTimestamps
from .coordinator import DownloadCoordinator, DownloadState

__all__ = [
    "Transfer", "TransferProgress", "Extractor", "ExtractionTask", "ExtractionQueue",
    "DownloadTimestamps", "DownloadCoordinator", "DownloadState",
]
