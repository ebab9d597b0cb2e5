import asyncio
import logging
from pathlib import Path
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import ChainConfigError, LauncherError, TransferError
from nodelauncher.local.events import (
    EventBus, DownloadStarted, DownloadsUpdate, DownloadComplete, DownloadError, finite_number
)
from nodelauncher.local.downloads.transfer import Transfer, TransferProgress
from nodelauncher.local.downloads.timestamps import DownloadTimestamps
from nodelauncher.local.downloads.extraction_queue import ExtractionQueue
from nodelauncher.local.downloads.extractor import (
    ARCHIVE_BINARY, ExtractionTask, archive_kind_for_url, temp_file_name, TEMP_SUFFIXES
)

log = logging.getLogger(__name__)

STATUS_DOWNLOADING = "downloading"
STATUS_EXTRACTING = "extracting"
STATUS_PAUSED = "paused"


@dataclass
class DownloadState:
    chain_id: str
    url: str
    dest_dir: Path
    temp_path: Path
    kind: str
    binary_path: Optional[Path] = None
    app_bundle: Optional[str] = None
    status: str = STATUS_DOWNLOADING
    downloaded_bytes: int = 0
    total_bytes: int = 0
    progress: float = 0.0
    retry_count: int = 0
    # Cancel handle for the in-flight pipeline.
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "status": self.status,
            "progress": finite_number(self.progress),
            "downloaded_bytes": finite_number(self.downloaded_bytes),
            "total_bytes": finite_number(self.total_bytes),
            "retry_count": self.retry_count,
        }


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


class DownloadCoordinator:
    """
    Owns every in-flight and paused download and drives each one through
    Transfer, installation or extraction, and completion bookkeeping.

    At most one DownloadState exists per chain. Every state change is followed
    by a ``downloads-update`` snapshot of all active and paused downloads.
    Failures never escape the coordinator: they remove the state, delete the
    temp file and publish ``download-error`` with the raw message.
    """

    def __init__(self, events: EventBus, extraction_queue: ExtractionQueue,
                 transfer: Optional[Transfer] = None, timestamps: Optional[DownloadTimestamps] = None,
                 max_retries: Optional[int] = None, retry_delay: Optional[float] = None):
        self.events = events
        self.extraction_queue = extraction_queue
        self.transfer = transfer or Transfer()
        self.timestamps = timestamps or DownloadTimestamps(app_globals.DOWNLOAD_TIMESTAMPS_PATH)
        self.max_retries = app_globals.DOWNLOAD_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = app_globals.DOWNLOAD_RETRY_DELAY if retry_delay is None else retry_delay
        self._active: Dict[str, DownloadState] = {}
        self._paused: Dict[str, DownloadState] = {}

    #* --- Queries ---
    def has_download(self, chain_id: str) -> bool:
        return chain_id in self._active or chain_id in self._paused

    def get_downloads(self) -> List[Dict[str, Any]]:
        """Snapshot of active downloads followed by paused ones."""
        return [state.to_dict() for state in (*self._active.values(), *self._paused.values())]

    def _broadcast(self) -> None:
        self.events.publish(DownloadsUpdate(downloads=self.get_downloads()))

    def _owns(self, state: DownloadState) -> bool:
        return self._active.get(state.chain_id) is state

    #* --- Commands ---
    def start_download(self, chain_id: str, url: str, dest_dir: Path, *, is_direct_binary: bool = False,
                       binary_name: Optional[str] = None, app_bundle: Optional[str] = None) -> bool:
        """
        Starts downloading a chain into ``dest_dir``. Must be called from the event loop.

        :param chain_id: The chain being downloaded.
        :param url: Where the archive or binary lives.
        :param dest_dir: The chain's install directory; also holds the temp file.
        :param is_direct_binary: The URL is the binary itself, not an archive.
        :param binary_name: Path of the binary inside ``dest_dir`` for direct binaries.
        :param app_bundle: Bundle name for chains unpacked as macOS app bundles.
        :return: False if a download for the chain is already active or paused.
        :raises ChainConfigError: If a direct-binary chain has no binary name.
        """
        if self.has_download(chain_id):
            log.debug(f"Download for '{chain_id}' already tracked; ignoring start request")
            return False
        if is_direct_binary and not binary_name:
            raise ChainConfigError(f"No binary configured for direct download of '{chain_id}' on this platform")

        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        kind = ARCHIVE_BINARY if is_direct_binary else archive_kind_for_url(url)
        state = DownloadState(
            chain_id=chain_id, url=url, dest_dir=dest_dir,
            temp_path=dest_dir / temp_file_name(chain_id, kind), kind=kind,
            binary_path=dest_dir / binary_name if is_direct_binary else None,
            app_bundle=app_bundle,
        )
        self._active[chain_id] = state
        log.info(f"Starting download for '{chain_id}' from {url}")
        self.events.publish(DownloadStarted(chain_id=chain_id))
        state.task = asyncio.get_running_loop().create_task(self._run(state, 0), name=f"download-{chain_id}")
        self._broadcast()
        return True

    async def pause_download(self, chain_id: str) -> bool:
        """
        Pauses a download that is still transferring. Bytes on disk are kept.

        :return: False if the chain is not downloading (unknown, paused or extracting).
        """
        state = self._active.get(chain_id)
        if state is None or state.status != STATUS_DOWNLOADING:
            return False
        del self._active[chain_id]
        state.status = STATUS_PAUSED
        self._paused[chain_id] = state
        await self._cancel(state)
        log.info(f"Paused download for '{chain_id}' at {state.downloaded_bytes} bytes")
        self._broadcast()
        return True

    def resume_download(self, chain_id: str) -> bool:
        """
        Resumes a paused download from the number of bytes already on disk.

        :return: False if the chain has no paused download.
        """
        state = self._paused.pop(chain_id, None)
        if state is None:
            return False
        offset = _file_size(state.temp_path)
        state.status = STATUS_DOWNLOADING
        state.downloaded_bytes = offset
        self._active[chain_id] = state
        log.info(f"Resuming download for '{chain_id}' from byte {offset}")
        state.task = asyncio.get_running_loop().create_task(self._run(state, offset), name=f"download-{chain_id}")
        self._broadcast()
        return True

    async def pause_all(self) -> None:
        """Pauses every download that is still transferring."""
        for chain_id in list(self._active):
            await self.pause_download(chain_id)

    async def cleanup_chain(self, chain_id: str, dest_dir: Optional[Path] = None) -> None:
        """
        Cancels and forgets a chain's download, waits out an extraction already
        writing into its directory, then deletes its temp files best-effort.

        :param chain_id: The chain to clean up.
        :param dest_dir: Install directory to sweep for leftover temp files.
        """
        state = self._active.pop(chain_id, None) or self._paused.pop(chain_id, None)
        paths = set()
        if state is not None:
            await self._cancel(state)
            await self.extraction_queue.wait_for_chain(chain_id)
            paths.add(state.temp_path)
        if dest_dir is not None:
            paths.update(Path(dest_dir) / f"temp_{chain_id}{suffix}" for suffix in TEMP_SUFFIXES.values())

        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                log.warning(f"Could not delete temp file '{path}' for '{chain_id}': {e}")
        log.debug(f"Cleaned up download state for '{chain_id}'")
        self._broadcast()

    async def cleanup_all(self) -> None:
        for chain_id in [*self._active, *self._paused]:
            await self.cleanup_chain(chain_id)

    async def wait_idle(self) -> None:
        """Waits until no download pipeline is running."""
        while True:
            tasks = [state.task for state in self._active.values() if state.task and not state.task.done()]
            if not tasks:
                return
            await asyncio.wait(tasks)

    #* --- Pipeline ---
    @staticmethod
    async def _cancel(state: DownloadState) -> None:
        """Cancels the pipeline task and waits until it has closed its file."""
        task, state.task = state.task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    async def _run(self, state: DownloadState, resume_from: int) -> None:
        try:
            await self._transfer(state, resume_from)
            await self._install(state)
        except asyncio.CancelledError:
            log.debug(f"Download pipeline for '{state.chain_id}' cancelled")
            raise
        except Exception as e:
            log.error(f"Download for '{state.chain_id}' failed: {e}", exc_info=not isinstance(e, (LauncherError, OSError)))
            self._fail(state, str(e))
        else:
            self._complete(state)

    async def _transfer(self, state: DownloadState, resume_from: int) -> None:
        """Runs the Transfer, retrying transient failures from the bytes on disk."""
        offset = resume_from
        while True:
            try:
                async with aclosing(self.transfer.fetch(state.url, state.temp_path, offset)) as stream:
                    async for progress in stream:
                        self._on_progress(state, progress)
                return
            except TransferError as e:
                if not e.retriable or state.retry_count >= self.max_retries:
                    raise
                state.retry_count += 1
                delay = self.retry_delay * state.retry_count
                log.warning(
                    f"Download for '{state.chain_id}' interrupted ({e}); "
                    f"retry {state.retry_count}/{self.max_retries} in {delay:.1f}s"
                )
                self._broadcast()
                await asyncio.sleep(delay)
                offset = _file_size(state.temp_path)

    def _on_progress(self, state: DownloadState, progress: TransferProgress) -> None:
        state.downloaded_bytes = progress.downloaded_bytes
        state.total_bytes = progress.total_bytes
        state.progress = progress.downloaded_bytes / progress.total_bytes * 100 if progress.total_bytes else 0.0
        self._broadcast()

    async def _install(self, state: DownloadState) -> None:
        if state.kind == ARCHIVE_BINARY:
            self.extraction_queue.extractor.install_binary(state.temp_path, state.binary_path)
            return
        state.status = STATUS_EXTRACTING
        self._broadcast()
        await self.extraction_queue.enqueue(ExtractionTask(
            chain_id=state.chain_id, archive_path=state.temp_path, dest_dir=state.dest_dir,
            kind=state.kind, app_bundle=state.app_bundle,
        ))
        state.temp_path.unlink(missing_ok=True)

    def _complete(self, state: DownloadState) -> None:
        if not self._owns(state):
            return
        self.timestamps.set(state.chain_id)
        del self._active[state.chain_id]
        log.info(f"Download complete for '{state.chain_id}'")
        self.events.publish(DownloadComplete(chain_id=state.chain_id))
        self._broadcast()

    def _fail(self, state: DownloadState, message: str) -> None:
        if not self._owns(state):
            return
        del self._active[state.chain_id]
        try:
            state.temp_path.unlink(missing_ok=True)
        except OSError as e:
            log.warning(f"Failed to delete partial download for '{state.chain_id}': {e}")
        self._broadcast()
        self.events.publish(DownloadError(chain_id=state.chain_id, error=message))
