import time
import asyncio
import logging
import aiohttp
from pathlib import Path
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import TransferError

log = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_PARTIAL_CONTENT = 206
HTTP_RANGE_NOT_SATISFIABLE = 416


@dataclass
class TransferProgress:
    downloaded_bytes: int
    # 0 until the server has announced a length.
    total_bytes: int


class Transfer:
    """
    Resumable HTTP download of one URL into one file.

    ``fetch`` is an async generator of progress snapshots. Cancelling the task
    that iterates it aborts the connection and closes the file; bytes already
    written stay on disk so a later call can resume from the file size.
    """

    def __init__(self, chunk_size: Optional[int] = None, connect_timeout: Optional[float] = None,
                 read_timeout: Optional[float] = None, progress_interval: Optional[float] = None):
        self.chunk_size = chunk_size or app_globals.DOWNLOAD_CHUNK_SIZE
        self.connect_timeout = connect_timeout or app_globals.DOWNLOAD_CONNECT_TIMEOUT
        self.read_timeout = read_timeout or app_globals.DOWNLOAD_READ_TIMEOUT
        self.progress_interval = app_globals.PROGRESS_EMIT_INTERVAL if progress_interval is None else progress_interval
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": app_globals.USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=None, connect=self.connect_timeout, sock_read=self.read_timeout),
            )
        return self._session

    async def close(self) -> None:
        """Closes the pooled HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch(self, url: str, dest_path: Path, resume_from: int = 0) -> AsyncIterator[TransferProgress]:
        """
        Downloads ``url`` into ``dest_path``.

        :param url: Source URL.
        :param dest_path: File receiving the body.
        :param resume_from: Bytes already on disk; sent as a Range request and appended to.
        :return: An async iterator of TransferProgress, throttled to one per progress interval.
        :raises TransferError: On HTTP errors, network failures or a short body.
        """
        headers = {}
        if resume_from > 0:
            headers["Range"] = f"bytes={resume_from}-"
            log.info(f"Resuming download of {url} from byte {resume_from}")
        else:
            log.info(f"Downloading {url}")

        session = await self._get_session()
        try:
            async with session.get(url, headers=headers) as response:
                downloaded = self._starting_offset(response.status, url, resume_from)
                content_length = response.content_length
                total = content_length + downloaded if content_length is not None else 0

                with open(dest_path, "ab" if downloaded else "wb") as fh:
                    if downloaded:
                        fh.truncate(downloaded)
                    yield TransferProgress(downloaded, total)
                    last_emit = time.monotonic()

                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        fh.write(chunk)
                        downloaded += len(chunk)
                        now = time.monotonic()
                        if now - last_emit >= self.progress_interval:
                            last_emit = now
                            yield TransferProgress(downloaded, total)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransferError(f"Download error: {str(e) or type(e).__name__}", retriable=True) from e

        if total and downloaded != total:
            raise TransferError(f"Incomplete download: expected {total} bytes, got {downloaded} bytes", retriable=True)
        log.debug(f"Finished downloading {url} ({downloaded} bytes)")
        yield TransferProgress(downloaded, total or downloaded)

    @staticmethod
    def _starting_offset(status: int, url: str, resume_from: int) -> int:
        """Maps the response status to the byte offset writing starts at."""
        if status == HTTP_PARTIAL_CONTENT:
            return resume_from
        if status == HTTP_OK:
            if resume_from > 0:
                log.warning(f"Server ignored the range request for {url}; restarting from byte 0")
            return 0
        if status == HTTP_RANGE_NOT_SATISFIABLE:
            raise TransferError(f"Requested range not satisfiable for {url} (resume from byte {resume_from})")
        raise TransferError(f"Download error: HTTP {status} for {url}", retriable=status >= 500)
