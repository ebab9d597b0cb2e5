import asyncio
import logging
from collections import deque
from typing import Deque, Optional, Tuple
from nodelauncher.local.downloads.extractor import Extractor, ExtractionTask

log = logging.getLogger(__name__)


class ExtractionQueue:
    """
    FIFO of extraction tasks with exactly one extraction active at a time.

    Parallel extraction of large archives competes for disk and CPU with the
    downloads still in flight, so every chain's extraction goes through here.
    """

    def __init__(self, extractor: Extractor):
        self.extractor = extractor
        self._pending: Deque[Tuple[ExtractionTask, asyncio.Future]] = deque()
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self._active: Optional[ExtractionTask] = None
        self._active_finished: Optional[asyncio.Event] = None

    @property
    def active_task(self) -> Optional[ExtractionTask]:
        return self._active

    def __len__(self) -> int:
        return len(self._pending)

    async def enqueue(self, task: ExtractionTask) -> None:
        """
        Queues a task and waits for its extraction to finish.

        :param task: The archive to unpack.
        :raises ExtractionError: If the extractor fails on this task.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending.append((task, future))
        log.debug(f"Queued extraction for '{task.chain_id}' ({len(self._pending)} waiting)")
        # The flag is flipped before yielding to the loop so a second enqueue in
        # the same tick cannot start another drain.
        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain(), name="extraction-queue")
        await future

    async def wait_for_chain(self, chain_id: str) -> None:
        """
        Waits until no extraction is writing into the chain's directory.

        A cancelled waiter only stops waiting; the worker thread keeps
        extracting until the archive is done. Cleanup calls this before it
        deletes anything.
        """
        while self._active is not None and self._active.chain_id == chain_id:
            log.info(f"Waiting for the running extraction of '{chain_id}' to finish")
            await asyncio.shield(self._active_finished.wait())

    async def _drain(self) -> None:
        try:
            while self._pending:
                task, future = self._pending.popleft()
                if future.done():
                    # The waiter was cancelled while queued.
                    continue
                self._active = task
                finished = self._active_finished = asyncio.Event()
                try:
                    await self.extractor.extract(task)
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(None)
                finally:
                    self._active = None
                    finished.set()
        finally:
            self._draining = False
            self._drain_task = None
