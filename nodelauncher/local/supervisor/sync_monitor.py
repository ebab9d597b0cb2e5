import asyncio
import logging
from typing import Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import ControlError
from nodelauncher.local.events import EventBus, ChainSyncStatus
from nodelauncher.local.supervisor.control import JsonRpcControl

log = logging.getLogger(__name__)

SYNC_LOG_EVERY_BLOCKS = 1000


class SyncMonitor:
    """
    Follows a running chain through its initial block download.

    ``getblockchaininfo`` is polled every ``poll_interval`` and each answer is
    published as ``chain-sync-status``. The monitor ends once the chain
    reports that it has left initial block download. Failed calls are retried
    at twice the interval, since a node that is still loading its block index
    answers RPC with an error.
    """

    def __init__(self, chain_id: str, control: JsonRpcControl, events: EventBus,
                 poll_interval: Optional[float] = None):
        self.chain_id = chain_id
        self.control = control
        self.events = events
        self.poll_interval = poll_interval or app_globals.SYNC_POLL_INTERVAL
        self._last_logged_block = 0

    async def check(self) -> ChainSyncStatus:
        """One ``getblockchaininfo`` round trip, as a status event."""
        info = await self.control.call("getblockchaininfo")
        if not isinstance(info, dict):
            raise ControlError(f"Unexpected getblockchaininfo result: {info!r}")
        blocks = int(info.get("blocks") or 0)
        headers = int(info.get("headers") or 0)
        return ChainSyncStatus(
            chain_id=self.chain_id,
            in_progress=bool(info.get("initialblockdownload")),
            percent=blocks / headers * 100 if headers else 0.0,
            current_block=blocks,
            total_blocks=headers,
        )

    async def run(self) -> None:
        log.info(f"Watching initial block download of '{self.chain_id}'")
        while True:
            try:
                status = await self.check()
            except ControlError as e:
                log.debug(f"Sync check of '{self.chain_id}' failed: {e}")
                await asyncio.sleep(self.poll_interval * 2)
                continue

            if status.current_block >= self._last_logged_block + SYNC_LOG_EVERY_BLOCKS:
                log.info(
                    f"'{self.chain_id}' synced {status.current_block}/{status.total_blocks} blocks "
                    f"({status.percent:.2f}%)"
                )
                self._last_logged_block = status.current_block
            self.events.publish(status)

            if not status.in_progress:
                log.info(f"'{self.chain_id}' finished its initial block download")
                return
            await asyncio.sleep(self.poll_interval)
