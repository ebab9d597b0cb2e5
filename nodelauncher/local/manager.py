import shutil
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import ChainConfigError, LauncherError
from nodelauncher.local.chains import ChainDefinition, ChainPaths, DependencyGraph, load_chain_definitions
from nodelauncher.local.events import EventBus, ChainStatusUpdate
from nodelauncher.local.downloads import (
    DownloadCoordinator, DownloadTimestamps, ExtractionQueue, Extractor, Transfer
)
from nodelauncher.local.downloads.releases import resolve_release_asset_url
from nodelauncher.local.supervisor import ProcessSupervisor, Sequencer
from nodelauncher.local.supervisor.supervisor import STATUS_NOT_DOWNLOADED

log = logging.getLogger(__name__)


def _error(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


class ChainManager:
    """
    The command surface of the launcher.

    Wires the download coordinator, the process supervisor and the sequencer
    to one event bus, and turns every command into a ``{"success": bool,
    "error": str}`` result. Launcher errors never escape a command.
    """

    def __init__(self, definitions: Mapping[str, ChainDefinition], paths: ChainPaths,
                 events: Optional[EventBus] = None, timestamps: Optional[DownloadTimestamps] = None,
                 transfer: Optional[Transfer] = None,
                 coordinator_options: Optional[Dict[str, Any]] = None,
                 supervisor_options: Optional[Dict[str, Any]] = None,
                 sequencer_options: Optional[Dict[str, Any]] = None):
        self.definitions = dict(definitions)
        self.paths = paths
        self.events = events or EventBus()
        self.graph = DependencyGraph(self.definitions)
        self.timestamps = timestamps or DownloadTimestamps(app_globals.DOWNLOAD_TIMESTAMPS_PATH)
        self.coordinator = DownloadCoordinator(
            self.events, ExtractionQueue(Extractor(paths.platform)),
            transfer=transfer, timestamps=self.timestamps, **(coordinator_options or {})
        )
        self.supervisor = ProcessSupervisor(
            self.definitions, self.graph, self.events, paths, **(supervisor_options or {})
        )
        self.sequencer = Sequencer(self.supervisor, self.coordinator, **(sequencer_options or {}))

    @classmethod
    def from_settings(cls, config_path: Optional[Path] = None, events: Optional[EventBus] = None) -> "ChainManager":
        """
        Builds a manager from the configured chain table and directories.

        :raises ChainConfigError: If the chain table cannot be loaded.
        """
        definitions = load_chain_definitions(config_path or app_globals.CHAIN_CONFIG_PATH)
        paths = ChainPaths(app_globals.DOWNLOADS_DIR, app_globals.HOME_DIR)
        return cls(definitions, paths, events=events)

    #* --- Lookup ---
    def _definition(self, chain_id: str) -> ChainDefinition:
        definition = self.definitions.get(chain_id)
        if definition is None:
            raise ChainConfigError(f"Chain not found: {chain_id}")
        return definition

    def list_chains(self) -> List[ChainDefinition]:
        return list(self.definitions.values())

    def get_data_dir(self, chain_id: str) -> Path:
        return self.paths.data_dir(self._definition(chain_id))

    def get_install_dir(self, chain_id: str) -> Path:
        return self.paths.install_dir(self._definition(chain_id))

    def ensure_directories(self) -> None:
        """Creates missing install and data directories for every chain on this platform."""
        for definition in self.definitions.values():
            for resolve in (self.paths.install_dir, self.paths.data_dir):
                try:
                    resolve(definition).mkdir(parents=True, exist_ok=True)
                except ChainConfigError as e:
                    log.debug(f"Skipping directory setup for '{definition.id}': {e}")
                except OSError as e:
                    log.error(f"Could not create directory for '{definition.id}': {e}")

    #* --- Downloads ---
    async def _resolve_url(self, definition: ChainDefinition) -> str:
        platform = self.paths.platform
        url = definition.download_url_for(platform)
        if url:
            return url
        release = definition.github_release
        pattern = release.asset_patterns.get(platform) if release else None
        if not pattern:
            raise ChainConfigError(f"No download configured for '{definition.id}' on platform {platform}")
        log.info(f"Looking up the latest {release.repo} release for '{definition.id}'")
        return await asyncio.to_thread(resolve_release_asset_url, release.repo, pattern)

    async def download_chain(self, chain_id: str) -> Dict[str, Any]:
        """Starts downloading a chain. A running chain cannot be re-downloaded."""
        try:
            definition = self._definition(chain_id)
            if self.supervisor.is_tracked(chain_id):
                return _error(f"Chain '{chain_id}' is running; stop it before downloading")
            if self.coordinator.has_download(chain_id):
                return _error(f"Download for '{chain_id}' is already in progress")
            url = await self._resolve_url(definition)
            started = self.coordinator.start_download(
                chain_id, url, self.paths.install_dir(definition),
                is_direct_binary=definition.is_direct_binary,
                binary_name=definition.binary_for(self.paths.platform),
                app_bundle=definition.app_bundle_for(self.paths.platform),
            )
        except LauncherError as e:
            log.error(f"Cannot download '{chain_id}': {e}")
            return _error(str(e))
        if not started:
            return _error(f"Download for '{chain_id}' is already in progress")
        return {"success": True}

    async def pause_download(self, chain_id: str) -> Dict[str, Any]:
        if await self.coordinator.pause_download(chain_id):
            return {"success": True}
        return _error(f"No active download for '{chain_id}'")

    async def resume_download(self, chain_id: str) -> Dict[str, Any]:
        if self.coordinator.resume_download(chain_id):
            return {"success": True}
        return _error(f"No paused download for '{chain_id}'")

    def get_downloads(self) -> List[Dict[str, Any]]:
        return self.coordinator.get_downloads()

    #* --- Processes ---
    async def start_chain(self, chain_id: str, extra_args: Optional[List[str]] = None) -> Dict[str, Any]:
        if chain_id in self.definitions and self.coordinator.has_download(chain_id):
            return _error(f"Download for '{chain_id}' has not finished")
        return await self.supervisor.start(chain_id, extra_args)

    async def stop_chain(self, chain_id: str, force: bool = False) -> Dict[str, Any]:
        return await self.sequencer.stop_chain(chain_id, force=force)

    async def start_all(self, chain_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        chain_ids = list(chain_ids) if chain_ids is not None else None
        busy = [c for c in (chain_ids or self.definitions) if self.coordinator.has_download(c)]
        if busy:
            return {"success": False, "error": f"downloads not finished: {', '.join(busy)}", "results": {}}
        return await self.sequencer.start_all(chain_ids)

    async def stop_all(self, chain_ids: Optional[Iterable[str]] = None, force: bool = False) -> Dict[str, Any]:
        return await self.sequencer.stop_all(chain_ids, force=force)

    async def reset_chain(self, chain_id: str) -> Dict[str, Any]:
        """
        Returns a chain to ``not_downloaded``: stops it, cancels its download,
        and wipes its install and data directories.
        """
        try:
            definition = self._definition(chain_id)
            install_dir = self.paths.install_dir(definition)
            data_dir = self.paths.data_dir(definition)
        except ChainConfigError as e:
            return _error(str(e))

        if self.supervisor.is_tracked(chain_id):
            result = await self.sequencer.stop_chain(chain_id)
            if not result["success"]:
                return _error(f"Cannot reset '{chain_id}': {result.get('error')}")

        await self.coordinator.cleanup_chain(chain_id, dest_dir=install_dir)
        try:
            for directory in (install_dir, data_dir):
                if directory.exists():
                    log.info(f"Removing {directory}")
                    await asyncio.to_thread(shutil.rmtree, directory)
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error(f"Failed to reset '{chain_id}': {e}", exc_info=True)
            return _error(f"Failed to reset '{chain_id}': {e}")

        self.timestamps.remove(chain_id)
        log.info(f"Chain '{chain_id}' reset")
        self.events.publish(ChainStatusUpdate(chain_id=chain_id, status=STATUS_NOT_DOWNLOADED))
        return {"success": True}

    def get_chain_status(self, chain_id: str) -> Dict[str, Any]:
        """
        Summary of one chain.

        :raises ChainConfigError: For an unknown chain id.
        """
        self._definition(chain_id)
        download = next((d for d in self.coordinator.get_downloads() if d["chain_id"] == chain_id), None)
        return {
            "chain_id": chain_id,
            "status": self.supervisor.status(chain_id),
            "pid": self.supervisor.pid(chain_id),
            "error": self.supervisor.last_error(chain_id),
            "download": download,
            "downloaded_at": self.timestamps.get(chain_id),
        }

    async def shutdown(self) -> bool:
        """Stops everything and releases network resources."""
        try:
            return await self.sequencer.shutdown()
        finally:
            await self.coordinator.transfer.close()
