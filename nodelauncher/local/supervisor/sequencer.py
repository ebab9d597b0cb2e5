import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import ChainConfigError
from nodelauncher.local.supervisor.supervisor import ProcessSupervisor
from nodelauncher.local.downloads.coordinator import DownloadCoordinator

log = logging.getLogger(__name__)


def _group_result(results: Dict[str, Dict[str, Any]], failed: List[str], verb: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": not failed, "results": results}
    if failed:
        result["error"] = f"failed to {verb}: {', '.join(failed)}"
    return result


class Sequencer:
    """
    Starts and stops groups of chains in dependency order, and runs the
    application-wide shutdown.
    """

    def __init__(self, supervisor: ProcessSupervisor, coordinator: Optional[DownloadCoordinator] = None,
                 dependency_poll_interval: Optional[float] = None, dependency_wait_timeout: Optional[float] = None,
                 shutdown_timeout: Optional[float] = None):
        self.supervisor = supervisor
        self.graph = supervisor.graph
        self.coordinator = coordinator
        self.dependency_poll_interval = dependency_poll_interval or app_globals.DEPENDENCY_POLL_INTERVAL
        self.dependency_wait_timeout = dependency_wait_timeout or app_globals.DEPENDENCY_WAIT_TIMEOUT
        self.shutdown_timeout = shutdown_timeout or app_globals.SHUTDOWN_TIMEOUT

    async def _wait_for_dependencies(self, chain_id: str) -> List[str]:
        """Waits for every dependency to be running. Returns the ones that never got there."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.dependency_wait_timeout
        missing = []
        for dep in self.graph.dependencies(chain_id):
            remaining = max(deadline - loop.time(), 0)
            if not await self.supervisor.wait_until_running(dep, remaining, self.dependency_poll_interval):
                missing.append(dep)
        return missing

    async def start_all(self, chain_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Starts a group of chains, dependencies first.

        Chains already tracked are left alone. A chain whose dependency failed
        is not attempted.

        :param chain_ids: The group, defaulting to every chain.
        :return: ``{"success": bool, "results": {chain_id: result}, "error": ...}``.
        """
        try:
            order = self.graph.start_order(chain_ids)
        except ChainConfigError as e:
            return {"success": False, "error": str(e), "results": {}}

        group = set(order)
        outside = [
            dep for dep in dict.fromkeys(dep for chain_id in order for dep in self.graph.dependencies(chain_id))
            if dep not in group and not self.supervisor.is_running(dep)
        ]
        if outside:
            message = f"missing dependency: {', '.join(outside)}"
            log.warning(f"Refusing to start {', '.join(order)}: {message}")
            return {"success": False, "error": message, "results": {}}

        log.info(f"Starting chains in order: {', '.join(order)}")
        results: Dict[str, Dict[str, Any]] = {}
        failed: List[str] = []
        for chain_id in order:
            if self.supervisor.is_tracked(chain_id):
                log.debug(f"'{chain_id}' is already {self.supervisor.status(chain_id)}; skipping")
                results[chain_id] = {"success": True, "skipped": True}
                continue

            blocked = [dep for dep in self.graph.dependencies(chain_id) if dep in failed]
            if blocked:
                results[chain_id] = {"success": False, "error": f"dependency failed: {', '.join(blocked)}"}
                failed.append(chain_id)
                continue

            missing = await self._wait_for_dependencies(chain_id)
            if missing:
                message = f"dependency not running after {self.dependency_wait_timeout}s: {', '.join(missing)}"
                log.error(f"Cannot start '{chain_id}': {message}")
                results[chain_id] = {"success": False, "error": message}
                failed.append(chain_id)
                continue

            results[chain_id] = await self.supervisor.start(chain_id)
            if not results[chain_id]["success"]:
                failed.append(chain_id)
        return _group_result(results, failed, "start")

    async def stop_all(self, chain_ids: Optional[Iterable[str]] = None, force: bool = False) -> Dict[str, Any]:
        """
        Stops a group of chains, dependents first.

        :param chain_ids: The group, defaulting to every tracked chain.
        :param force: Passed through to each stop.
        """
        try:
            group = self.graph.start_order(chain_ids) if chain_ids is not None else self.supervisor.tracked_chains()
            order = [c for c in self.graph.stop_order(group) if self.supervisor.is_tracked(c)]
        except ChainConfigError as e:
            return {"success": False, "error": str(e), "results": {}}

        if order:
            log.info(f"Stopping chains in order: {', '.join(order)}")
        results: Dict[str, Dict[str, Any]] = {}
        failed: List[str] = []
        for chain_id in order:
            results[chain_id] = await self.supervisor.stop(chain_id, force=force)
            if not results[chain_id]["success"]:
                failed.append(chain_id)
        return _group_result(results, failed, "stop")

    async def stop_chain(self, chain_id: str, force: bool = False) -> Dict[str, Any]:
        """
        Stops one chain. A forced stop takes its tracked dependents down first,
        most dependent first, so nothing is left running without its dependency.
        """
        if chain_id not in self.graph:
            return {"success": False, "error": f"Chain not found: {chain_id}"}
        if force:
            dependents = [dep for dep in self.graph.all_dependents(chain_id) if self.supervisor.is_tracked(dep)]
            if dependents:
                log.info(f"Force-stopping dependents of '{chain_id}': {', '.join(dependents)}")
                for dependent in self.graph.stop_order(dependents):
                    result = await self.supervisor.stop(dependent, force=True)
                    if not result["success"]:
                        log.warning(f"Stopping dependent '{dependent}' failed: {result.get('error')}")
        return await self.supervisor.stop(chain_id, force=force)

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Application-wide shutdown: pause downloads, stop every chain within
        ``timeout``, then force-kill whatever is still tracked.

        :return: True if every chain stopped before the timeout.
        """
        timeout = timeout or self.shutdown_timeout
        log.info("Shutting down...")
        if self.coordinator is not None:
            await self.coordinator.pause_all()

        try:
            await asyncio.wait_for(self.stop_all(force=True), timeout)
        except asyncio.TimeoutError:
            log.error(f"Chains still running after {timeout}s; force-killing them")
            await self.supervisor.force_kill_all()
            return False
        if self.supervisor.tracked_chains():
            await self.supervisor.force_kill_all()
            return False
        log.info("All chains stopped")
        return True
