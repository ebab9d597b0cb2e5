"""
Launch strategies. Each chain gets one launcher, chosen when the supervisor
loads the chain table: a plain subprocess, or on macOS an app bundle opened
through the OS and tracked by scanning the process table.
"""

import sys
import asyncio
from abc import ABC, abstractmethod
import psutil
import logging
from pathlib import Path
from typing import List, Optional, Tuple
from nodelauncher.local import app_globals
from nodelauncher.errors import SpawnError
from nodelauncher.local.chains import ChainDefinition, ChainPaths
from nodelauncher.local.supervisor import process_utils

log = logging.getLogger(__name__)


class LaunchedProcess(ABC):
    """Handle to a launched chain, whatever launched it."""

    pid: Optional[int] = None
    stdout: Optional[asyncio.StreamReader] = None
    stderr: Optional[asyncio.StreamReader] = None

    @abstractmethod
    async def wait(self) -> Tuple[Optional[int], Optional[str]]:
        """Waits for exit. Returns (exit code, signal name)."""

    @abstractmethod
    def terminate(self) -> None:
        """Asks the chain and its children to exit."""

    @abstractmethod
    def kill(self) -> None:
        """Kills the chain and its children."""


class SubprocessHandle(LaunchedProcess):

    def __init__(self, proc: asyncio.subprocess.Process):
        self._proc = proc
        self.pid = proc.pid
        self.stdout = proc.stdout
        self.stderr = proc.stderr

    async def wait(self) -> Tuple[Optional[int], Optional[str]]:
        returncode = await self._proc.wait()
        signal_name = process_utils.exit_signal_name(returncode)
        return (None if signal_name else returncode), signal_name

    def terminate(self) -> None:
        """SIGTERM to the chain and every process it started."""
        if self._proc.returncode is None:
            process_utils.signal_process_tree(self.pid, graceful=True)

    def kill(self) -> None:
        if self._proc.returncode is None:
            process_utils.signal_process_tree(self.pid)


class AppBundleHandle(LaunchedProcess):
    """A process started by the OS on our behalf; we only know its pid."""

    def __init__(self, proc: psutil.Process, poll_interval: float):
        self._proc = proc
        self.pid = proc.pid
        self.poll_interval = poll_interval

    async def wait(self) -> Tuple[Optional[int], Optional[str]]:
        while True:
            try:
                if not self._proc.is_running() or self._proc.status() == psutil.STATUS_ZOMBIE:
                    break
            except psutil.NoSuchProcess:
                break
            await asyncio.sleep(self.poll_interval)
        # Not our child, so the exit status is not observable.
        return None, None

    def terminate(self) -> None:
        process_utils.signal_process_tree(self.pid, graceful=True)

    def kill(self) -> None:
        process_utils.signal_process_tree(self.pid)


class ProcessLauncher(ABC):
    """Strategy interface for starting a chain."""

    @abstractmethod
    async def launch(self, definition: ChainDefinition, paths: ChainPaths, args: List[str]) -> LaunchedProcess:
        """
        Starts the chain.

        :param definition: The chain to start.
        :param paths: Resolves install and data directories.
        :param args: Fully formatted command-line arguments.
        :return: A handle to the running chain.
        :raises SpawnError: If the OS refuses to start it.
        """

    def installed(self, definition: ChainDefinition, paths: ChainPaths) -> bool:
        """Whether whatever this launcher starts is present on disk."""
        return paths.binary_path(definition).exists()


class SubprocessLauncher(ProcessLauncher):

    async def launch(self, definition: ChainDefinition, paths: ChainPaths, args: List[str]) -> LaunchedProcess:
        binary_path = paths.binary_path(definition)
        cwd = paths.data_dir(definition)
        try:
            process_utils.ensure_executable(binary_path)
            proc = await asyncio.create_subprocess_exec(
                str(binary_path), *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                **process_utils.get_creation_flags(),
            )
        except OSError as e:
            raise SpawnError(f"Failed to start {binary_path}: {e}") from e
        return SubprocessHandle(proc)


class AppBundleLauncher(ProcessLauncher):
    """
    Opens a macOS app bundle with ``open`` and finds the resulting process by
    polling the process table, since ``open`` returns before the app is up.
    """

    def __init__(self, bundle_name: str, poll_interval: Optional[float] = None, launch_timeout: Optional[float] = None):
        self.bundle_name = bundle_name
        self.poll_interval = poll_interval or app_globals.APP_BUNDLE_POLL_INTERVAL
        self.launch_timeout = launch_timeout or app_globals.READINESS_TIMEOUT

    def installed(self, definition: ChainDefinition, paths: ChainPaths) -> bool:
        return paths.install_dir(definition).joinpath(self.bundle_name).exists()

    def _find_process(self, bundle_path: Path) -> Optional[psutil.Process]:
        executable_name = Path(self.bundle_name).stem.lower()
        bundle_prefix = str(bundle_path.resolve())

        def matches(proc: psutil.Process) -> bool:
            exe = proc.info.get("exe") or ""
            return exe.startswith(bundle_prefix) or (proc.info.get("name") or "").lower() == executable_name

        found = process_utils.find_processes(matches)
        return found[0] if found else None

    async def launch(self, definition: ChainDefinition, paths: ChainPaths, args: List[str]) -> LaunchedProcess:
        bundle_path = paths.install_dir(definition) / self.bundle_name
        command = ["open", str(bundle_path)] + (["--args", *args] if args else [])
        try:
            opener = await asyncio.create_subprocess_exec(
                *command, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
            )
            _, stderr = await opener.communicate()
        except OSError as e:
            raise SpawnError(f"Failed to open {bundle_path}: {e}") from e
        if opener.returncode != 0:
            raise SpawnError(f"open {bundle_path} failed: {stderr.decode('utf-8', errors='replace').strip()}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.launch_timeout
        while loop.time() < deadline:
            proc = await asyncio.to_thread(self._find_process, bundle_path)
            if proc is not None:
                log.info(f"Found {self.bundle_name} running as PID {proc.pid}")
                return AppBundleHandle(proc, self.poll_interval)
            await asyncio.sleep(self.poll_interval)
        raise SpawnError(f"{self.bundle_name} did not appear within {self.launch_timeout}s")


def select_launcher(definition: ChainDefinition, platform: Optional[str] = None) -> ProcessLauncher:
    """Picks the launch strategy for a chain on a platform."""
    platform = platform or sys.platform
    bundle = definition.app_bundle_for(platform)
    if platform == "darwin" and bundle:
        return AppBundleLauncher(bundle)
    return SubprocessLauncher()
