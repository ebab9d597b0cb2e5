import os
import sys
import signal
import psutil
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

log = logging.getLogger(__name__)


#* --- Process Status & Monitoring ---
def find_processes(predicate: Callable[[psutil.Process], bool]) -> List[psutil.Process]:
    """Returns every visible process for which ``predicate`` holds."""
    matches = []
    for proc in psutil.process_iter(["name", "exe"]):
        try:
            if predicate(proc):
                matches.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return matches


def process_usage(pid: int) -> Optional[Tuple[str, float, int]]:
    """
    Samples a process and its children.

    :param pid: Root process id.
    :return: (status, cpu percent, resident bytes), or None if the process is gone.
    """
    try:
        root = psutil.Process(pid)
        procs = [root] + root.children(recursive=True)
        status = root.status()
    except psutil.NoSuchProcess:
        return None
    cpu, mem = 0.0, 0
    for proc in procs:
        try:
            cpu += proc.cpu_percent(interval=0.1)
            mem += proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return status, cpu, mem


def exit_signal_name(returncode: Optional[int]) -> Optional[str]:
    """Name of the signal that ended a process (negative return codes on POSIX)."""
    if returncode is None or returncode >= 0 or sys.platform == "win32":
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


#* --- Process Creation ---
def ensure_executable(path: Path) -> None:
    """Sets 0755 on a binary on non-Windows platforms."""
    if sys.platform != "win32":
        os.chmod(path, 0o755)


def get_creation_flags() -> Dict[str, Any]:
    """
    Platform-specific keyword arguments that put a child in its own process
    group, so signals aimed at the launcher do not reach the chains directly.
    """
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


#* --- Process Termination ---
def signal_process_tree(pid: int, graceful: bool = False) -> int:
    """
    Sends SIGTERM (graceful) or SIGKILL to a process and all of its descendants.

    Waiting is left to the caller: the root is usually our own child, and
    reaping it here would hide its exit status from the event loop.

    :param pid: Root process id.
    :param graceful: Send SIGTERM instead of SIGKILL.
    :return: The number of processes signalled.
    """
    try:
        root = psutil.Process(pid)
        procs = root.children(recursive=True) + [root]
    except psutil.NoSuchProcess:
        return 0

    signalled = 0
    for proc in procs:
        try:
            if graceful:
                proc.terminate()
            else:
                log.debug(f"Killing {proc.name()} (PID {proc.pid})")
                proc.kill()
            signalled += 1
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            log.warning(f"Access denied signalling PID {proc.pid}: {e}")
    return signalled
