import sys
import asyncio
import logging
import threading
import setproctitle
from typing import Optional

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import nodelauncher.local.console as console
from nodelauncher.log.setup import setup_logging
from nodelauncher.errors import ChainConfigError
from nodelauncher.local.manager import ChainManager
from nodelauncher.local.events import (
    Event, ChainStatusUpdate, ChainSyncStatus, DownloadComplete, DownloadError, DownloadStarted
)


def print_event(event: Event) -> None:
    """Prints the events a console user cares about. Chain output reaches the console through logging."""
    if isinstance(event, ChainStatusUpdate):
        detail = ""
        if event.error:
            detail = f" ({event.error})"
        elif event.status == "stopped" and (event.exit_code is not None or event.exit_signal):
            detail = f" (exit {event.exit_signal or event.exit_code})"
        if event.unexpected:
            detail += " unexpectedly"
        print(f"* {event.chain_id}: {event.status}{detail}")
    elif isinstance(event, DownloadStarted):
        print(f"* {event.chain_id}: download started")
    elif isinstance(event, DownloadComplete):
        print(f"* {event.chain_id}: download complete")
    elif isinstance(event, DownloadError):
        print(f"* {event.chain_id}: download failed: {event.error}")
    elif isinstance(event, ChainSyncStatus) and not event.in_progress:
        print(f"* {event.chain_id}: synced to block {event.current_block}")


class ConsoleInput:
    """
    Reads the prompt on a daemon thread and hands each line to the event loop.

    The thread only prompts when a line is asked for, so events printed between
    commands do not end up after a stale prompt. Being a daemon, a thread still
    blocked in input() at exit does not hold the interpreter open.
    """

    def __init__(self, prompt: str = "> "):
        self.prompt = prompt
        self._lines: asyncio.Queue = asyncio.Queue()
        self._wanted = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    def _read_lines(self) -> None:
        while True:
            self._wanted.wait()
            self._wanted.clear()
            try:
                line = input(self.prompt)
            except EOFError:
                line = None
            try:
                self._loop.call_soon_threadsafe(self._lines.put_nowait, line)
            except RuntimeError:
                # The loop closed while we were blocked on stdin.
                return
            if line is None:
                return

    async def readline(self) -> Optional[str]:
        """Next line typed by the user, or None at EOF."""
        if self._thread is None:
            self._loop = asyncio.get_running_loop()
            self._thread = threading.Thread(target=self._read_lines, name="console-input", daemon=True)
            self._thread.start()
        self._wanted.set()
        return await self._lines.get()


async def run_console(manager: ChainManager) -> None:
    """Reads commands until 'exit' or EOF. A failing command never ends the loop."""
    print("--- Node Launcher Console ---")
    print("Type 'help' for a list of commands.")
    reader = ConsoleInput()
    while True:
        command_line_str = await reader.readline()
        if command_line_str is None:
            break
        command_line = command_line_str.strip().split()
        if not command_line:
            continue
        command, args = command_line[0].lower(), command_line[1:]
        log.debug(f"Received command: {command}, args: {args}")
        try:
            if await console.execute_command(manager, command, args):
                break
        except Exception as e:
            log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)


async def run(argv: list) -> int:
    try:
        manager = ChainManager.from_settings()
    except ChainConfigError as e:
        log.critical(f"Could not load the chain table: {e}")
        return 1
    manager.ensure_directories()
    manager.events.subscribe(print_event)

    try:
        if argv:
            # Non-interactive mode for one-off commands; long-running ones finish before exit.
            command, args = argv[0].lower(), argv[1:]
            await console.execute_command(manager, command, args)
            await manager.coordinator.wait_idle()
        else:
            await run_console(manager)
    finally:
        await manager.shutdown()
    return 0


def main() -> None:
    """The main entry point for the console application."""
    setproctitle.setproctitle("nodelauncher")
    setup_logging(logging.INFO)

    argv = sys.argv[1:]
    if "--verbose" in argv:
        argv.remove("--verbose")
        console.toggle_verbose_logging()

    try:
        exit_code = asyncio.run(run(argv))
    except KeyboardInterrupt:
        log.warning("Exiting console due to KeyboardInterrupt.")
        exit_code = 130
    print("Exiting node launcher. See you next time!")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
