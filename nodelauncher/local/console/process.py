import logging
from typing import List
from nodelauncher.local.manager import ChainManager
from nodelauncher.local.console.handler import (
    display_chains, display_status, display_downloads, handle_config_command, handle_logs_command,
    toggle_verbose_logging, print_help, print_result
)

log = logging.getLogger(__name__)

# Commands that act on exactly one chain.
SINGLE_CHAIN_COMMANDS = {"download", "pause", "resume", "start", "stop", "reset"}


async def execute_command(manager: ChainManager, command: str, args: List[str]) -> bool:
    """
    Executes a single command from the user.

    :param manager: The ChainManager the commands act on.
    :param command: The main command string (e.g., 'start', 'config').
    :param args: A list of arguments for the command.
    :return bool: True if the console should exit, False otherwise.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    force = "--force" in args
    names = [arg for arg in args if arg != "--force"]
    if command in SINGLE_CHAIN_COMMANDS and not names:
        print(f"Usage: {command} <chain>")
        return False

    command_map = {
        "download": lambda: manager.download_chain(args[0]),
        "pause": lambda: manager.pause_download(args[0]),
        "resume": lambda: manager.resume_download(args[0]),
        "start": lambda: manager.start_chain(args[0], args[1:]),
        "stop": lambda: manager.stop_chain(names[0], force=force),
        "reset": lambda: manager.reset_chain(args[0]),
        "start-all": lambda: manager.start_all(args or None),
        "stop-all": lambda: manager.stop_all(names or None, force=force),
    }
    display_map = {
        "chains": lambda: display_chains(manager),
        "downloads": lambda: display_downloads(manager),
        "config": lambda: handle_config_command(args),
        "logs": lambda: handle_logs_command(args),
        "verbose": toggle_verbose_logging,
        "help": print_help,
    }

    if command in command_map:
        result = await command_map[command]()
        print_result(f"{command} {' '.join(names)}".strip(), result)
    elif command == "status":
        await display_status(manager, args)
    elif command in display_map:
        display_map[command]()
    elif command == "exit":
        return True
    else:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return False
