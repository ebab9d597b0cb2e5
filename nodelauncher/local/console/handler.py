import asyncio
import logging
from typing import Any, Dict, List
from nodelauncher.local import app_globals
from nodelauncher.errors import ChainConfigError
from nodelauncher.local.database import LogDBManager
from nodelauncher.local.manager import ChainManager
from nodelauncher.local.supervisor.process_utils import process_usage

log = logging.getLogger(__name__)


def _format_bytes(size: float) -> str:
    if size < 1024:
        return f"{int(size)} B"
    for unit in ("KB", "MB"):
        size /= 1024
        if size < 1024:
            return f"{size:.1f} {unit}"
    return f"{size / 1024:.1f} GB"


def print_result(action: str, result: Dict[str, Any]) -> None:
    """Prints the outcome of a command result dict."""
    if result.get("success"):
        print(f"{action}: OK")
    else:
        print(f"{action} failed: {result.get('error', 'unknown error')}")
    for chain_id, sub_result in result.get("results", {}).items():
        if sub_result.get("skipped"):
            print(f"  - {chain_id:<12} : already running")
        elif sub_result.get("success"):
            print(f"  - {chain_id:<12} : OK")
        else:
            print(f"  - {chain_id:<12} : {sub_result.get('error')}")


def display_chains(manager: ChainManager) -> None:
    """Lists every chain in the table with its dependencies."""
    print("\n--- Chains ---")
    for definition in manager.list_chains():
        deps = ", ".join(definition.dependencies) or "-"
        print(f"  - {definition.id:<12} L{definition.chain_layer}  {definition.display_name:<28} depends on: {deps}")
    print()


async def display_status(manager: ChainManager, args: List[str]) -> None:
    """Shows every chain's status, with CPU and memory use for running ones."""
    chain_ids = args or [definition.id for definition in manager.list_chains()]
    print("\n--- Chain Status ---")
    total_cpu, total_mem = 0.0, 0
    for chain_id in chain_ids:
        try:
            status = manager.get_chain_status(chain_id)
        except ChainConfigError as e:
            print(f"  - {chain_id:<12} : {e}")
            continue

        line = f"  - {chain_id:<12} : {status['status'].upper():<15}"
        if status["pid"]:
            usage = await asyncio.to_thread(process_usage, status["pid"])
            if usage:
                proc_status, cpu, mem = usage
                total_cpu += cpu
                total_mem += mem
                line += f" | PID {status['pid']:<8} | {proc_status.upper()} | CPU: {cpu:.1f}% | MEM: {mem/1024/1024:.1f} MB"
        if status["download"]:
            download = status["download"]
            line += f" | download {download['status']} {download['progress']:.1f}%"
        if status["error"]:
            line += f" | last error: {status['error']}"
        if status["downloaded_at"]:
            line += f" | downloaded {status['downloaded_at']}"
        print(line)
    print(f"\nTOTAL CPU: {total_cpu:.1f}%  |  TOTAL MEMORY: {total_mem/1024/1024:.1f} MB")
    print("-" * 20 + "\n")


def display_downloads(manager: ChainManager) -> None:
    downloads = manager.get_downloads()
    if not downloads:
        print("No active or paused downloads.")
        return
    print("\n--- Downloads ---")
    for download in downloads:
        total = _format_bytes(download["total_bytes"]) if download["total_bytes"] else "?"
        print(
            f"  - {download['chain_id']:<12} : {download['status'].upper():<12} {download['progress']:5.1f}% "
            f"({_format_bytes(download['downloaded_bytes'])} / {total}), retries: {download['retry_count']}"
        )
    print()


def handle_logs_command(args: List[str]) -> None:
    """
    Prints the latest log entries from the log database.

    ``logs <chain>`` limits the output to what that chain printed.
    """
    chain = args[0] if args else None
    log_db = LogDBManager(app_globals.LOG_DB_PATH)
    entries = log_db.fetch_last_entries(app_globals.LOG_HISTORY_COUNT, chain, app_globals.VERBOSE_LOGGING)
    scope = f" for '{chain}'" if chain else ""
    print(f"\n--- Displaying last {app_globals.LOG_HISTORY_COUNT} log entries{scope} ---")
    for entry in entries:
        print(entry.message)
    print()


def _config_show() -> None:
    print("\n--- Current Launcher Configuration ---")
    for key in sorted(app_globals.MODIFIABLE_SETTINGS):
        print(f"  {key} = {app_globals.get(key, 'N/A')}")
    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting.")
    print("--------------------------------------\n")


def _config_set(args: List[str]) -> None:
    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return
    key, value_str = args[0].upper(), " ".join(args[1:])
    _, message = app_globals.update_setting(key, value_str)
    print(message)


def _config_help() -> None:
    print("\nConfig Command Help:")
    print("  config show                - Display all modifiable settings.")
    print("  config set KEY VALUE       - Change a setting and save it to overrides.json.")
    print("  config help                - Show this help message.")


def handle_config_command(args: List[str]) -> None:
    """
    Handles all sub-commands for the 'config' command-line interface.

    :param args: A list of string arguments following the 'config' command.
    """
    sub_command = args[0].lower() if args else "show"
    if sub_command == "show":
        _config_show()
    elif sub_command == "set":
        _config_set(args[1:])
    elif sub_command == "help":
        _config_help()
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")


def toggle_verbose_logging() -> None:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    app_globals.VERBOSE_LOGGING = not app_globals.VERBOSE_LOGGING
    new_level = logging.DEBUG if app_globals.VERBOSE_LOGGING else logging.INFO

    # Reconfigure the console handler's level directly
    root_logger = logging.getLogger()
    found_handler = False
    for handler in root_logger.handlers:
        if type(handler) is logging.StreamHandler:
            handler.setLevel(new_level)
            found_handler = True
            break

    status = "ON" if app_globals.VERBOSE_LOGGING else "OFF"
    if found_handler:
        print(f"Verbose console logging is now {status}.")
        log.debug("Debug logging test: This message should only appear when verbose is ON.")
    else:
        print("Could not find console handler to modify level.")


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  chains                 - List the configured chains and their dependencies.")
    print("  download <chain>       - Download and unpack a chain's binaries.")
    print("  pause <chain>          - Pause a running download.")
    print("  resume <chain>         - Resume a paused download where it stopped.")
    print("  downloads              - Show active and paused downloads.")
    print("  start <chain> [args]   - Start a chain whose dependencies are running.")
    print("  stop <chain> [--force] - Stop a chain; --force also stops its dependents.")
    print("  start-all [chains]     - Start chains in dependency order (all by default).")
    print("  stop-all [chains]      - Stop chains, dependents first (all running by default).")
    print("  reset <chain>          - Stop a chain and delete its binaries and data.")
    print("  status [chains]        - Show chain status with CPU and memory use.")
    print("  logs [chain]           - Show recent log entries, optionally one chain's output.")
    print("  config <cmd>           - Manage configuration. Use 'config help' for more details.")
    print("  verbose                - Toggle detailed DEBUG log output in the console.")
    print("  exit                   - Stop every chain and exit the console.")
    print()
