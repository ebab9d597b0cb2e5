import time
import asyncio
import threading

import pytest

from nodelauncher.local import app_globals
from nodelauncher.local.console import execute_command
from nodelauncher.main import ConsoleInput

from conftest import SERVE_FOREVER, install_script, make_definition, posix_only
from test_manager import make_manager


def test_exit_and_unknown_commands(tmp_path, chain_paths, capsys):
    manager, _ = make_manager(tmp_path, chain_paths, make_definition("alpha"))
    assert asyncio.run(execute_command(manager, "exit", [])) is True
    assert asyncio.run(execute_command(manager, "frobnicate", [])) is False
    assert asyncio.run(execute_command(manager, "start", [])) is False
    assert "Usage: start <chain>" in capsys.readouterr().out


def test_chains_and_status_listing(tmp_path, chain_paths, capsys):
    manager, _ = make_manager(tmp_path, chain_paths, make_definition("alpha"), make_definition("bravo", ["alpha"]))
    asyncio.run(execute_command(manager, "chains", []))
    asyncio.run(execute_command(manager, "status", []))
    asyncio.run(execute_command(manager, "downloads", []))

    out = capsys.readouterr().out
    assert "depends on: alpha" in out
    assert "NOT_DOWNLOADED" in out
    assert "No active or paused downloads." in out


def test_failed_command_prints_error(tmp_path, chain_paths, capsys):
    manager, _ = make_manager(tmp_path, chain_paths, make_definition("alpha"), make_definition("bravo", ["alpha"]))
    asyncio.run(execute_command(manager, "start", ["bravo"]))
    assert "start bravo failed: missing dependency: alpha" in capsys.readouterr().out


@posix_only
def test_start_and_forced_stop(tmp_path, chain_paths, capsys):
    alpha = make_definition("alpha")
    install_script(chain_paths, alpha, SERVE_FOREVER)
    manager, _ = make_manager(tmp_path, chain_paths, alpha)

    async def run():
        try:
            await execute_command(manager, "start", ["alpha"])
            await manager.supervisor.wait_until_running("alpha", timeout=5)
            await execute_command(manager, "stop", ["alpha", "--force"])
        finally:
            await manager.shutdown()

    asyncio.run(run())
    out = capsys.readouterr().out
    assert "start alpha: OK" in out
    assert "stop alpha: OK" in out
    assert not manager.supervisor.is_tracked("alpha")


def test_config_set(tmp_path, chain_paths, capsys, isolated_settings):
    manager, _ = make_manager(tmp_path, chain_paths, make_definition("alpha"))
    previous = app_globals.LOG_HISTORY_COUNT
    try:
        asyncio.run(execute_command(manager, "config", ["set", "log_history_count", "20"]))
        assert app_globals.LOG_HISTORY_COUNT == 20
    finally:
        app_globals.LOG_HISTORY_COUNT = previous
    assert "updated to '20'" in capsys.readouterr().out


def test_console_input_reads_lines_on_a_daemon_thread(monkeypatch):
    lines = iter(["status", "exit"])

    def fake_input(prompt):
        try:
            return next(lines)
        except StopIteration:
            raise EOFError

    monkeypatch.setattr("builtins.input", fake_input)

    async def run():
        reader = ConsoleInput()
        return [await reader.readline() for _ in range(3)], reader._thread

    received, thread = asyncio.run(run())
    assert received == ["status", "exit", None]
    assert thread.daemon


def test_blocked_prompt_does_not_hold_the_loop_open(monkeypatch):
    """The loop closes promptly while the prompt thread is still waiting for a line."""
    release = threading.Event()

    def blocking_input(prompt):
        release.wait(10)
        raise EOFError

    monkeypatch.setattr("builtins.input", blocking_input)

    async def run():
        reader = ConsoleInput()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(reader.readline(), 0.1)
        return reader._thread

    started = time.monotonic()
    thread = asyncio.run(run())
    assert time.monotonic() - started < 2
    assert thread.is_alive()

    release.set()
    thread.join(2)
    assert not thread.is_alive()
