import asyncio

import pytest

from nodelauncher.errors import ControlError
from nodelauncher.local.events import EventBus
from nodelauncher.local.supervisor import SyncMonitor
from nodelauncher.local.supervisor.control import JsonRpcControl

from conftest import SERVE_FOREVER, install_script, make_definition, posix_only, wait_until
from test_supervisor import make_supervisor


def blockchain_info(blocks, headers, ibd=True):
    return {"blocks": blocks, "headers": headers, "initialblockdownload": ibd, "verificationprogress": 0.5}


class ScriptedRpc(JsonRpcControl):
    """Answers getblockchaininfo from a script; the last answer repeats."""

    def __init__(self, answers):
        super().__init__("http://127.0.0.1:1")
        self.answers = list(answers)
        self.calls = []

    async def call(self, method, params=None):
        self.calls.append(method)
        if method != "getblockchaininfo":
            return None
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


def sync_events(received):
    return [event for event in received if event.type == "chain-sync-status"]


def test_progress_is_published_until_the_download_is_done():
    rpc = ScriptedRpc([
        ControlError("RPC 'getblockchaininfo' failed: Loading block index..."),
        blockchain_info(500, 2000),
        blockchain_info(1500, 2000),
        blockchain_info(2000, 2000, ibd=False),
    ])
    events = EventBus()
    received = []
    events.subscribe(received.append)

    asyncio.run(asyncio.wait_for(SyncMonitor("bitcoin", rpc, events, poll_interval=0.01).run(), 5))

    published = sync_events(received)
    assert [(e.current_block, e.total_blocks, e.in_progress) for e in published] == [
        (500, 2000, True), (1500, 2000, True), (2000, 2000, False)
    ]
    assert published[0].percent == 25.0
    assert published[-1].to_dict()["type"] == "chain-sync-status"
    assert rpc.calls.count("getblockchaininfo") == 4


def test_unexpected_answer_is_a_control_error():
    monitor = SyncMonitor("bitcoin", ScriptedRpc(["not a dict"]), EventBus(), poll_interval=0.01)
    with pytest.raises(ControlError, match="Unexpected getblockchaininfo result"):
        asyncio.run(monitor.check())


@posix_only
def test_running_chain_with_sync_status_is_monitored(chain_paths):
    alpha = make_definition("alpha", control={"kind": "jsonrpc", "url": "http://127.0.0.1:1", "sync_status": True})
    install_script(chain_paths, alpha, SERVE_FOREVER)
    rpc = ScriptedRpc([blockchain_info(10, 20), blockchain_info(20, 20, ibd=False)])
    supervisor, received = make_supervisor(
        chain_paths, alpha, controls={"alpha": rpc}, sync_poll_interval=0.01, graceful_stop_timeout=0.2
    )

    async def run():
        try:
            await supervisor.start("alpha")
            assert await supervisor.wait_until_running("alpha", timeout=5)
            await wait_until(lambda: any(not e.in_progress for e in sync_events(received)))
        finally:
            await supervisor.stop("alpha")

    asyncio.run(run())
    assert [e.current_block for e in sync_events(received)] == [10, 20]
    assert "stop" in rpc.calls
