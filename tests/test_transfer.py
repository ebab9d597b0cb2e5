import os
import asyncio

import pytest

from nodelauncher.errors import TransferError
from nodelauncher.local.downloads.transfer import Transfer

from conftest import FileServer

PAYLOAD = os.urandom(200_000)


async def _collect(transfer: Transfer, url: str, dest, resume_from: int = 0):
    return [progress async for progress in transfer.fetch(url, dest, resume_from)]


def test_full_download_reports_progress(tmp_path):
    """A fresh download writes the whole body and ends with a complete snapshot."""
    dest = tmp_path / "temp_alpha.zip"

    async def run():
        async with FileServer({"alpha.zip": PAYLOAD}) as server:
            transfer = Transfer(progress_interval=0)
            try:
                return await _collect(transfer, server.url("alpha.zip"), dest), server.range_headers
            finally:
                await transfer.close()

    snapshots, ranges = asyncio.run(run())
    assert dest.read_bytes() == PAYLOAD
    assert ranges == [None]
    assert snapshots[0].downloaded_bytes == 0
    assert snapshots[-1].downloaded_bytes == snapshots[-1].total_bytes == len(PAYLOAD)
    assert all(a.downloaded_bytes <= b.downloaded_bytes for a, b in zip(snapshots, snapshots[1:]))


def test_resume_appends_from_offset(tmp_path):
    """Resuming sends a Range request and appends the remainder to the bytes on disk."""
    dest = tmp_path / "temp_alpha.zip"
    dest.write_bytes(PAYLOAD[:50_000])

    async def run():
        async with FileServer({"alpha.zip": PAYLOAD}) as server:
            transfer = Transfer()
            try:
                snapshots = await _collect(transfer, server.url("alpha.zip"), dest, resume_from=50_000)
            finally:
                await transfer.close()
            return snapshots, server.range_headers

    snapshots, ranges = asyncio.run(run())
    assert ranges == ["bytes=50000-"]
    assert snapshots[0].downloaded_bytes == 50_000
    assert snapshots[-1].total_bytes == len(PAYLOAD)
    assert dest.read_bytes() == PAYLOAD


def test_resume_restarts_when_server_ignores_range(tmp_path):
    """A 200 answer to a Range request rewrites the file from the start."""
    dest = tmp_path / "temp_alpha.zip"
    dest.write_bytes(b"x" * 1000)

    async def run():
        async with FileServer({"alpha.zip": PAYLOAD}) as server:
            server.ignore_range = True
            transfer = Transfer()
            try:
                await _collect(transfer, server.url("alpha.zip"), dest, resume_from=1000)
            finally:
                await transfer.close()

    asyncio.run(run())
    assert dest.read_bytes() == PAYLOAD


def test_range_past_end_is_not_retriable(tmp_path):
    dest = tmp_path / "temp_alpha.zip"
    dest.write_bytes(PAYLOAD)

    async def run():
        async with FileServer({"alpha.zip": PAYLOAD}) as server:
            transfer = Transfer()
            try:
                await _collect(transfer, server.url("alpha.zip"), dest, resume_from=len(PAYLOAD))
            finally:
                await transfer.close()

    with pytest.raises(TransferError) as excinfo:
        asyncio.run(run())
    assert not excinfo.value.retriable


@pytest.mark.parametrize("status, retriable", [(404, False), (503, True)])
def test_http_errors(tmp_path, status, retriable):
    """Server errors are retriable, client errors are not."""
    async def run():
        async with FileServer({}) as server:
            server.status_override = status
            transfer = Transfer()
            try:
                await _collect(transfer, server.url("alpha.zip"), tmp_path / "temp_alpha.zip")
            finally:
                await transfer.close()

    with pytest.raises(TransferError) as excinfo:
        asyncio.run(run())
    assert f"HTTP {status}" in str(excinfo.value)
    assert excinfo.value.retriable is retriable


def test_dropped_connection_is_retriable(tmp_path):
    dest = tmp_path / "temp_alpha.zip"

    async def run():
        async with FileServer({"alpha.zip": PAYLOAD}) as server:
            server.truncate_next = 1
            transfer = Transfer()
            try:
                await _collect(transfer, server.url("alpha.zip"), dest)
            finally:
                await transfer.close()

    with pytest.raises(TransferError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.retriable
    assert 0 < dest.stat().st_size < len(PAYLOAD)
