import io
import os
import stat
import asyncio
import zipfile

import pytest

from nodelauncher.errors import ChainConfigError
from nodelauncher.local.events import EventBus
from nodelauncher.local.downloads import (
    DownloadCoordinator, DownloadTimestamps, ExtractionQueue, Extractor, Transfer
)

from conftest import FileServer, posix_only, wait_until


def zip_bytes(files):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in files.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = (stat.S_IFREG | 0o755) << 16
            archive.writestr(info, data)
    return buffer.getvalue()


class SlowExtractor(Extractor):
    """Really extracts, but holds each archive open for a while and tracks overlap."""

    def __init__(self, hold: float = 0.3):
        super().__init__()
        self.hold = hold
        self.active = 0
        self.max_active = 0
        self.finished = []

    async def extract(self, task):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.hold)
            await super().extract(task)
            self.finished.append(task.chain_id)
        finally:
            self.active -= 1


class Harness:
    def __init__(self, tmp_path, extractor=None, **options):
        self.events = EventBus()
        self.received = []
        self.events.subscribe(self.received.append)
        self.timestamps = DownloadTimestamps(tmp_path / "downloads.json")
        options.setdefault("max_retries", 2)
        options.setdefault("retry_delay", 0.01)
        self.coordinator = DownloadCoordinator(
            self.events, ExtractionQueue(extractor or Extractor()),
            transfer=Transfer(progress_interval=0), timestamps=self.timestamps, **options
        )

    def types(self):
        return [event.type for event in self.received]

    def of_type(self, event_type):
        return [event for event in self.received if event.type == event_type]


def test_archive_download_is_extracted(tmp_path):
    """A zip download ends extracted, without its temp file, and with a timestamp."""
    archive = zip_bytes({"alpha-1.0/alphad": b"binary"})
    dest = tmp_path / "alpha"
    harness = Harness(tmp_path)

    async def run():
        async with FileServer({"alpha.zip": archive}) as server:
            assert harness.coordinator.start_download("alpha", server.url("alpha.zip"), dest)
            await harness.coordinator.wait_idle()
            await harness.coordinator.transfer.close()

    asyncio.run(run())
    assert (dest / "alpha-1.0" / "alphad").read_bytes() == b"binary"
    assert not (dest / "temp_alpha.zip").exists()
    assert harness.timestamps.get("alpha") is not None
    assert harness.coordinator.get_downloads() == []

    types = harness.types()
    assert types[0] == "download-started"
    assert "download-complete" in types
    statuses = [d["status"] for e in harness.of_type("downloads-update") for d in e.downloads]
    assert "downloading" in statuses and "extracting" in statuses
    assert harness.of_type("downloads-update")[-1].downloads == []


@posix_only
def test_direct_binary_is_installed_executable(tmp_path):
    dest = tmp_path / "enforcer"
    harness = Harness(tmp_path)

    async def run():
        async with FileServer({"enforcer": b"\x7fELF-binary"}) as server:
            harness.coordinator.start_download(
                "enforcer", server.url("enforcer"), dest, is_direct_binary=True, binary_name="bip300301-enforcer"
            )
            await harness.coordinator.wait_idle()
            await harness.coordinator.transfer.close()

    asyncio.run(run())
    binary = dest / "bip300301-enforcer"
    assert binary.read_bytes() == b"\x7fELF-binary"
    assert os.access(binary, os.X_OK)
    assert "download-complete" in harness.types()


def test_duplicate_start_is_ignored(tmp_path):
    harness = Harness(tmp_path)

    async def run():
        async with FileServer({"alpha.zip": zip_bytes({"a": b"a"})}, delay=0.01) as server:
            first = harness.coordinator.start_download("alpha", server.url("alpha.zip"), tmp_path / "alpha")
            second = harness.coordinator.start_download("alpha", server.url("alpha.zip"), tmp_path / "alpha")
            await harness.coordinator.wait_idle()
            await harness.coordinator.transfer.close()
            return first, second

    assert asyncio.run(run()) == (True, False)
    assert harness.types().count("download-started") == 1


def test_pause_and_resume_continue_from_bytes_on_disk(tmp_path):
    """Resuming requests exactly the bytes missing from the temp file and ends byte-identical."""
    payload = os.urandom(300_000)
    dest = tmp_path / "enforcer"
    harness = Harness(tmp_path)
    coordinator = harness.coordinator

    async def run():
        async with FileServer({"enforcer": payload}, chunk_size=4096, delay=0.01) as server:
            coordinator.start_download("enforcer", server.url("enforcer"), dest,
                                       is_direct_binary=True, binary_name="enforcer-bin")
            await wait_until(lambda: coordinator.get_downloads()[0]["downloaded_bytes"] > 20_000)
            assert await coordinator.pause_download("enforcer")

            paused = coordinator.get_downloads()
            assert [d["status"] for d in paused] == ["paused"]
            on_disk = (dest / "temp_enforcer").stat().st_size
            assert 0 < on_disk < len(payload)
            # Nothing is written while paused.
            await asyncio.sleep(0.1)
            assert (dest / "temp_enforcer").stat().st_size == on_disk

            assert coordinator.resume_download("enforcer")
            await coordinator.wait_idle()
            await coordinator.transfer.close()
            return on_disk, server.range_headers

    on_disk, ranges = asyncio.run(run())
    assert ranges == [None, f"bytes={on_disk}-"]
    assert (dest / "enforcer-bin").read_bytes() == payload
    assert "download-complete" in harness.types()


def test_pause_only_applies_to_transferring_downloads(tmp_path):
    harness = Harness(tmp_path)

    async def run():
        assert not await harness.coordinator.pause_download("ghost")
        assert not harness.coordinator.resume_download("ghost")

    asyncio.run(run())


def test_dropped_connection_is_retried_with_range(tmp_path):
    payload = os.urandom(100_000)
    dest = tmp_path / "enforcer"
    harness = Harness(tmp_path)

    async def run():
        async with FileServer({"enforcer": payload}) as server:
            server.truncate_next = 1
            harness.coordinator.start_download("enforcer", server.url("enforcer"), dest,
                                               is_direct_binary=True, binary_name="enforcer-bin")
            await harness.coordinator.wait_idle()
            await harness.coordinator.transfer.close()
            return server.range_headers

    ranges = asyncio.run(run())
    assert len(ranges) == 2
    assert ranges[0] is None and ranges[1].startswith("bytes=")
    assert (dest / "enforcer-bin").read_bytes() == payload
    retries = [d["retry_count"] for e in harness.of_type("downloads-update") for d in e.downloads]
    assert max(retries) == 1


def test_http_error_publishes_download_error(tmp_path):
    """A failure forgets the download, deletes the temp file and reports the raw message."""
    dest = tmp_path / "alpha"
    harness = Harness(tmp_path)

    async def run():
        async with FileServer({}) as server:
            harness.coordinator.start_download("alpha", server.url("alpha.zip"), dest)
            await harness.coordinator.wait_idle()
            await harness.coordinator.transfer.close()

    asyncio.run(run())
    errors = harness.of_type("download-error")
    assert len(errors) == 1
    assert errors[0].chain_id == "alpha"
    assert "HTTP 404" in errors[0].error
    assert harness.coordinator.get_downloads() == []
    assert not (dest / "temp_alpha.zip").exists()
    assert harness.timestamps.get("alpha") is None


def test_corrupt_archive_publishes_download_error(tmp_path):
    harness = Harness(tmp_path)

    async def run():
        async with FileServer({"alpha.zip": b"not a zip at all"}) as server:
            harness.coordinator.start_download("alpha", server.url("alpha.zip"), tmp_path / "alpha")
            await harness.coordinator.wait_idle()
            await harness.coordinator.transfer.close()

    asyncio.run(run())
    assert [e.chain_id for e in harness.of_type("download-error")] == ["alpha"]
    assert "download-complete" not in harness.types()


def test_cleanup_cancels_and_removes_temp_file(tmp_path):
    payload = os.urandom(200_000)
    dest = tmp_path / "alpha"
    harness = Harness(tmp_path)
    coordinator = harness.coordinator

    async def run():
        async with FileServer({"alpha.zip": payload}, delay=0.01) as server:
            coordinator.start_download("alpha", server.url("alpha.zip"), dest)
            await wait_until(lambda: (dest / "temp_alpha.zip").exists())
            await coordinator.cleanup_chain("alpha", dest_dir=dest)
            await coordinator.transfer.close()

    asyncio.run(run())
    assert not coordinator.has_download("alpha")
    assert not (dest / "temp_alpha.zip").exists()
    assert "download-error" not in harness.types()
    assert "download-complete" not in harness.types()


def test_downloads_finishing_together_extract_one_at_a_time(tmp_path):
    """Several downloads reaching extraction in the same moment are unpacked strictly in turn."""
    extractor = SlowExtractor(hold=0.05)
    harness = Harness(tmp_path, extractor=extractor)
    chains = ("alpha", "bravo", "charlie")
    files = {f"{c}.zip": zip_bytes({f"{c}/{c}d": c.encode()}) for c in chains}

    async def run():
        async with FileServer(files) as server:
            for chain_id in chains:
                harness.coordinator.start_download(chain_id, server.url(f"{chain_id}.zip"), tmp_path / chain_id)
            await harness.coordinator.wait_idle()
            await harness.coordinator.transfer.close()

    asyncio.run(run())
    assert extractor.max_active == 1
    assert sorted(extractor.finished) == list(chains)
    for chain_id in chains:
        assert (tmp_path / chain_id / chain_id / f"{chain_id}d").read_bytes() == chain_id.encode()
    assert len(harness.of_type("download-complete")) == 3


def test_cleanup_during_extraction_waits_for_the_extractor(tmp_path):
    """Cleanup returns only after the running extraction stopped writing, and the download is forgotten."""
    extractor = SlowExtractor(hold=0.3)
    dest = tmp_path / "alpha"
    harness = Harness(tmp_path, extractor=extractor)
    coordinator = harness.coordinator

    async def run():
        async with FileServer({"alpha.zip": zip_bytes({"bin/alphad": b"binary"})}) as server:
            coordinator.start_download("alpha", server.url("alpha.zip"), dest)
            await wait_until(lambda: [d["status"] for d in coordinator.get_downloads()] == ["extracting"])
            await coordinator.cleanup_chain("alpha", dest_dir=dest)
            finished_at_cleanup = list(extractor.finished)
            await coordinator.transfer.close()
            return finished_at_cleanup

    assert asyncio.run(run()) == ["alpha"]
    assert extractor.active == 0
    assert not coordinator.has_download("alpha")
    assert not (dest / "temp_alpha.zip").exists()
    assert "download-complete" not in harness.types()
    assert harness.timestamps.get("alpha") is None


def test_direct_binary_without_binary_name_is_a_config_error(tmp_path):
    harness = Harness(tmp_path)

    async def run():
        with pytest.raises(ChainConfigError, match="No binary configured"):
            harness.coordinator.start_download("enforcer", "http://127.0.0.1:1/enforcer", tmp_path / "enforcer",
                                               is_direct_binary=True)

    asyncio.run(run())
    assert not harness.coordinator.has_download("enforcer")
