"""Tests for the privileged and fallback telemetry sources."""

import asyncio
import json
from unittest.mock import patch

import pytest

from procwatch.errors import ExternalCommandFailure, SourceUnavailable
from procwatch.sources import FallbackSource, PrivilegedSource

TOP_OUTPUT = """\
Tasks: 3 total
PID USER PR NI VIRT RES SHR S %CPU %MEM TIME+ ARGS
123 root 20 0 100M 10M 5M S 12.3 4.5 0:01 com.foo
456 app 20 0 200M 20M 6M S 1.0 0.5 0:02 /system/bin/surfaceflinger
"""


class FakeChannel:
    """Channel returning canned payloads or raising canned errors."""

    def __init__(self, snapshot="[]", system_info='{"coreCount": 4}', error=None):
        self.snapshot = snapshot
        self.system = system_info
        self.error = error
        self.closed = False

    async def get_process_snapshot(self) -> str:
        if self.error:
            raise self.error
        return self.snapshot

    async def get_system_info(self) -> str:
        if self.error:
            raise self.error
        return self.system

    async def close(self) -> None:
        self.closed = True


class TestPrivilegedSource:
    @pytest.mark.asyncio
    async def test_sample_decodes_snapshot(self):
        payload = json.dumps(
            [{"pid": 1, "name": "init", "cpu": 2.5, "mem": 0.1, "rss": 1024, "threads": 1}]
        )
        source = PrivilegedSource(FakeChannel(snapshot=payload))

        processes = await source.sample()

        assert source.name == "privileged"
        assert processes[0].pid == 1
        assert processes[0].cpu_percent == 2.5

    @pytest.mark.asyncio
    async def test_system_info(self):
        source = PrivilegedSource(FakeChannel(system_info='{"coreCount": 8, "totalMemKb": 42}'))

        snapshot = await source.system_info()

        assert snapshot.core_count == 8
        assert snapshot.total_mem_kb == 42

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ConnectionError("gone"), TimeoutError()])
    async def test_transport_errors_become_source_unavailable(self, error):
        source = PrivilegedSource(FakeChannel(error=error))

        with pytest.raises(SourceUnavailable):
            await source.sample()
        with pytest.raises(SourceUnavailable):
            await source.system_info()

    @pytest.mark.asyncio
    async def test_malformed_payload_becomes_source_unavailable(self):
        source = PrivilegedSource(FakeChannel(snapshot="{oops", system_info="[]"))

        with pytest.raises(SourceUnavailable):
            await source.sample()
        with pytest.raises(SourceUnavailable):
            await source.system_info()


class TestFallbackSource:
    @pytest.mark.asyncio
    async def test_parses_command_output(self, tmp_path, fake_proc):
        listing = tmp_path / "top.txt"
        listing.write_text(TOP_OUTPUT)
        source = FallbackSource(["cat", str(listing)], timeout=5.0, reader=fake_proc.reader())

        processes = await source.sample()

        assert source.name == "fallback"
        assert [p.pid for p in processes] == [123, 456]
        assert processes[0].cpu_percent == pytest.approx(12.3)
        assert processes[0].mem_percent == pytest.approx(4.5)
        assert processes[0].name == "com.foo"
        # Leading "/" means nothing precedes the separator
        assert processes[1].name == ""
        assert all(p.resident_kb == 0 and p.threads == 1 for p in processes)

    @pytest.mark.asyncio
    async def test_output_without_header_is_empty(self, tmp_path):
        listing = tmp_path / "top.txt"
        listing.write_text("nothing useful\n")

        assert await FallbackSource(["cat", str(listing)]).sample() == []

    @pytest.mark.asyncio
    async def test_missing_command(self):
        source = FallbackSource(["procwatch-no-such-command-xyz"])

        with pytest.raises(ExternalCommandFailure, match="not found"):
            await source.sample()

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        with pytest.raises(ExternalCommandFailure, match="status 1"):
            await FallbackSource(["false"]).sample()

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self):
        source = FallbackSource(["sleep", "10"], timeout=0.1)

        with pytest.raises(ExternalCommandFailure, match="timed out"):
            await source.sample()

    @pytest.mark.asyncio
    async def test_cancel_kills_command(self):
        """Cancelling a sample mid-run reaps the listing command."""
        spawned = []
        real_exec = asyncio.create_subprocess_exec

        async def spawn(*args, **kwargs):
            proc = await real_exec(*args, **kwargs)
            spawned.append(proc)
            return proc

        source = FallbackSource(["sleep", "10"], timeout=5.0)
        with patch("procwatch.sources.asyncio.create_subprocess_exec", side_effect=spawn):
            task = asyncio.create_task(source.sample())
            while not spawned:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        (proc,) = spawned
        assert proc.returncode is not None

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            FallbackSource([])

    @pytest.mark.asyncio
    async def test_system_info_reads_meminfo_without_cores(self, fake_proc):
        fake_proc.set_meminfo(MemTotal=2_000_000, MemAvailable=500_000)
        source = FallbackSource(reader=fake_proc.reader())

        snapshot = await source.system_info()

        assert snapshot.core_count >= 1
        assert snapshot.cores == ()
        assert snapshot.total_mem_kb == 2_000_000
        assert snapshot.avail_mem_kb == 500_000
