"""Tests for the privileged helper daemon."""

import asyncio
import os
from collections.abc import Iterator
from contextlib import ExitStack
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil
import pytest

from procwatch.channel import ChannelClient
from procwatch.config import Config
from procwatch.helper import HelperDaemon, HelperState
from procwatch.models import decode_system_info


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Poll until condition() is true or timeout expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError("condition not met")
        await asyncio.sleep(interval)


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Patch the helper's runtime paths to a short temporary directory."""
    # fmt: off
    with ExitStack() as stack:
        stack.enter_context(patch.object(
            Config, "pid_path",
            new_callable=lambda: property(lambda self: short_tmp_path / "helper.pid")
        ))
        stack.enter_context(patch.object(
            Config, "socket_path",
            new_callable=lambda: property(lambda self: short_tmp_path / "helper.sock")
        ))
        yield short_tmp_path
    # fmt: on


def fake_process(cmdline: list[str], name: str = "python") -> MagicMock:
    proc = MagicMock()
    proc.cmdline.return_value = cmdline
    proc.name.return_value = name
    return proc


def test_helper_state_initial():
    """HelperState initializes with correct defaults."""
    state = HelperState()
    assert state.running is False
    assert state.heartbeat_count == 0


class TestPidFile:
    def test_no_pid_file(self, patched_config_paths):
        """Returns False when no PID file exists."""
        assert HelperDaemon(Config())._check_already_running() is False

    def test_stale_pid(self, patched_config_paths):
        """Returns False and cleans up a PID file naming a dead process."""
        pid_file = patched_config_paths / "helper.pid"
        pid_file.write_text("999999999")

        assert HelperDaemon(Config())._check_already_running() is False
        assert not pid_file.exists()

    def test_invalid_pid(self, patched_config_paths):
        """Returns False and cleans up a PID file with invalid content."""
        pid_file = patched_config_paths / "helper.pid"
        pid_file.write_text("not-a-number")

        assert HelperDaemon(Config())._check_already_running() is False
        assert not pid_file.exists()

    def test_own_pid_is_not_a_rival(self, patched_config_paths):
        pid_file = patched_config_paths / "helper.pid"
        pid_file.write_text(str(os.getpid()))

        assert HelperDaemon(Config())._check_already_running() is False
        assert pid_file.exists()

    def test_running_helper_detected(self, patched_config_paths):
        """A live process whose command line mentions procwatch blocks startup."""
        pid_file = patched_config_paths / "helper.pid"
        pid_file.write_text(str(os.getpid() + 1))
        proc = fake_process(["/usr/bin/python3", "/usr/local/bin/procwatch", "helper"])

        with patch("procwatch.helper.psutil.Process", return_value=proc):
            assert HelperDaemon(Config())._check_already_running() is True

        assert pid_file.exists()

    def test_reused_pid_is_stale(self, patched_config_paths):
        """A PID reused by an unrelated process is treated as stale."""
        pid_file = patched_config_paths / "helper.pid"
        pid_file.write_text(str(os.getpid() + 1))
        proc = fake_process(["/bin/bash"], name="bash")

        with patch("procwatch.helper.psutil.Process", return_value=proc):
            assert HelperDaemon(Config())._check_already_running() is False

        assert not pid_file.exists()

    def test_access_denied_assumes_running(self, patched_config_paths):
        pid_file = patched_config_paths / "helper.pid"
        pid_file.write_text(str(os.getpid() + 1))

        with patch("procwatch.helper.psutil.Process", side_effect=psutil.AccessDenied(1)):
            assert HelperDaemon(Config())._check_already_running() is True

    def test_stop_keeps_foreign_pid_file(self, patched_config_paths):
        """stop() only removes a PID file this helper wrote."""
        pid_file = patched_config_paths / "helper.pid"
        pid_file.write_text("12345")

        asyncio.run(HelperDaemon(Config()).stop())

        assert pid_file.exists()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_rejects_duplicate(self, patched_config_paths):
        """start() raises if another helper holds the PID file."""
        (patched_config_paths / "helper.pid").write_text(str(os.getpid() + 1))
        proc = fake_process(["procwatch", "helper"])
        helper = HelperDaemon(Config())

        with patch("procwatch.helper.psutil.Process", return_value=proc):
            with pytest.raises(RuntimeError, match="already running"):
                await helper.start()
        await helper.stop()

        assert (patched_config_paths / "helper.pid").exists()

    @pytest.mark.asyncio
    async def test_serves_until_shutdown(self, patched_config_paths):
        """A running helper answers RPC calls and cleans up on shutdown."""
        config = Config()
        helper = HelperDaemon(config)
        task = asyncio.create_task(helper.start())

        try:
            await wait_until(lambda: helper.state.running, timeout=2.0)
            assert config.pid_path.read_text() == str(os.getpid())

            client = ChannelClient(config.socket_path)
            await client.connect()
            snapshot = decode_system_info(await client.get_system_info())
            await client.close()
            assert snapshot.core_count >= 1
        finally:
            helper.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await helper.stop()

        assert not config.pid_path.exists()
        assert not config.socket_path.exists()
        assert helper.state.running is False

    @pytest.mark.asyncio
    async def test_heartbeat_counts(self, patched_config_paths):
        config = Config()
        config.helper.heartbeat_seconds = 0.02
        helper = HelperDaemon(config)
        task = asyncio.create_task(helper.start())

        try:
            await wait_until(lambda: helper.state.heartbeat_count >= 2, timeout=2.0)
        finally:
            helper.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await helper.stop()
