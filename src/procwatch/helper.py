"""Privileged helper daemon for procwatch.

Runs as root, reads /proc in full, and answers RPC calls from unprivileged
monitors over a Unix socket.
"""

import asyncio
import os
import resource
import signal
from dataclasses import dataclass

import psutil
import structlog

from procwatch import logging as console
from procwatch.channel import ChannelServer
from procwatch.collector import ProcfsCollector
from procwatch.config import Config

log = structlog.get_logger()


@dataclass
class HelperState:
    """Runtime state of the helper."""

    running: bool = False
    heartbeat_count: int = 0


class HelperDaemon:
    """Serves privileged /proc snapshots until shut down."""

    def __init__(self, config: Config):
        self.config = config
        self.state = HelperState()
        self._shutdown_event = asyncio.Event()
        self._heartbeat_task: asyncio.Task | None = None
        self._server: ChannelServer | None = None
        self._owns_pid_file = False

    async def start(self) -> None:
        """Start the helper and serve until a shutdown signal arrives."""
        from importlib.metadata import version

        log.info("helper_starting", version=version("procwatch"), euid=os.geteuid())
        if os.geteuid() != 0:
            log.warning("helper_not_root", euid=os.geteuid())
            console.warn("Helper is not running as root; other users' processes may be hidden")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        if self._check_already_running():
            log.error("helper_already_running")
            raise RuntimeError("Helper is already running")

        self._write_pid_file()

        helper = self.config.helper
        self._server = ChannelServer(
            socket_path=self.config.socket_path,
            collector_factory=ProcfsCollector,
            socket_mode=helper.socket_mode,
            socket_group=helper.socket_group or None,
        )
        await self._server.start()

        self.state.running = True
        log.info("helper_started", socket=str(self.config.socket_path))
        console.helper_started(str(self.config.socket_path))

        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the helper gracefully."""
        log.info("helper_stopping")
        console.helper_stopping()
        self.state.running = False

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        if self._server:
            await self._server.stop()
            self._server = None

        if self._owns_pid_file:
            self._remove_pid_file()

        log.info("helper_stopped")
        console.helper_stopped()

    def request_shutdown(self) -> None:
        """Ask start() to return."""
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    async def _heartbeat(self) -> None:
        """Log client and request counts periodically."""
        interval = self.config.helper.heartbeat_seconds
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

            server = self._server
            clients = server.client_count if server else 0
            requests = server.request_count if server else 0
            rss_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
            self.state.heartbeat_count += 1
            log.info("helper_heartbeat", clients=clients, requests=requests, rss_mb=round(rss_mb, 1))
            console.heartbeat(clients, requests, rss_mb)

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if a helper is already running.

        Verifies that the PID belongs to a procwatch process, not just any
        process that reused the number after a reboot.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "procwatch" in cmdline_str:
                log.info("helper_already_running_verified", pid=pid)
                console.already_running(pid)
                return True
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            self._remove_pid_file()
            return False
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True


async def run_helper(config: Config | None = None, debug: bool = False) -> None:
    """Run the helper until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        debug: Also record debug events in the log file
    """
    if config is None:
        config = Config.load()

    console.configure(config, source="helper", debug=debug)

    helper = HelperDaemon(config)

    try:
        await helper.start()
    except Exception as e:
        log.exception("helper_crashed", error=str(e))
        raise
    finally:
        await helper.stop()
