"""The two interchangeable telemetry sources.

``PrivilegedSource`` asks the privileged helper over its channel.
``FallbackSource`` runs an unprivileged ``top`` and parses its output
heuristically. The scheduler only sees the TelemetrySource interface.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Protocol

import structlog

from procwatch.errors import ExternalCommandFailure, SourceUnavailable
from procwatch.models import ProcessSample, SystemSnapshot, decode_process_list, decode_system_info
from procwatch.procfs import ProcfsReader, get_core_count
from procwatch.toptable import parse_top_output

log = structlog.get_logger()

DEFAULT_FALLBACK_COMMAND = ("top", "-bn1", "-m", "30")


class PrivilegedChannel(Protocol):
    """RPC handle to the privileged helper. Both calls return JSON text."""

    async def get_process_snapshot(self) -> str: ...

    async def get_system_info(self) -> str: ...

    async def close(self) -> None: ...


class TelemetrySource(ABC):
    """Produces a process list every cycle and, once per session, a system description."""

    name: str

    @abstractmethod
    async def sample(self) -> list[ProcessSample]:
        """Return this cycle's processes.

        Raises:
            TelemetryError: If the whole source failed this cycle
        """

    @abstractmethod
    async def system_info(self) -> SystemSnapshot:
        """Return the machine description.

        Raises:
            TelemetryError: If the description could not be obtained
        """


class PrivilegedSource(TelemetrySource):
    """Source backed by the privileged helper's two RPC operations."""

    name = "privileged"

    def __init__(self, channel: PrivilegedChannel):
        self.channel = channel

    async def sample(self) -> list[ProcessSample]:
        try:
            payload = await self.channel.get_process_snapshot()
        except (ConnectionError, TimeoutError) as e:
            raise SourceUnavailable(f"getProcessSnapshot failed: {e}") from e
        try:
            return decode_process_list(payload)
        except ValueError as e:
            log.warning("process_snapshot_malformed", error=str(e))
            raise SourceUnavailable(f"Malformed process snapshot: {e}") from e

    async def system_info(self) -> SystemSnapshot:
        try:
            payload = await self.channel.get_system_info()
        except (ConnectionError, TimeoutError) as e:
            raise SourceUnavailable(f"getSystemInfo failed: {e}") from e
        try:
            return decode_system_info(payload)
        except ValueError as e:
            log.warning("system_info_malformed", error=str(e))
            raise SourceUnavailable(f"Malformed system info: {e}") from e


class FallbackSource(TelemetrySource):
    """Source backed by an unprivileged one-shot ``top`` listing.

    Resident size and thread count are not recoverable here and default to 0
    and 1. System info comes from whatever /proc files remain readable; the
    per-core list is left empty.
    """

    name = "fallback"

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_FALLBACK_COMMAND,
        timeout: float = 5.0,
        reader: ProcfsReader | None = None,
    ):
        if not command:
            raise ValueError("Fallback command must not be empty")
        self.command = tuple(command)
        self.timeout = timeout
        self.reader = reader or ProcfsReader()

    async def sample(self) -> list[ProcessSample]:
        output = await self._run_command()
        processes = parse_top_output(output)
        if not processes:
            log.debug("fallback_no_rows", output_bytes=len(output))
        return processes

    async def _run_command(self) -> str:
        """Run the listing command and return its stdout.

        Raises:
            ExternalCommandFailure: If the command is missing, times out, or fails
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise ExternalCommandFailure(f"{self.command[0]} not found") from e
        except OSError as e:
            raise ExternalCommandFailure(f"Could not run {self.command[0]}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError:
            await self._reap(proc)
            raise ExternalCommandFailure(
                f"{self.command[0]} timed out after {self.timeout}s"
            ) from None
        except BaseException:
            # Cancelled mid-run: leave no orphaned child behind
            await asyncio.shield(self._reap(proc))
            raise

        if proc.returncode != 0:
            raise ExternalCommandFailure(f"{self.command[0]} exited with status {proc.returncode}")

        return stdout.decode("utf-8", errors="replace")

    async def _reap(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass  # Exited on its own
        await proc.wait()

    async def system_info(self) -> SystemSnapshot:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_system_info)

    def _read_system_info(self) -> SystemSnapshot:
        return SystemSnapshot.from_meminfo(get_core_count(), [], self.reader.read_meminfo())
