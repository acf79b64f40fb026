"""Monitoring session: negotiator + scheduler + the three published cells."""

import asyncio
import signal
from collections.abc import Callable

import structlog

from procwatch.broadcast import LatestValue
from procwatch.channel import LocalChannelProvider, NullChannelProvider, SocketChannelProvider
from procwatch.config import Config
from procwatch.models import SampleSet, SystemSnapshot
from procwatch.negotiator import ChannelProvider, PrivilegeNegotiator, SourceSelector
from procwatch.scheduler import SamplingScheduler
from procwatch.sources import FallbackSource, TelemetrySource

log = structlog.get_logger()


def build_provider(
    config: Config,
    *,
    direct: bool = False,
    fallback_only: bool = False,
) -> ChannelProvider:
    """Pick the channel provider for a session.

    Args:
        config: Application config (socket path and timeouts)
        direct: Read /proc in this process instead of asking the helper
        fallback_only: Never use a privileged channel
    """
    if fallback_only:
        return NullChannelProvider()
    if direct:
        return LocalChannelProvider()
    helper = config.helper
    return SocketChannelProvider(
        config.socket_path,
        connect_timeout=helper.connect_timeout,
        call_timeout=helper.call_timeout,
        watch_interval=helper.watch_interval,
    )


class MonitorSession:
    """One monitoring session from start() to stop().

    Consumers read ``samples``, ``system_info`` and ``status``; only the
    newest value of each is kept.
    """

    def __init__(
        self,
        config: Config,
        provider: ChannelProvider,
        fallback: TelemetrySource | None = None,
    ):
        self.config = config
        self.samples: LatestValue[SampleSet] = LatestValue("samples")
        self.system_info: LatestValue[SystemSnapshot] = LatestValue("system_info")
        self.status: LatestValue[str] = LatestValue("status")
        self.selector = SourceSelector()
        self.fallback = fallback or FallbackSource(
            config.fallback.command,
            timeout=config.fallback.timeout,
        )
        self.scheduler = SamplingScheduler(
            self.selector,
            self.samples,
            self.system_info,
            status=self.status,
            interval=config.sampling.interval,
        )
        self.negotiator = PrivilegeNegotiator(
            provider,
            self.selector,
            self.fallback,
            status=self.status,
            on_switch=self.scheduler.restart,
        )
        self.scheduler.on_source_failure = self.negotiator.report_failure

    async def start(self) -> None:
        """Start sampling and negotiating the source."""
        log.info("monitor_starting", interval=self.config.sampling.interval)
        self.scheduler.start()
        await self.negotiator.start()

    async def stop(self) -> None:
        """Stop sampling and release the channel."""
        self.scheduler.stop()
        await self.scheduler.wait_closed()
        await self.negotiator.stop()
        log.info("monitor_stopped", cycles=self.scheduler.cycle_count)

    def refresh_now(self) -> None:
        """Take the next sample immediately."""
        self.scheduler.restart()

    async def wait_for_rates(self, timeout: float | None = None) -> SampleSet:
        """Wait for the first sample set with meaningful CPU figures.

        The privileged source reports 0% on its first cycle, so its second
        set is returned. A fallback set is meaningful immediately.
        """
        seen: dict[str, int] = {}
        version = 0
        while True:
            sample_set = await self.samples.wait_for_update(version, timeout=timeout)
            version = self.samples.version
            seen[sample_set.source] = seen.get(sample_set.source, 0) + 1
            if sample_set.source != "privileged" or seen[sample_set.source] >= 2:
                return sample_set

    async def __aenter__(self) -> "MonitorSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()


async def run_monitor(
    config: Config,
    provider: ChannelProvider,
    render: Callable[[SampleSet], None],
    *,
    once: bool = False,
    on_status: Callable[[str], None] | None = None,
) -> None:
    """Run a session until SIGINT/SIGTERM, rendering every sample set.

    With ``once``, render the first set with meaningful CPU figures and return.
    """
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    session = MonitorSession(config, provider)
    unsubscribe = session.status.subscribe(on_status) if on_status else None

    try:
        async with session:
            if once:
                # Longest a single cycle can take, plus the delay before it
                timeout = (
                    config.sampling.interval
                    + config.helper.connect_timeout
                    + max(config.helper.call_timeout, config.fallback.timeout) * 2
                )
                render(await session.wait_for_rates(timeout=timeout))
                return

            unsubscribe_samples = session.samples.subscribe(render)
            try:
                await shutdown.wait()
            finally:
                unsubscribe_samples()
    finally:
        if unsubscribe:
            unsubscribe()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
