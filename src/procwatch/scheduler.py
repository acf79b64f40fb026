"""Periodic sampling loop.

One task, one fetch in flight. The next cycle starts ``interval`` seconds after
the previous one completed, so a slow source stretches the period instead of
piling up requests.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime

import structlog

from procwatch.broadcast import LatestValue
from procwatch.errors import SourceUnavailable, TelemetryError
from procwatch.models import SampleSet, SystemSnapshot
from procwatch.negotiator import SourceSelector
from procwatch.sources import TelemetrySource

log = structlog.get_logger()


class SamplingScheduler:
    """Samples the active source on a fixed delay and publishes the results.

    System info is fetched once per session, before the first process sample.
    A source switch calls restart(), which skips the remaining delay.
    ``on_source_failure`` hears about every SourceUnavailable so the caller
    can move off an unreachable source.
    """

    def __init__(
        self,
        selector: SourceSelector,
        samples: LatestValue[SampleSet],
        system_info: LatestValue[SystemSnapshot],
        status: LatestValue[str] | None = None,
        interval: float = 1.0,
        on_source_failure: Callable[[TelemetrySource, SourceUnavailable], None] | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.selector = selector
        self.samples = samples
        self.system_info = system_info
        self.status = status
        self.interval = interval
        self.on_source_failure = on_source_failure
        self._wake = asyncio.Event()
        self._stopping = False
        self._system_fetched = False
        self._last_failed = False
        self._task: asyncio.Task | None = None
        self.cycle_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin sampling. The system description is fetched again."""
        if self.running:
            return
        self._stopping = False
        self._system_fetched = False
        self._last_failed = False
        self._wake.clear()
        self._task = asyncio.create_task(self._run())
        log.debug("scheduler_started", interval=self.interval)

    def restart(self) -> None:
        """Sample again right away instead of waiting out the delay."""
        self._wake.set()

    def stop(self) -> None:
        """Prevent future cycles. A fetch already in flight may still publish."""
        self._stopping = True
        self._wake.set()

    async def wait_closed(self) -> None:
        """Wait for the sampling task to exit after stop()."""
        if self._task:
            await self._task
            self._task = None

    async def _run(self) -> None:
        while not self._stopping:
            source = self.selector.active
            if source is None:
                # Nothing negotiated yet
                await self._wake.wait()
                self._wake.clear()
                continue

            self._wake.clear()
            try:
                await self.run_cycle(source)
            except asyncio.CancelledError:
                log.info("scheduler_cancelled")
                raise
            except Exception:
                log.exception("scheduler_cycle_crashed", source=source.name)

            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except TimeoutError:
                pass  # Normal timeout, continue to next sample

        log.debug("scheduler_stopped", cycles=self.cycle_count)

    async def run_cycle(self, source: TelemetrySource) -> SampleSet:
        """Run one sampling cycle against ``source`` and publish the result.

        Whole-source failures produce an empty set with ``error`` filled in;
        they never escape.
        """
        start = time.monotonic()

        if not self._system_fetched:
            try:
                snapshot = await source.system_info()
            except TelemetryError as e:
                log.warning("system_info_failed", source=source.name, error=str(e))
                self._report_unavailable(source, e)
            else:
                self._system_fetched = True
                self.system_info.set(snapshot)

        processes = []
        error = None
        try:
            processes = await source.sample()
        except TelemetryError as e:
            error = str(e)
            log.warning("sample_failed", source=source.name, error=error)
            if self.status is not None:
                self.status.set(f"Error: {error}")
            self._report_unavailable(source, e)
        else:
            if self._last_failed and self.status is not None:
                self.status.set(f"Monitoring active ({source.name})")
        self._last_failed = error is not None

        sample_set = SampleSet(
            timestamp=datetime.now(),
            source=source.name,
            elapsed_ms=int((time.monotonic() - start) * 1000),
            processes=processes,
            error=error,
        )
        self.cycle_count += 1
        self.samples.set(sample_set)
        return sample_set

    def _report_unavailable(self, source: TelemetrySource, error: TelemetryError) -> None:
        if isinstance(error, SourceUnavailable) and self.on_source_failure is not None:
            self.on_source_failure(source, error)
