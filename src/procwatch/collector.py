"""Privileged process collector reading /proc directly.

This is the helper side of the privileged channel: it implements the two
remote operations, ``getProcessSnapshot`` and ``getSystemInfo``, on top of the
/proc parsers and the CPU rate estimator.
"""

import asyncio
import json
import time

import structlog

from procwatch.errors import ParseFailure, TransientReadFailure
from procwatch.models import ProcessSample, SystemSnapshot, encode_process_list
from procwatch.procfs import (
    ProcfsReader,
    ProcStat,
    get_core_count,
    parse_stat_line,
    parse_statm_resident_pages,
)
from procwatch.rates import CpuRateEstimator, memory_percent

log = structlog.get_logger()


class ProcfsCollector:
    """Collects process samples from /proc.

    Holds one CpuRateEstimator, so each collector instance is one monitoring
    session: the first collect() reports 0% CPU everywhere.
    """

    def __init__(self, reader: ProcfsReader | None = None, core_count: int | None = None):
        self.reader = reader or ProcfsReader()
        self.core_count = core_count or get_core_count()
        self.estimator = CpuRateEstimator()
        self._page_kb = self.reader.page_size_kb()

    def _read_stat(self, pid: int) -> ProcStat:
        line = self.reader.read_stat(pid)
        stat = parse_stat_line(line)
        if stat is None:
            raise ParseFailure(f"pid {pid}: malformed stat line {line[:60]!r}")
        return stat

    def _read_resident_kb(self, pid: int) -> int:
        try:
            return parse_statm_resident_pages(self.reader.read_statm(pid)) * self._page_kb
        except TransientReadFailure:
            return 0

    def collect(self) -> list[ProcessSample]:
        """Scan every visible process once.

        Processes that vanish or fail to parse are skipped individually; the
        rest of the batch is still returned.
        """
        start = time.monotonic()
        total_ticks = self.reader.read_cpu_total()
        total_mem_kb = self.reader.read_meminfo().get("MemTotal", 0)

        readable: list[tuple[ProcStat, int]] = []
        skipped = 0
        for pid in self.reader.list_pids():
            try:
                stat = self._read_stat(pid)
            except (TransientReadFailure, ParseFailure) as e:
                skipped += 1
                log.debug("process_skipped", pid=pid, reason=str(e))
                continue
            readable.append((stat, self._read_resident_kb(pid)))

        percents = self.estimator.update(
            total_ticks,
            {stat.pid: stat.ticks for stat, _ in readable},
            self.core_count,
        )

        processes = [
            ProcessSample(
                pid=stat.pid,
                name=stat.name,
                cpu_percent=percents.get(stat.pid, 0.0),
                mem_percent=memory_percent(rss_kb, total_mem_kb),
                resident_kb=rss_kb,
                threads=stat.threads,
            )
            for stat, rss_kb in readable
        ]

        log.debug(
            "procfs_collected",
            processes=len(processes),
            skipped=skipped,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
        return processes

    def system_info(self) -> SystemSnapshot:
        """Describe the machine: cores and memory totals."""
        return SystemSnapshot.from_meminfo(
            self.core_count,
            self.reader.read_cpuinfo(),
            self.reader.read_meminfo(),
        )

    def get_process_snapshot(self) -> str:
        """``getProcessSnapshot``: JSON array of process objects."""
        return encode_process_list(self.collect())

    def get_system_info(self) -> str:
        """``getSystemInfo``: JSON system object."""
        return json.dumps(self.system_info().to_dict())


class LocalChannel:
    """Privileged channel served in-process by a ProcfsCollector.

    Used when this process already has the rights to read every /proc entry.
    Scans run in the default executor since they are blocking file reads.
    """

    def __init__(self, collector: ProcfsCollector | None = None):
        self.collector = collector or ProcfsCollector()

    async def get_process_snapshot(self) -> str:
        """Run a scan in the executor and return its JSON document."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.collector.get_process_snapshot)

    async def get_system_info(self) -> str:
        """Read the system description in the executor and return its JSON document."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.collector.get_system_info)

    async def close(self) -> None:
        """Nothing to release."""
