"""Parsers and readers for the Linux /proc text formats.

The parsers are pure functions over text so they can be tested without a
kernel. ``ProcfsReader`` is the only part that touches the filesystem; its root
directories are configurable so tests can point it at a fake tree.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import psutil
import structlog

from procwatch.errors import TransientReadFailure
from procwatch.models import CoreDescriptor

log = structlog.get_logger()

# Offsets into the whitespace-split fields that follow the closing paren of
# /proc/<pid>/stat. Index 0 is the state (stat(5) field 3), so these are
# stat(5) fields 14 (utime), 15 (stime) and 20 (num_threads).
STAT_STATE = 0
STAT_UTIME = 11
STAT_STIME = 12
STAT_THREADS = 17

DEFAULT_PAGE_SIZE = 4096


def get_core_count() -> int:
    """Return the number of logical CPU cores."""
    return psutil.cpu_count(logical=True) or 1


@dataclass(frozen=True)
class ProcStat:
    """The fields of one /proc/<pid>/stat line that sampling needs."""

    pid: int
    name: str
    state: str
    utime: int  # Clock ticks in user mode
    stime: int  # Clock ticks in kernel mode
    threads: int

    @property
    def ticks(self) -> int:
        """Total CPU ticks consumed by the process."""
        return self.utime + self.stime


def parse_stat_line(line: str) -> ProcStat | None:
    """Parse one /proc/<pid>/stat line.

    The command name sits between the first "(" and the last ")" and may itself
    contain parentheses, spaces or slashes. Returns None for any malformed line;
    that is normal for processes exiting while they are read.
    """
    open_paren = line.find("(")
    close_paren = line.rfind(")")
    if open_paren < 0 or close_paren < open_paren:
        return None

    try:
        pid = int(line[:open_paren].strip())
    except ValueError:
        return None

    name = line[open_paren + 1 : close_paren]
    rest = line[close_paren + 1 :].split()

    try:
        utime = int(rest[STAT_UTIME])
        stime = int(rest[STAT_STIME])
    except (IndexError, ValueError):
        return None

    try:
        threads = int(rest[STAT_THREADS])
    except (IndexError, ValueError):
        threads = 1

    return ProcStat(
        pid=pid,
        name=name,
        state=rest[STAT_STATE],
        utime=utime,
        stime=stime,
        threads=max(1, threads),
    )


def parse_cpu_total_line(line: str) -> int:
    """Sum every counter on the aggregate "cpu" line of /proc/stat.

    The result is the total CPU time, in ticks, spent by all cores since boot.
    Returns 0 if the line is not the aggregate line.
    """
    if not line.startswith("cpu "):
        return 0
    total = 0
    for token in line[4:].split():
        try:
            total += int(token)
        except ValueError:
            continue
    return total


def parse_meminfo(text: str) -> dict[str, int]:
    """Parse /proc/meminfo into a mapping of key to kB.

    Short or unparsable lines are skipped.
    """
    result: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            value = int(parts[1])
        except ValueError:
            continue
        result[parts[0].rstrip(":")] = value
    return result


def parse_statm_resident_pages(line: str) -> int:
    """Return the resident page count (second field) of /proc/<pid>/statm."""
    parts = line.split()
    try:
        return max(0, int(parts[1]))
    except (IndexError, ValueError):
        return 0


def _max_freq_or_zero(read_max_freq: Callable[[int], int], index: int) -> int:
    try:
        return int(read_max_freq(index))
    except (OSError, ValueError, TypeError):
        return 0


def parse_cpuinfo(
    text: str,
    read_max_freq: Callable[[int], int] | None = None,
) -> list[CoreDescriptor]:
    """Parse /proc/cpuinfo into one CoreDescriptor per "processor" stanza.

    Stanzas are separated by blank lines. A stanza without a "processor" key
    (such as the trailing "Hardware" block on ARM) produces nothing. The final
    stanza is flushed even when the text lacks a trailing blank line.

    Args:
        text: Raw /proc/cpuinfo contents
        read_max_freq: Optional callable returning a core's maximum frequency
            in kHz. Any failure it raises is treated as 0.
    """
    cores: list[CoreDescriptor] = []
    index = -1
    implementer = ""
    part = ""

    def flush() -> None:
        freq = _max_freq_or_zero(read_max_freq, index) if read_max_freq else 0
        cores.append(
            CoreDescriptor(index=index, implementer=implementer, part=part, max_freq_khz=freq)
        )

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            if index >= 0:
                flush()
            index, implementer, part = -1, "", ""
            continue

        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()

        if key == "processor":
            try:
                index = int(value)
            except ValueError:
                index = -1
        elif key == "CPU implementer":
            implementer = value
        elif key == "CPU part":
            part = value

    if index >= 0:
        flush()

    return cores


def _read_first_line(path: Path) -> str:
    with open(path, encoding="utf-8", errors="replace") as f:
        return f.readline().rstrip("\n")


class ProcfsReader:
    """Reads raw counters from /proc and /sys.

    Whole-file system reads degrade to empty values on failure. Per-process
    reads raise TransientReadFailure so the caller can skip that process.
    """

    def __init__(
        self,
        proc_root: Path = Path("/proc"),
        cpu_sys_root: Path = Path("/sys/devices/system/cpu"),
    ) -> None:
        self.proc_root = proc_root
        self.cpu_sys_root = cpu_sys_root

    def list_pids(self) -> list[int]:
        """Return every numeric entry under the proc root."""
        try:
            entries = os.listdir(self.proc_root)
        except OSError as e:
            log.warning("proc_list_failed", root=str(self.proc_root), error=str(e))
            return []
        return sorted(int(name) for name in entries if name.isdigit())

    def read_stat(self, pid: int) -> str:
        """Return the /proc/<pid>/stat line.

        Raises:
            TransientReadFailure: If the process is gone or unreadable
        """
        try:
            return _read_first_line(self.proc_root / str(pid) / "stat")
        except OSError as e:
            raise TransientReadFailure(pid, str(e)) from e

    def read_statm(self, pid: int) -> str:
        """Return the /proc/<pid>/statm line.

        Raises:
            TransientReadFailure: If the process is gone or unreadable
        """
        try:
            return _read_first_line(self.proc_root / str(pid) / "statm")
        except OSError as e:
            raise TransientReadFailure(pid, str(e)) from e

    def read_cpu_total(self) -> int:
        """Return total CPU ticks since boot, or 0 if /proc/stat is unreadable."""
        try:
            return parse_cpu_total_line(_read_first_line(self.proc_root / "stat"))
        except OSError as e:
            log.warning("proc_stat_unreadable", error=str(e))
            return 0

    def read_meminfo(self) -> dict[str, int]:
        """Return the parsed /proc/meminfo table, or {} if unreadable."""
        try:
            text = (self.proc_root / "meminfo").read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.warning("meminfo_unreadable", error=str(e))
            return {}
        return parse_meminfo(text)

    def read_cpuinfo(self) -> list[CoreDescriptor]:
        """Return per-core descriptors, or [] if /proc/cpuinfo is unreadable."""
        try:
            text = (self.proc_root / "cpuinfo").read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.warning("cpuinfo_unreadable", error=str(e))
            return []
        return parse_cpuinfo(text, self.read_max_freq)

    def read_max_freq(self, index: int) -> int:
        """Return a core's maximum frequency in kHz, or 0 if unknown."""
        path = self.cpu_sys_root / f"cpu{index}" / "cpufreq" / "cpuinfo_max_freq"
        try:
            return int(_read_first_line(path).strip())
        except (OSError, ValueError):
            return 0

    @staticmethod
    def page_size_kb() -> int:
        """Return the kernel page size in kB."""
        try:
            size = os.sysconf("SC_PAGE_SIZE")
        except (ValueError, OSError):
            size = DEFAULT_PAGE_SIZE
        return max(1, size // 1024)
