"""Shared test fixtures for procwatch."""

import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from procwatch.models import ProcessSample
from procwatch.procfs import ProcfsReader

MEMINFO_DEFAULTS = {
    "MemTotal": 8_000_000,
    "MemFree": 1_000_000,
    "MemAvailable": 4_000_000,
    "Buffers": 100_000,
    "Cached": 2_000_000,
    "SwapTotal": 0,
    "SwapFree": 0,
}


def make_stat_line(
    pid: int,
    name: str,
    utime: int,
    stime: int,
    threads: int = 1,
    state: str = "S",
) -> str:
    """Build a realistic /proc/<pid>/stat line."""
    after_paren = [
        state, "1", str(pid), str(pid), "0", "-1", "4194560", "100", "0", "0", "0",
        str(utime), str(stime), "0", "0", "20", "0", str(threads), "0", "12345",
        "10240000", "250",
    ]  # fmt: skip
    return f"{pid} ({name}) " + " ".join(after_paren)


def make_sample(
    pid: int = 100,
    name: str = "proc",
    cpu: float = 0.0,
    mem: float = 0.0,
    rss: int = 0,
    threads: int = 1,
) -> ProcessSample:
    """Create a ProcessSample for testing."""
    return ProcessSample(
        pid=pid,
        name=name,
        cpu_percent=cpu,
        mem_percent=mem,
        resident_kb=rss,
        threads=threads,
    )


class FakeProc:
    """A writable stand-in for /proc and /sys/devices/system/cpu."""

    def __init__(self, base: Path):
        self.root = base / "proc"
        self.cpu_sys_root = base / "sys_cpu"
        self.root.mkdir(parents=True)
        self.cpu_sys_root.mkdir(parents=True)
        self.set_cpu_total(1000)
        self.set_meminfo()

    def reader(self) -> ProcfsReader:
        return ProcfsReader(proc_root=self.root, cpu_sys_root=self.cpu_sys_root)

    def set_cpu_total(self, ticks: int) -> None:
        """Write /proc/stat whose aggregate line sums to ``ticks``."""
        (self.root / "stat").write_text(
            f"cpu  {ticks} 0 0 0 0 0 0 0 0 0\ncpu0 {ticks} 0 0 0 0 0 0 0 0 0\nintr 0\n"
        )

    def set_meminfo(self, **overrides: int) -> None:
        values = {**MEMINFO_DEFAULTS, **overrides}
        (self.root / "meminfo").write_text(
            "".join(f"{key}:{value:>16} kB\n" for key, value in values.items())
        )

    def set_cpuinfo(self, text: str) -> None:
        (self.root / "cpuinfo").write_text(text)

    def set_max_freq(self, index: int, khz: int) -> None:
        freq_dir = self.cpu_sys_root / f"cpu{index}" / "cpufreq"
        freq_dir.mkdir(parents=True, exist_ok=True)
        (freq_dir / "cpuinfo_max_freq").write_text(f"{khz}\n")

    def add_process(
        self,
        pid: int,
        name: str,
        utime: int = 0,
        stime: int = 0,
        threads: int = 1,
        rss_pages: int = 0,
    ) -> None:
        proc_dir = self.root / str(pid)
        proc_dir.mkdir(exist_ok=True)
        (proc_dir / "stat").write_text(make_stat_line(pid, name, utime, stime, threads) + "\n")
        (proc_dir / "statm").write_text(f"5000 {rss_pages} 300 10 0 800 0\n")

    def write_raw_stat(self, pid: int, line: str) -> None:
        proc_dir = self.root / str(pid)
        proc_dir.mkdir(exist_ok=True)
        (proc_dir / "stat").write_text(line)

    def remove_process(self, pid: int) -> None:
        proc_dir = self.root / str(pid)
        for child in proc_dir.iterdir():
            child.unlink()
        proc_dir.rmdir()


@pytest.fixture
def fake_proc(tmp_path: Path) -> FakeProc:
    """An empty fake /proc tree with /proc/stat and /proc/meminfo."""
    return FakeProc(tmp_path)


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to about 108 characters and pytest's
    tmp_path can be longer, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="pw_") as tmpdir:
        yield Path(tmpdir)
