"""Formatting utilities for consistent output across CLI commands."""

from collections.abc import Iterable
from enum import Enum

from rich.markup import escape
from rich.table import Table

from procwatch.models import ProcessSample, SampleSet, SystemSnapshot

# ARM "CPU part" codes from /proc/cpuinfo
CPU_PART_NAMES = {
    "0xd03": "Cortex-A53",
    "0xd04": "Cortex-A35",
    "0xd05": "Cortex-A55",
    "0xd06": "Cortex-A65",
    "0xd07": "Cortex-A57",
    "0xd08": "Cortex-A72",
    "0xd09": "Cortex-A73",
    "0xd0a": "Cortex-A75",
    "0xd0b": "Cortex-A76",
    "0xd0c": "Neoverse-N1",
    "0xd0d": "Cortex-A77",
    "0xd0e": "Cortex-A76AE",
    "0xd40": "Neoverse-V1",
    "0xd41": "Cortex-A78",
    "0xd42": "Cortex-A78AE",
    "0xd43": "Cortex-A65AE",
    "0xd44": "Cortex-X1",
    "0xd46": "Cortex-A510",
    "0xd47": "Cortex-A710",
    "0xd48": "Cortex-X2",
    "0xd49": "Neoverse-N2",
    "0xd4a": "Neoverse-E1",
    "0xd4b": "Cortex-A78C",
    "0xd4d": "Cortex-A715",
    "0xd4e": "Cortex-X3",
    "0xd80": "Cortex-A520",
    "0xd81": "Cortex-A720",
    "0xd82": "Cortex-X4",
}


class SortKey(Enum):
    CPU = "cpu"
    MEM = "mem"


def sort_processes(processes: Iterable[ProcessSample], key: SortKey) -> list[ProcessSample]:
    """Return processes ordered by the chosen percentage, highest first."""
    if key is SortKey.MEM:
        return sorted(processes, key=lambda p: p.mem_percent, reverse=True)
    return sorted(processes, key=lambda p: p.cpu_percent, reverse=True)


def format_percent(value: float) -> str:
    """Format a percentage: whole number from 10 up, one decimal below.

    Examples: 0.0 -> "0.0%", 9.96 -> "10.0%", 12.7 -> "12%", 150.2 -> "150%"
    """
    if value >= 10.0:
        return f"{int(value)}%"
    return f"{value:.1f}%"


def cpu_style(value: float) -> str:
    """Rich color for a CPU percentage (100% is one full core)."""
    if value >= 100.0:
        return "bright_red"
    if value >= 50.0:
        return "yellow"
    return "green"


def top_process_summary(processes: Iterable[ProcessSample]) -> str | None:
    """One-line summary of the busiest process, or None if there are none."""
    top = max(processes, key=lambda p: p.cpu_percent, default=None)
    if top is None:
        return None
    cpu = format_percent(top.cpu_percent)
    mem = format_percent(top.mem_percent)
    return f"{top.name} ({cpu} CPU, {mem} MEM)"


def core_part_label(part: str) -> str:
    """Marketing name for an ARM part code; unknown codes pass through."""
    return CPU_PART_NAMES.get(part.lower(), part)


def summarize_cores(snapshot: SystemSnapshot) -> list[str]:
    """Describe the CPU, grouping cores of the same part.

    Returns lines like ``["CPU: 8 cores", "  4x Cortex-A55 @ 1800MHz", ...]``.
    Groups keep the order in which their first core appears.
    """
    lines = [f"CPU: {snapshot.core_count} cores"]

    groups: dict[str, list[int]] = {}
    for core in snapshot.cores:
        groups.setdefault(core.part, []).append(core.max_freq_khz)

    for part, freqs in groups.items():
        label = core_part_label(part) if part else "unknown"
        freq_mhz = max(freqs) // 1000
        if freq_mhz > 0:
            lines.append(f"  {len(freqs)}x {label} @ {freq_mhz}MHz")
        else:
            lines.append(f"  {len(freqs)}x {label}")
    return lines


def memory_summary(snapshot: SystemSnapshot) -> str:
    """Memory line in MB; "used" is total minus available."""
    total_mb = snapshot.total_mem_kb // 1024
    used_mb = (snapshot.total_mem_kb - snapshot.avail_mem_kb) // 1024
    avail_mb = snapshot.avail_mem_kb // 1024
    buffers_mb = snapshot.buffers_kb // 1024
    cached_mb = snapshot.cached_kb // 1024
    return (
        f"Mem: {total_mb}MB total, {used_mb}MB used, {avail_mb}MB avail, "
        f"{buffers_mb}MB buf, {cached_mb}MB cache"
    )


def swap_summary(snapshot: SystemSnapshot) -> str:
    """Swap line in MB, or "Swap: none" when there is no swap."""
    total_mb = snapshot.swap_total_kb // 1024
    if total_mb <= 0:
        return "Swap: none"
    used_mb = (snapshot.swap_total_kb - snapshot.swap_free_kb) // 1024
    free_mb = snapshot.swap_free_kb // 1024
    return f"Swap: {total_mb}MB total, {used_mb}MB used, {free_mb}MB free"


def build_process_table(
    sample_set: SampleSet,
    sort_key: SortKey = SortKey.CPU,
    count: int = 30,
) -> Table:
    """Render one sample set as a Rich table of the top ``count`` processes."""
    title = f"{sample_set.process_count} processes via {sample_set.source}"
    table = Table(title=title, title_justify="left", expand=False)
    table.add_column("PID", justify="right", style="dim")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("CPU", justify="right")
    table.add_column("MEM", justify="right")
    table.add_column("RSS", justify="right", style="dim")
    table.add_column("Thr", justify="right", style="dim")

    for proc in sort_processes(sample_set.processes, sort_key)[:count]:
        rss = f"{proc.resident_kb // 1024}M" if proc.resident_kb else "-"
        table.add_row(
            str(proc.pid),
            escape(proc.name),
            f"[{cpu_style(proc.cpu_percent)}]{format_percent(proc.cpu_percent)}[/]",
            format_percent(proc.mem_percent),
            rss,
            str(proc.threads),
        )

    if sample_set.error:
        table.caption = f"[red]{escape(sample_set.error)}[/]"
    return table
