"""CPU percentage estimation from cumulative kernel tick counters.

Kernel counters only ever grow, so a percentage needs two samples. The
previous sample lives in a SamplerState that is passed in and handed back
explicitly; nothing here keeps hidden module-level state.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SamplerState:
    """Counters from the previous cycle.

    ``total_ticks`` is None until the first cycle has been recorded.
    """

    total_ticks: int | None = None
    proc_ticks: Mapping[int, int] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "SamplerState":
        """State for a session that has not sampled yet."""
        return cls()

    @property
    def is_first(self) -> bool:
        """True when no previous cycle has been recorded."""
        return self.total_ticks is None


def estimate(
    state: SamplerState,
    total_ticks: int,
    proc_ticks: Mapping[int, int],
    core_count: int,
) -> tuple[dict[int, float], SamplerState]:
    """Turn two counter snapshots into per-process CPU percentages.

    cpu% = (proc delta / total delta) * cores * 100, so one fully busy core
    reads 100% and a process can exceed 100% on several cores.

    - First cycle of a session: every pid reports 0.0.
    - A pid not seen last cycle has a delta of 0.
    - A negative delta (pid reuse, counter wrap) is clamped to 0.
    - A non-positive total delta yields 0.0 for everyone.

    Args:
        state: Counters from the previous cycle
        total_ticks: Current system-wide tick total
        proc_ticks: Current ticks per pid
        core_count: Number of logical cores

    Returns:
        Tuple of (percent by pid, state to pass to the next call). The new state
        contains exactly the pids of this cycle.
    """
    new_state = SamplerState(total_ticks=total_ticks, proc_ticks=dict(proc_ticks))

    if state.is_first:
        return {pid: 0.0 for pid in proc_ticks}, new_state

    delta_total = total_ticks - state.total_ticks
    if delta_total <= 0:
        return {pid: 0.0 for pid in proc_ticks}, new_state

    percents: dict[int, float] = {}
    for pid, ticks in proc_ticks.items():
        delta_proc = ticks - state.proc_ticks.get(pid, ticks)
        percents[pid] = max(0.0, delta_proc / delta_total * core_count * 100.0)
    return percents, new_state


def memory_percent(resident_kb: int, total_mem_kb: int) -> float:
    """Resident set size as a percentage of total memory (0 if total unknown)."""
    if total_mem_kb <= 0:
        return 0.0
    return max(0.0, resident_kb / total_mem_kb * 100.0)


class CpuRateEstimator:
    """Owns the SamplerState for one monitoring session."""

    def __init__(self) -> None:
        self._state = SamplerState.empty()

    @property
    def state(self) -> SamplerState:
        """Counters recorded by the last update."""
        return self._state

    def update(
        self,
        total_ticks: int,
        proc_ticks: Mapping[int, int],
        core_count: int,
    ) -> dict[int, float]:
        """Compute percentages and replace the stored state with this cycle's."""
        percents, self._state = estimate(self._state, total_ticks, proc_ticks, core_count)
        return percents

    def reset(self) -> None:
        """Forget the previous cycle; the next update reports 0% everywhere."""
        self._state = SamplerState.empty()
