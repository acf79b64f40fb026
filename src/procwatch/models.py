"""Value types shared by both telemetry sources, plus their JSON wire format.

The wire format is the contract of the privileged helper: ``getProcessSnapshot``
returns a JSON array of process objects and ``getSystemInfo`` returns one system
object. Field names on the wire differ from the Python attribute names.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class ProcessSample:
    """One process as seen in one sampling cycle.

    ``pid`` is only unique within a cycle; the kernel may reuse it later.
    """

    pid: int
    name: str
    cpu_percent: float = 0.0  # Can exceed 100 on multi-core machines
    mem_percent: float = 0.0
    resident_kb: int = 0  # 0 when the source cannot tell
    threads: int = 1

    def to_dict(self) -> dict:
        """Serialize to the helper wire format."""
        return {
            "pid": self.pid,
            "name": self.name,
            "cpu": self.cpu_percent,
            "mem": self.mem_percent,
            "rss": self.resident_kb,
            "threads": self.threads,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ProcessSample":
        """Deserialize from the helper wire format.

        Raises:
            KeyError, TypeError, ValueError: If a field is missing or not numeric
        """
        return cls(
            pid=int(data["pid"]),
            name=str(data["name"]),
            cpu_percent=max(0.0, float(data["cpu"])),
            mem_percent=max(0.0, float(data["mem"])),
            resident_kb=max(0, int(data["rss"])),
            threads=max(1, int(data["threads"])),
        )


@dataclass(frozen=True)
class CoreDescriptor:
    """One logical CPU core.

    ``implementer`` and ``part`` are the raw hex codes from /proc/cpuinfo
    (e.g. "0x41", "0xd05"); turning them into names is a display concern.
    """

    index: int
    implementer: str = ""
    part: str = ""
    max_freq_khz: int = 0

    def to_dict(self) -> dict:
        """Serialize to the helper wire format."""
        return {
            "index": self.index,
            "implementer": self.implementer,
            "part": self.part,
            "maxFreqKhz": self.max_freq_khz,
        }

    @classmethod
    def from_dict(cls, data: Mapping, default_index: int = 0) -> "CoreDescriptor":
        """Deserialize leniently; missing keys fall back to defaults."""
        return cls(
            index=int(data.get("index", default_index)),
            implementer=str(data.get("implementer", "")),
            part=str(data.get("part", "")),
            max_freq_khz=int(data.get("maxFreqKhz", 0)),
        )


# meminfo key -> SystemSnapshot attribute
MEMINFO_FIELDS = {
    "MemTotal": "total_mem_kb",
    "MemFree": "free_mem_kb",
    "MemAvailable": "avail_mem_kb",
    "Buffers": "buffers_kb",
    "Cached": "cached_kb",
    "SwapTotal": "swap_total_kb",
    "SwapFree": "swap_free_kb",
}

# SystemSnapshot attribute -> wire key
_SYSTEM_WIRE_KEYS = {
    "total_mem_kb": "totalMemKb",
    "free_mem_kb": "freeMemKb",
    "avail_mem_kb": "availMemKb",
    "buffers_kb": "buffersKb",
    "cached_kb": "cachedKb",
    "swap_total_kb": "swapTotalKb",
    "swap_free_kb": "swapFreeKb",
}


@dataclass(frozen=True)
class SystemSnapshot:
    """Machine description, fetched once per monitoring session.

    All memory figures are in kB.
    """

    core_count: int
    cores: tuple[CoreDescriptor, ...] = ()
    total_mem_kb: int = 0
    free_mem_kb: int = 0
    avail_mem_kb: int = 0
    buffers_kb: int = 0
    cached_kb: int = 0
    swap_total_kb: int = 0
    swap_free_kb: int = 0

    @classmethod
    def from_meminfo(
        cls,
        core_count: int,
        cores: list[CoreDescriptor] | tuple[CoreDescriptor, ...],
        meminfo: Mapping[str, int],
    ) -> "SystemSnapshot":
        """Build a snapshot from a parsed /proc/meminfo table."""
        memory = {attr: meminfo.get(key, 0) for key, attr in MEMINFO_FIELDS.items()}
        return cls(core_count=core_count, cores=tuple(cores), **memory)

    def to_dict(self) -> dict:
        """Serialize to the helper wire format."""
        data: dict = {
            "coreCount": self.core_count,
            "cores": [c.to_dict() for c in self.cores],
        }
        for attr, key in _SYSTEM_WIRE_KEYS.items():
            data[key] = getattr(self, attr)
        return data

    @classmethod
    def from_dict(cls, data: Mapping) -> "SystemSnapshot":
        """Deserialize leniently; missing keys default to zero or empty."""
        cores = tuple(
            CoreDescriptor.from_dict(core, default_index=i)
            for i, core in enumerate(data.get("cores") or [])
        )
        memory = {attr: int(data.get(key, 0)) for attr, key in _SYSTEM_WIRE_KEYS.items()}
        return cls(core_count=int(data.get("coreCount", 0)), cores=cores, **memory)


@dataclass
class SampleSet:
    """Everything one sampling cycle produced."""

    timestamp: datetime
    source: str  # "privileged" or "fallback"
    elapsed_ms: int
    processes: list[ProcessSample] = field(default_factory=list)
    error: str | None = None  # Set when the cycle degraded to an empty set

    @property
    def process_count(self) -> int:
        """Number of processes in this cycle."""
        return len(self.processes)


def encode_process_list(processes: list[ProcessSample]) -> str:
    """Encode a process list as the ``getProcessSnapshot`` JSON document."""
    return json.dumps([p.to_dict() for p in processes])


def decode_process_list(payload: str) -> list[ProcessSample]:
    """Decode a ``getProcessSnapshot`` JSON document.

    Raises:
        ValueError: If the document is not a JSON array of process objects
    """
    try:
        items = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid process snapshot JSON: {e}") from e
    if not isinstance(items, list):
        raise ValueError(f"Process snapshot must be a JSON array, got {type(items).__name__}")
    try:
        return [ProcessSample.from_dict(item) for item in items]
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid process entry: {e!r}") from e


def decode_system_info(payload: str) -> SystemSnapshot:
    """Decode a ``getSystemInfo`` JSON document.

    Raises:
        ValueError: If the document is not a JSON object
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid system info JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"System info must be a JSON object, got {type(data).__name__}")
    try:
        return SystemSnapshot.from_dict(data)
    except (AttributeError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid system info field: {e!r}") from e
