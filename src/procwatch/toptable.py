"""Heuristic parser for the unprivileged ``top`` listing.

This is deliberately lossy. It finds the header row, then for every process
row takes the first two percent-looking tokens as CPU% and MEM% and the last
token as the name. Listings with a different column order will be
mis-assigned; that is accepted degraded behaviour.
"""

from procwatch.models import ProcessSample

NAME_MARKERS = ("NAME", "ARGS", "COMMAND", "CMD")
MIN_TOKENS = 5


def is_header(line: str) -> bool:
    """Return True if the line looks like the column header of a process table."""
    stripped = line.strip()
    if stripped.startswith("PID"):
        return True
    return "PID" in stripped and "CPU" in stripped and any(m in stripped for m in NAME_MARKERS)


def percent_value(token: str) -> float | None:
    """Return the number in a token like "12.3" or "4%", or None."""
    if "%" not in token and "." not in token:
        return None
    try:
        return float(token.replace("%", ""))
    except ValueError:
        return None


def parse_row(line: str) -> ProcessSample | None:
    """Parse one process row, or return None if it should be dropped."""
    parts = line.split()
    if len(parts) < MIN_TOKENS:
        return None

    try:
        pid = int(parts[0])
    except ValueError:
        return None

    percents: list[float] = []
    for token in parts[1:]:
        value = percent_value(token)
        if value is not None:
            percents.append(value)
            if len(percents) == 2:
                break

    cpu = percents[0] if percents else 0.0
    mem = percents[1] if len(percents) > 1 else 0.0

    name = parts[-1].split("/", 1)[0]

    return ProcessSample(
        pid=pid,
        name=name,
        cpu_percent=max(0.0, cpu),
        mem_percent=max(0.0, mem),
        resident_kb=0,
        threads=1,
    )


def parse_top_output(text: str) -> list[ProcessSample]:
    """Parse a one-shot ``top`` listing into process samples.

    Rows before the header are ignored. Returns [] if no header is found.
    """
    lines = text.splitlines()
    header = next((i for i, line in enumerate(lines) if is_header(line)), None)
    if header is None:
        return []

    processes: list[ProcessSample] = []
    for line in lines[header + 1 :]:
        if not line.strip():
            continue
        sample = parse_row(line)
        if sample is not None:
            processes.append(sample)
    return processes
