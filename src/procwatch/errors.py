"""Failure taxonomy for telemetry sampling.

Per-item failures (a process vanished, a line did not parse) are skipped by the
code that reads them. Whole-source failures propagate to the scheduler, which
turns them into an empty, annotated sample set.
"""


class TelemetryError(Exception):
    """Base class for every sampling failure."""


class TransientReadFailure(TelemetryError):
    """A single process vanished or became unreadable between enumeration and read."""

    def __init__(self, pid: int, reason: str = "") -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(f"pid {pid}: {reason}" if reason else f"pid {pid}")


class ParseFailure(TelemetryError):
    """One malformed record in an otherwise readable file."""


class SourceUnavailable(TelemetryError):
    """The privileged channel cannot be reached or answered with an error."""


class PermissionDenied(TelemetryError):
    """This user is not allowed to talk to the privileged channel."""


class ExternalCommandFailure(TelemetryError):
    """The fallback listing command is missing, timed out, or exited non-zero."""
