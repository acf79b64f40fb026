"""Single-slot "latest value" cell with change notification.

Observers only care about the newest state, so a new value overwrites any
value not yet seen. Slow consumers may miss intermediate values.
"""

import asyncio
from collections.abc import Callable
from typing import Generic, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")


class LatestValue(Generic[T]):
    """Replace-on-write cell that notifies subscribers and async waiters.

    Must be written from the event loop thread.
    """

    def __init__(self, name: str = "value") -> None:
        self.name = name
        self._value: T | None = None
        self._version = 0
        self._subscribers: list[Callable[[T], None]] = []
        self._changed = asyncio.Event()

    @property
    def version(self) -> int:
        """Number of values written so far (0 means never written)."""
        return self._version

    def get(self) -> T | None:
        """Return the latest value, or None if nothing was written yet."""
        return self._value

    def set(self, value: T) -> None:
        """Replace the value and notify everyone."""
        self._value = value
        self._version += 1

        # Wake current waiters; later waiters get a fresh event
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                log.exception("subscriber_failed", cell=self.name)

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Call ``callback`` with every new value. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def wait_for_update(
        self,
        after_version: int | None = None,
        timeout: float | None = None,
    ) -> T:
        """Wait until a value newer than ``after_version`` is written and return it.

        Args:
            after_version: Version already seen (defaults to the current one)
            timeout: Max seconds to wait per wakeup

        Raises:
            TimeoutError: If no newer value arrives within timeout
        """
        if after_version is None:
            after_version = self._version
        while self._version <= after_version:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
        return self._value  # type: ignore[return-value]
