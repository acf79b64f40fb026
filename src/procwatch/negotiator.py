"""Privilege negotiation: decides which telemetry source is active.

Availability, permission and connection changes arrive as events on a queue
and are handled one at a time by a single task, so the active source is only
ever written from one place.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import structlog

from procwatch.broadcast import LatestValue
from procwatch.sources import PrivilegedChannel, PrivilegedSource, TelemetrySource

log = structlog.get_logger()


class NegotiatorState(Enum):
    UNSTARTED = "unstarted"
    PROBING_CHANNEL = "probing_channel"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    AWAITING_PERMISSION = "awaiting_permission"
    PERMISSION_DENIED = "permission_denied"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FALLBACK = "fallback"


# States from which a dying channel sends the session to the fallback
_LIVE_STATES = frozenset(
    {
        NegotiatorState.PROBING_CHANNEL,
        NegotiatorState.AWAITING_PERMISSION,
        NegotiatorState.CONNECTED,
        NegotiatorState.DISCONNECTED,
    }
)


@dataclass(frozen=True)
class ChannelAvailable:
    """The privileged channel has appeared."""


@dataclass(frozen=True)
class ChannelDied:
    """The privileged channel went away."""

    reason: str = ""


@dataclass(frozen=True)
class PermissionResult:
    """Outcome of a permission request."""

    granted: bool


@dataclass(frozen=True)
class ServiceConnected:
    """A bound channel is ready for RPC calls."""

    channel: PrivilegedChannel


@dataclass(frozen=True)
class ServiceDisconnected:
    """The bound channel dropped while the channel itself may still exist."""


@dataclass(frozen=True)
class _StartSession:
    pass


Event = ChannelAvailable | ChannelDied | PermissionResult | ServiceConnected | ServiceDisconnected


class ChannelProvider(Protocol):
    """Platform side of the privileged channel.

    Query methods answer immediately. Actions report back asynchronously by
    posting events through the callback given to ``open``.
    """

    async def open(self, post: Callable[[Event], None]) -> None: ...

    def is_available(self) -> bool: ...

    def has_permission(self) -> bool: ...

    async def request_permission(self) -> None: ...

    async def bind(self) -> None: ...

    async def unbind(self) -> None: ...

    async def close(self) -> None: ...


class SourceSelector:
    """Holds the active telemetry source.

    Written by the negotiator, read once per cycle by the scheduler.
    """

    def __init__(self) -> None:
        self._active: TelemetrySource | None = None

    @property
    def active(self) -> TelemetrySource | None:
        return self._active

    def select(self, source: TelemetrySource | None) -> None:
        self._active = source


class PrivilegeNegotiator:
    """State machine choosing between the privileged and fallback sources.

    Denial or loss of the privileged channel never stops monitoring: the
    fallback source is selected instead and ``on_switch`` is called so the
    scheduler can sample again straight away.
    """

    def __init__(
        self,
        provider: ChannelProvider,
        selector: SourceSelector,
        fallback: TelemetrySource,
        status: LatestValue[str] | None = None,
        on_switch: Callable[[], None] | None = None,
    ):
        self.provider = provider
        self.selector = selector
        self.fallback = fallback
        self.status = status if status is not None else LatestValue("status")
        self.on_switch = on_switch
        self._state = NegotiatorState.UNSTARTED
        self._queue: asyncio.Queue[Event | _StartSession] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._channel: PrivilegedChannel | None = None

    @property
    def state(self) -> NegotiatorState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open the provider and begin negotiating."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        await self.provider.open(self.post)
        self._task = asyncio.create_task(self._run())
        self._queue.put_nowait(_StartSession())

    async def stop(self) -> None:
        """Stop processing events and release the channel."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.provider.unbind()
        await self._close_channel()
        await self.provider.close()
        self.selector.select(None)
        self._set_state(NegotiatorState.UNSTARTED)

    def post(self, event: Event) -> None:
        """Queue an event. Safe to call from provider callbacks on the loop thread."""
        self._queue.put_nowait(event)

    def report_failure(self, source: TelemetrySource, error: Exception) -> None:
        """Treat an unreachable privileged source as a dead channel.

        Failures of a source that is no longer active are ignored.
        """
        if isinstance(source, PrivilegedSource) and source is self.selector.active:
            self.post(ChannelDied(str(error)))

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("negotiator_event_failed", event=type(event).__name__)
            finally:
                self._queue.task_done()

    async def _handle(self, event: Event | _StartSession) -> None:
        state = self._state

        if isinstance(event, _StartSession):
            self._set_state(NegotiatorState.PROBING_CHANNEL, "Connecting to helper...")
            if self.provider.is_available():
                await self._negotiate()
            else:
                self._enter_fallback(
                    NegotiatorState.CHANNEL_UNAVAILABLE,
                    "Helper not available. Using fallback.",
                )

        elif isinstance(event, ChannelAvailable):
            if state in (NegotiatorState.PROBING_CHANNEL, NegotiatorState.DISCONNECTED):
                await self._negotiate()
            else:
                self._ignore(event)

        elif isinstance(event, PermissionResult):
            if state is not NegotiatorState.AWAITING_PERMISSION:
                self._ignore(event)
            elif event.granted:
                self._publish("Helper permission granted. Connecting...")
                await self.provider.bind()
            else:
                self._enter_fallback(
                    NegotiatorState.PERMISSION_DENIED,
                    "Helper permission denied. Using fallback.",
                )

        elif isinstance(event, ServiceConnected):
            if state in (NegotiatorState.AWAITING_PERMISSION, NegotiatorState.DISCONNECTED):
                await self._close_channel()
                self._channel = event.channel
                self._set_state(NegotiatorState.CONNECTED, "Connected to helper. Monitoring...")
                self._switch_to(PrivilegedSource(event.channel))
            else:
                self._ignore(event)
                await event.channel.close()

        elif isinstance(event, ServiceDisconnected):
            if state is NegotiatorState.CONNECTED:
                await self._close_channel()
                self._set_state(
                    NegotiatorState.DISCONNECTED,
                    "Helper service disconnected. Using fallback.",
                )
                self._switch_to(self.fallback)
            else:
                self._ignore(event)

        elif isinstance(event, ChannelDied):
            if state in _LIVE_STATES:
                await self._close_channel()
                log.warning("channel_died", state=state.value, reason=event.reason)
                self._enter_fallback(
                    NegotiatorState.CHANNEL_UNAVAILABLE,
                    "Helper disconnected. Using fallback.",
                )
            else:
                self._ignore(event)

    async def _negotiate(self) -> None:
        if self.provider.has_permission():
            self._set_state(NegotiatorState.AWAITING_PERMISSION, "Connecting to helper...")
            await self.provider.bind()
        else:
            self._set_state(
                NegotiatorState.AWAITING_PERMISSION,
                "Helper available. Permission needed.",
            )
            await self.provider.request_permission()

    def _enter_fallback(self, reason_state: NegotiatorState, message: str) -> None:
        self._set_state(reason_state, message)
        self._set_state(NegotiatorState.FALLBACK)
        self._switch_to(self.fallback)

    def _switch_to(self, source: TelemetrySource) -> None:
        previous = self.selector.active
        self.selector.select(source)
        log.info(
            "source_switched",
            source=source.name,
            previous=previous.name if previous else None,
        )
        if self.on_switch:
            self.on_switch()

    async def _close_channel(self) -> None:
        if self._channel is not None:
            channel, self._channel = self._channel, None
            await channel.close()

    def _set_state(self, state: NegotiatorState, message: str | None = None) -> None:
        if state is not self._state:
            log.debug("negotiator_state", from_state=self._state.value, to_state=state.value)
        self._state = state
        if message:
            self._publish(message)

    def _publish(self, message: str) -> None:
        self.status.set(message)

    def _ignore(self, event: Event) -> None:
        log.debug("negotiator_event_ignored", event=type(event).__name__, state=self._state.value)
