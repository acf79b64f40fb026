"""Unix socket transport for the privileged channel.

Protocol: newline-delimited JSON. A request is ``{"id": n, "method": name}``
and the reply is ``{"id": n, "result": "<json text>"}`` or
``{"id": n, "error": "..."}``. The result is the RPC document as a string so
it can be decoded by the same code that handles in-process channels.
"""

import asyncio
import json
import os
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from procwatch.collector import LocalChannel, ProcfsCollector
from procwatch.errors import PermissionDenied, SourceUnavailable
from procwatch.negotiator import (
    ChannelAvailable,
    ChannelDied,
    Event,
    PermissionResult,
    ServiceConnected,
    ServiceDisconnected,
)

log = structlog.get_logger()

METHODS = {
    "getProcessSnapshot": "get_process_snapshot",
    "getSystemInfo": "get_system_info",
}


class ChannelServer:
    """Serves the RPC operations to unprivileged monitors.

    Each connection gets its own collector from ``collector_factory`` so every
    client has an independent sampling session.
    """

    def __init__(
        self,
        socket_path: Path,
        collector_factory: Callable[[], ProcfsCollector] = ProcfsCollector,
        socket_mode: int = 0o660,
        socket_group: str | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.collector_factory = collector_factory
        self.socket_mode = socket_mode
        self.socket_group = socket_group
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self.request_count = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        """Start the socket server."""
        # Remove stale socket file
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )

        os.chmod(self.socket_path, self.socket_mode)
        if self.socket_group:
            shutil.chown(self.socket_path, group=self.socket_group)

        log.info(
            "channel_server_started",
            path=str(self.socket_path),
            mode=oct(self.socket_mode),
            group=self.socket_group,
        )

    async def stop(self) -> None:
        """Stop the socket server."""
        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("channel_server_stopped")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Answer requests from one client until it disconnects."""
        self._clients.add(writer)
        collector = self.collector_factory()
        log.info("channel_client_connected", count=len(self._clients))

        try:
            while True:
                try:
                    line = await reader.readline()
                except ConnectionError:
                    break
                if not line:
                    break

                response = await self._dispatch(collector, line)
                writer.write(json.dumps(response).encode() + b"\n")
                await writer.drain()
        except ConnectionError:
            log.debug("channel_client_write_failed")
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
            log.info("channel_client_disconnected", count=len(self._clients))

    async def _dispatch(self, collector: ProcfsCollector, line: bytes) -> dict[str, Any]:
        try:
            request = json.loads(line.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {"id": None, "error": "invalid request"}
        if not isinstance(request, dict):
            return {"id": None, "error": "invalid request"}

        request_id = request.get("id")
        self.request_count += 1
        attr = METHODS.get(request.get("method", ""))
        if attr is None:
            return {"id": request_id, "error": f"unknown method: {request.get('method')}"}

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, getattr(collector, attr))
        except Exception as e:
            log.exception("channel_call_failed", method=request["method"])
            return {"id": request_id, "error": str(e)}
        return {"id": request_id, "result": result}


class ChannelClient:
    """Privileged channel backed by the helper's Unix socket.

    Connects or throws; reconnection is the provider's job.
    """

    def __init__(
        self,
        socket_path: Path,
        connect_timeout: float = 2.0,
        call_timeout: float = 5.0,
    ):
        self.socket_path = socket_path
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._lock = asyncio.Lock()
        self._next_id = 0

    @property
    def connected(self) -> bool:
        """Whether the connection is still open."""
        return (
            self._writer is not None
            and not self._writer.is_closing()
            and self._reader is not None
            and not self._reader.at_eof()
        )

    async def connect(self) -> None:
        """Connect to the helper socket.

        Raises:
            FileNotFoundError: If the socket doesn't exist (helper not running)
            PermissionDenied: If this user may not connect
            TimeoutError: If the helper does not accept in time
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path)),
                timeout=self.connect_timeout,
            )
        except PermissionError as e:
            raise PermissionDenied(f"Not allowed to connect to {self.socket_path}") from e

    async def close(self) -> None:
        """Disconnect from the helper socket."""
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                pass
            self._writer = None
            self._reader = None

    async def call(self, method: str) -> str:
        """Invoke one RPC operation and return its JSON text.

        Raises:
            ConnectionError: If not connected or the connection drops
            TimeoutError: If no reply arrives within call_timeout
            SourceUnavailable: If the helper answers with an error
        """
        async with self._lock:
            if not self._writer or self._writer.is_closing() or not self._reader:
                raise ConnectionError("Not connected")

            self._next_id += 1
            request_id = self._next_id
            data = json.dumps({"id": request_id, "method": method}).encode() + b"\n"
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                raise ConnectionError(f"Send failed: {e}") from e

            try:
                line = await asyncio.wait_for(self._reader.readline(), timeout=self.call_timeout)
            except TimeoutError:
                # Late replies would be read as answers to the next call
                await self.close()
                raise
            if not line:
                raise ConnectionError("Connection closed by helper")

            # The stream is out of step after a garbled or foreign reply
            try:
                response = json.loads(line.decode())
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                await self.close()
                raise SourceUnavailable(f"Invalid reply to {method}") from e
            if not isinstance(response, dict) or response.get("id") != request_id:
                await self.close()
                raise SourceUnavailable(f"Mismatched reply to {method}")

        if "error" in response:
            raise SourceUnavailable(f"{method} failed: {response['error']}")
        result = response.get("result")
        if not isinstance(result, str):
            raise SourceUnavailable(f"{method} returned no result")
        return result

    async def get_process_snapshot(self) -> str:
        return await self.call("getProcessSnapshot")

    async def get_system_info(self) -> str:
        return await self.call("getSystemInfo")


class SocketChannelProvider:
    """Channel provider for the helper's Unix socket.

    Availability is the socket file existing; permission is being able to read
    and write it. A watch task reports the socket appearing or disappearing and
    the bound connection dropping.
    """

    def __init__(
        self,
        socket_path: Path,
        connect_timeout: float = 2.0,
        call_timeout: float = 5.0,
        watch_interval: float = 1.0,
    ):
        self.socket_path = socket_path
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.watch_interval = watch_interval
        self._post: Callable[[Event], None] | None = None
        self._client: ChannelClient | None = None
        self._watch_task: asyncio.Task | None = None
        self._rebind_pending = False

    async def open(self, post: Callable[[Event], None]) -> None:
        self._post = post
        self._rebind_pending = False
        if self._watch_task is None:
            self._watch_task = asyncio.create_task(self._watch())

    def is_available(self) -> bool:
        return self.socket_path.exists()

    def has_permission(self) -> bool:
        return os.access(self.socket_path, os.R_OK | os.W_OK)

    async def request_permission(self) -> None:
        # Socket access is decided by file mode and group; there is nothing to prompt for
        granted = self.is_available() and self.has_permission()
        log.info("helper_permission_checked", granted=granted, path=str(self.socket_path))
        self._emit(PermissionResult(granted))

    async def bind(self) -> None:
        client = ChannelClient(self.socket_path, self.connect_timeout, self.call_timeout)
        try:
            await client.connect()
        except PermissionDenied as e:
            log.warning("helper_bind_denied", error=str(e))
            self._emit(PermissionResult(False))
            return
        except (OSError, TimeoutError) as e:
            log.warning("helper_bind_failed", error=str(e))
            self._emit(ChannelDied(str(e) or type(e).__name__))
            return

        self._client = client
        self._rebind_pending = False
        log.info("helper_bound", path=str(self.socket_path))
        self._emit(ServiceConnected(client))

    async def unbind(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None

    async def close(self) -> None:
        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
        await self.unbind()
        self._post = None

    def _emit(self, event: Event) -> None:
        if self._post:
            self._post(event)

    async def _watch(self) -> None:
        was_available = self.is_available()
        while True:
            await asyncio.sleep(self.watch_interval)
            available = self.is_available()

            if was_available and not available:
                await self.unbind()
                self._emit(ChannelDied("socket removed"))
            elif available and not was_available:
                self._emit(ChannelAvailable())
            elif self._client is not None and not self._client.connected:
                await self._client.close()
                self._client = None
                self._rebind_pending = True
                self._emit(ServiceDisconnected())
            elif available and self._rebind_pending:
                self._rebind_pending = False
                self._emit(ChannelAvailable())

            was_available = available


class LocalChannelProvider:
    """Provider that serves the privileged operations in-process.

    For running as a user who can already read /proc in full.
    """

    def __init__(self, collector_factory: Callable[[], ProcfsCollector] = ProcfsCollector):
        self.collector_factory = collector_factory
        self._post: Callable[[Event], None] | None = None

    async def open(self, post: Callable[[Event], None]) -> None:
        self._post = post

    def is_available(self) -> bool:
        return True

    def has_permission(self) -> bool:
        return True

    async def request_permission(self) -> None:
        if self._post:
            self._post(PermissionResult(True))

    async def bind(self) -> None:
        if self._post:
            self._post(ServiceConnected(LocalChannel(self.collector_factory())))

    async def unbind(self) -> None:
        pass

    async def close(self) -> None:
        self._post = None


class NullChannelProvider:
    """Provider with no privileged channel; sessions go straight to the fallback."""

    async def open(self, post: Callable[[Event], None]) -> None:
        pass

    def is_available(self) -> bool:
        return False

    def has_permission(self) -> bool:
        return False

    async def request_permission(self) -> None:
        pass

    async def bind(self) -> None:
        pass

    async def unbind(self) -> None:
        pass

    async def close(self) -> None:
        pass
