"""Connection wrapper that owns one execution's event stream subscription."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from flowwatch.config import MonitorSettings
from flowwatch.network.errors import ConnectionError, StreamClosedError, StreamStatusError
from flowwatch.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[MonitorSettings, str], BaseTransport]

__all__ = [
    "ConnectionError",
    "StreamClosedError",
    "StreamConnection",
    "StreamStatusError",
    "TransportFactory",
]


class StreamConnection:
    """Keeps a subscription alive and exposes inbound events as an async iterator.

    Transport errors trigger a reconnect with exponential backoff until either
    ``stop_reconnecting()`` is called, the consecutive failure budget is spent
    or the engine rejects the credentials. The failure counter resets every
    time the transport comes up.
    """

    def __init__(
        self,
        settings: MonitorSettings,
        execution_id: str,
        transport_factory: TransportFactory,
        *,
        on_connecting: Optional[Callable[[int], Awaitable[None]]] = None,
        on_connect_failed: Optional[Callable[[int, Exception, float], Awaitable[None]]] = None,
        on_connected: Optional[Callable[[bool, int], Awaitable[None]]] = None,
        on_disconnect: Optional[Callable[[Exception], Awaitable[None]]] = None,
        on_give_up: Optional[Callable[[Exception], Awaitable[None]]] = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        jitter: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._settings = settings
        self._execution_id = execution_id
        self._transport_factory = transport_factory
        self._transport: Optional[BaseTransport] = None
        self._base_delay = float(base_delay if base_delay is not None else settings.reconnect_base_delay_seconds)
        self._max_delay = float(max_delay if max_delay is not None else settings.reconnect_max_delay_seconds)
        self._jitter = float(jitter if jitter is not None else settings.reconnect_jitter)
        self._max_attempts = int(max_attempts if max_attempts is not None else settings.reconnect_max_attempts)
        self._recv_queue: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self._run_task: Optional[asyncio.Task[None]] = None
        self._on_connecting = on_connecting
        self._on_connect_failed = on_connect_failed
        self._on_connected = on_connected
        self._on_disconnect = on_disconnect
        self._on_give_up = on_give_up
        self._stopped = asyncio.Event()
        self._reconnect_enabled = True
        self._ever_connected = False
        self._failures = 0
        self._last_error_type: Optional[str] = None

    @property
    def execution_id(self) -> str:
        return self._execution_id

    @property
    def is_connected(self) -> bool:
        return self._transport is not None

    @property
    def reconnect_enabled(self) -> bool:
        return self._reconnect_enabled

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def last_error_type(self) -> Optional[str]:
        return self._last_error_type

    async def start(self) -> None:
        """Start the background connect/receive loop."""

        if self._run_task and not self._run_task.done():
            return
        if self._stopped.is_set():
            raise ConnectionError("Connection already closed")
        self._run_task = asyncio.create_task(self._run(), name=f"stream-{self._execution_id}")

    def stop_reconnecting(self) -> None:
        """Disable automatic reconnection; the current transport stays open."""

        if self._reconnect_enabled:
            LOGGER.debug("Reconnection disabled for execution %s", self._execution_id)
        self._reconnect_enabled = False

    async def close(self) -> None:
        """Close the transport and stop the background loop."""

        self._reconnect_enabled = False
        self._stopped.set()
        task, self._run_task = self._run_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_transport()
        self._recv_queue.put_nowait(None)

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Async iterator of inbound raw events; ends when the connection stops."""

        while True:
            message = await self._recv_queue.get()
            if message is None:
                return
            yield message

    def _classify_error(self, exc: Exception) -> str:
        status_code = getattr(exc, "status_code", None)
        if status_code in {401, 403}:
            return "auth"
        if status_code in {400, 404}:
            return "protocol"
        if isinstance(exc, StreamClosedError):
            return "closed"
        message = str(exc).lower()
        if any(token in message for token in ("unauthorized", "forbidden", "invalid token")):
            return "auth"
        if any(token in message for token in ("timeout", "timed out", "refused", "unreachable", "reset")):
            return "network"
        return "unknown"

    def _is_fatal_error(self, error_type: str) -> bool:
        return error_type == "auth" and self._settings.reconnect_abort_on_auth_error

    def _backoff_delay(self, failures: int) -> float:
        delay = min(self._max_delay, self._base_delay * (2 ** (failures - 1)))
        if self._jitter:
            delay *= random.uniform(1 - self._jitter, 1 + self._jitter)
        return max(0.0, delay)

    async def _run(self) -> None:
        try:
            while not self._stopped.is_set():
                if self._transport is None and not await self._connect_with_backoff():
                    return
                try:
                    raw = await self._transport.receive()  # type: ignore[union-attr]
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    await self._handle_transport_error(exc)
                    continue
                await self._recv_queue.put(raw)
        finally:
            self._stopped.set()
            self._recv_queue.put_nowait(None)

    async def _handle_transport_error(self, exc: Exception) -> None:
        error_type = self._classify_error(exc)
        self._last_error_type = error_type
        await self._close_transport()
        if self._on_disconnect:
            try:
                await self._on_disconnect(exc)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress stream disconnect callback error", exc_info=True)
        if not self._reconnect_enabled or self._stopped.is_set():
            LOGGER.info("Event stream for execution %s ended: %s", self._execution_id, exc)
            self._stopped.set()
            return
        if self._is_fatal_error(error_type):
            await self._give_up(exc)
            return
        sleep_for = self._backoff_delay(1)
        LOGGER.warning(
            "Event stream error for execution %s, reconnecting in %.2fs: %s", self._execution_id, sleep_for, exc
        )
        await asyncio.sleep(sleep_for)

    async def _connect_with_backoff(self) -> bool:
        while not self._stopped.is_set():
            if self._ever_connected and not self._reconnect_enabled:
                return False
            attempt = self._failures + 1
            if self._on_connecting:
                try:
                    await self._on_connecting(attempt)
                except Exception:  # noqa: BLE001
                    LOGGER.debug("Suppress stream on_connecting callback error", exc_info=True)
            transport = self._transport_factory(self._settings, self._execution_id)
            try:
                await transport.connect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._failures += 1
                error_type = self._classify_error(exc)
                self._last_error_type = error_type
                try:
                    await transport.close()
                except Exception:  # noqa: BLE001
                    LOGGER.debug("Suppress stream close error", exc_info=True)
                if self._is_fatal_error(error_type):
                    LOGGER.warning("Event stream rejected for execution %s (%s): %s", self._execution_id, error_type, exc)
                    await self._give_up(exc)
                    return False
                if self._failures > self._max_attempts or not self._reconnect_enabled:
                    await self._give_up(exc)
                    return False
                sleep_for = self._backoff_delay(self._failures)
                if self._on_connect_failed:
                    try:
                        await self._on_connect_failed(attempt, exc, sleep_for)
                    except Exception:  # noqa: BLE001
                        LOGGER.debug("Suppress stream on_connect_failed callback error", exc_info=True)
                LOGGER.warning(
                    "Event stream connect failed (attempt %s): %s; retrying in %.2fs", attempt, exc, sleep_for
                )
                await asyncio.sleep(sleep_for)
                continue

            self._transport = transport
            initial = not self._ever_connected
            self._ever_connected = True
            self._failures = 0
            self._last_error_type = None
            LOGGER.info("Event stream for execution %s connected after %s attempt(s)", self._execution_id, attempt)
            if self._on_connected:
                try:
                    await self._on_connected(initial, attempt)
                except Exception:  # noqa: BLE001
                    LOGGER.debug("Suppress stream on_connected callback error", exc_info=True)
            return True
        return False

    async def _give_up(self, exc: Exception) -> None:
        LOGGER.warning(
            "Giving up on event stream for execution %s after %s failure(s): %s",
            self._execution_id,
            self._failures,
            exc,
        )
        self._stopped.set()
        if self._on_give_up:
            try:
                await self._on_give_up(exc)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress stream on_give_up callback error", exc_info=True)

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress stream close error", exc_info=True)
