"""Execution tracker: one live subscription folded into one projection.

The tracker owns the delivery dedup sets, the displayed connection state, the
current :class:`ProjectionState` and the command surface (run, cancel,
approve, reject). Events are applied by a single pump task in receipt order.
When a terminal event arrives reconnection is disabled first, then the
execution is marked finished and the event projected, and only then is the
subscription closed.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from flowwatch.api import ExecutionsClient, ExecutionsClientError, FlowExecution
from flowwatch.config import MonitorSettings, get_settings
from flowwatch.events.models import ExecutionEventBase, parse_event
from flowwatch.graph.models import FlowDefinition
from flowwatch.network.connection import StreamConnection, TransportFactory
from flowwatch.network.session_state import ConnectionState, ConnectionStatus
from flowwatch.network.transport.base import BaseTransport
from flowwatch.network.transport.sse import SseTransport
from flowwatch.projection import (
    ExecutionState,
    ExecutionStatus,
    FinishedExecutionSet,
    Notice,
    NoticeLevel,
    ProcessedEventSet,
    ProjectionState,
    mark_stopped,
    new_execution_state,
    project,
)
from flowwatch.protocols import approval as approval_gate

LOGGER = logging.getLogger(__name__)

LIVENESS_EVENT_TYPES = frozenset({"heartbeat", "connection_established"})


class TrackerError(RuntimeError):
    """Raised when a tracker command is not valid in the current state."""


class ExecutionAlreadyRunningError(TrackerError):
    """Raised when starting a run while another one is being tracked."""


class NoRunningExecutionError(TrackerError):
    """Raised when a command needs a tracked execution and there is none."""


def default_transport_factory(settings: MonitorSettings, execution_id: str) -> BaseTransport:
    return SseTransport(settings, execution_id)


class ExecutionTracker:
    """Tracks a single execution at a time."""

    def __init__(
        self,
        settings: MonitorSettings | None = None,
        *,
        client: ExecutionsClient | None = None,
        transport_factory: TransportFactory | None = None,
        flow: FlowDefinition | None = None,
        on_notice: Optional[Callable[[Notice], Awaitable[None]]] = None,
        connection_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or ExecutionsClient.from_settings(self._settings)
        self._transport_factory = transport_factory or default_transport_factory
        self._flow = flow
        self._on_notice = on_notice
        self._connection_options = dict(connection_options or {})
        self.processed = ProcessedEventSet()
        self.finished = FinishedExecutionSet()
        self.connection_state = ConnectionState()
        self._state = ProjectionState()
        self._delivered_notices = 0
        self._connection: Optional[StreamConnection] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._watchdog_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> ProjectionState:
        return self._state

    @property
    def execution_id(self) -> Optional[str]:
        return self._state.execution_id

    @property
    def connection(self) -> Optional[StreamConnection]:
        return self._connection

    @property
    def flow(self) -> Optional[FlowDefinition]:
        return self._flow

    # ------------------------------------------------------------------ commands

    async def run(
        self,
        flow_id: str,
        *,
        input_data: Dict[str, Any] | None = None,
        variables: Dict[str, Any] | None = None,
    ) -> str:
        """Ask the engine to start ``flow_id`` and subscribe to the new execution."""

        if self._state.execution.is_running and self._connection is not None:
            raise ExecutionAlreadyRunningError("Flow is already running")
        flow_name = self._flow_name()
        try:
            execution = await asyncio.to_thread(
                self._client.execute_flow, flow_id, input_data=input_data, variables=variables
            )
        except ExecutionsClientError as exc:
            LOGGER.error("Failed to start flow %s: %s", flow_id, exc)
            self._state.notify(
                f"run_failed:{flow_id}:{len(self._state.notices)}",
                "Execution Failed",
                "Failed to start flow execution",
                NoticeLevel.ERROR,
            )
            await self._deliver_notices()
            raise

        LOGGER.info("Started execution %s of flow %s", execution.id, flow_id)
        state = new_execution_state(execution.id, flow_name=flow_name)
        state.notify("run_started", "Flow Execution Started", f'Executing "{flow_name or "Flow"}" with real agents')
        await self._attach(execution.id, is_new_execution=True, initial_state=state)
        return execution.id

    async def connect(self, execution_id: str, *, is_new_execution: bool = False) -> bool:
        """Subscribe to ``execution_id``; returns False when nothing was opened.

        Joining an execution this tracker did not start seeds the state from
        the engine, so replayed ``execution_started`` events are treated as a
        reconnection.
        """

        initial_state = None
        if (
            not is_new_execution
            and execution_id != self._state.execution_id
            and execution_id not in self.finished
        ):
            initial_state = await self._reconnect_state(execution_id)
        return await self._attach(execution_id, is_new_execution=is_new_execution, initial_state=initial_state)

    async def resume_on_load(self, flow_id: str, *, now: datetime | None = None) -> Optional[str]:
        """Reattach to a recent running execution of ``flow_id`` unless it looks stale."""

        listing = await asyncio.to_thread(
            self._client.list_executions,
            flow_id=flow_id,
            skip=0,
            limit=self._settings.recent_executions_limit,
        )
        threshold = timedelta(seconds=self._settings.stale_execution_seconds)
        now = now or datetime.now(timezone.utc)
        for execution in listing.executions:
            if not execution.is_running or execution.id in self.finished:
                continue
            if self.connection_state.is_active_for(execution.id):
                LOGGER.debug("Already tracking execution %s", execution.id)
                return None
            if execution.is_stale(threshold, now):
                LOGGER.info(
                    "Not resuming stale execution %s (last update %s)", execution.id, execution.last_activity
                )
                continue
            LOGGER.info("Resuming execution %s of flow %s", execution.id, flow_id)
            opened = await self._attach(
                execution.id,
                is_new_execution=False,
                initial_state=self._seed_from(execution),
            )
            return execution.id if opened else None
        return None

    async def replay_history(self) -> int:
        """Fold the engine's persisted events for the tracked execution; returns how many applied."""

        execution_id = self._require_execution()
        raw_events = await asyncio.to_thread(self._client.list_execution_events, execution_id)
        applied = 0
        for raw in raw_events:
            if await self.handle_raw(raw):
                applied += 1
        return applied

    async def cancel(self) -> None:
        """Request cancellation and stop showing the execution as running right away.

        If ``execution_cancelled`` does not arrive within
        ``cancel_confirm_timeout_seconds`` the tracker stops watching anyway.
        """

        execution_id = self._require_execution()
        if execution_id in self.finished or not self._state.execution.is_running:
            raise NoRunningExecutionError("No running execution to cancel")
        await asyncio.to_thread(self._client.cancel_execution, execution_id)
        LOGGER.info("Cancellation requested for execution %s", execution_id)
        self._state = mark_stopped(self._state)
        self._stop_watchdog()
        self._watchdog_task = asyncio.create_task(
            self._cancel_watchdog(execution_id, float(self._settings.cancel_confirm_timeout_seconds)),
            name=f"cancel-watchdog-{execution_id}",
        )

    async def approve(self) -> None:
        await self._decide(True)

    async def reject(self) -> None:
        await self._decide(False)

    async def stop_watching(self) -> None:
        """Give up on the tracked execution locally: mark it finished and close."""

        if self._connection is not None:
            self._connection.stop_reconnecting()
        execution_id = self._state.execution_id
        if execution_id:
            self.finished.add(execution_id)
        self._state = mark_stopped(self._state)
        await self._close_connection()
        await self._deliver_notices()

    async def close(self) -> None:
        self._stop_watchdog()
        await self._close_connection()

    async def wait_closed(self) -> None:
        """Wait until the current subscription ends for any reason."""

        while True:
            task = self._pump_task
            if task is None or task.done():
                return
            await asyncio.wait({task})

    # ------------------------------------------------------------------ events

    async def handle_raw(self, raw: Dict[str, Any]) -> bool:
        event = parse_event(raw)
        if event is None:
            return False
        return await self.handle_event(event)

    async def handle_event(self, event: ExecutionEventBase) -> bool:
        """Apply one event; returns False when it was dropped."""

        tracked = self._state.execution_id
        if event.execution_id and tracked and event.execution_id != tracked:
            LOGGER.debug(
                "Dropping %s for execution %s while tracking %s",
                event.event_type,
                event.execution_id,
                tracked,
            )
            return False
        if not self.processed.admit(event):
            return False

        event_type = event.event_type
        if event_type in LIVENESS_EVENT_TYPES and self._settings.heartbeat_promotes_connected:
            if self.connection_state.promote_on_liveness():
                LOGGER.info("Event stream for execution %s confirmed by %s", tracked, event_type)

        terminal = event.is_terminal
        if terminal:
            if self._connection is not None:
                self._connection.stop_reconnecting()
            if tracked:
                self.finished.add(tracked)
            self._stop_watchdog()

        self._state = project(
            self._state,
            event,
            steps=self._flow.steps if self._flow else None,
            edge_metadata=self._flow.edge_metadata if self._flow else None,
        )

        if terminal:
            await self._close_connection()
        await self._deliver_notices()
        return True

    # ------------------------------------------------------------------ internals

    def _flow_name(self) -> Optional[str]:
        return self._flow.name if self._flow and self._flow.name else None

    def _require_execution(self) -> str:
        execution_id = self._state.execution_id
        if not execution_id:
            raise NoRunningExecutionError("No execution is being tracked")
        return execution_id

    def _seed_from(self, execution: FlowExecution) -> ProjectionState:
        return ProjectionState(
            execution_id=execution.id,
            flow_name=self._flow_name(),
            status=ExecutionStatus.RUNNING,
            execution=ExecutionState(
                is_running=True,
                current_step_id=execution.current_step_id,
                completed_steps=set(execution.completed_steps),
                failed_steps=set(execution.failed_steps),
            ),
        )

    async def _reconnect_state(self, execution_id: str) -> ProjectionState:
        try:
            execution = await asyncio.to_thread(self._client.get_execution, execution_id)
        except ExecutionsClientError as exc:
            LOGGER.warning("Could not load execution %s before subscribing: %s", execution_id, exc)
            state = new_execution_state(execution_id, flow_name=self._flow_name())
        else:
            if execution.is_running:
                state = self._seed_from(execution)
            else:
                state = ProjectionState(execution_id=execution_id, flow_name=self._flow_name())
        # the run started before this subscription
        state.shown_notice_keys.add("execution_started")
        return state

    def _replace_state(self, state: ProjectionState) -> None:
        self._state = state
        self._delivered_notices = 0

    async def _attach(
        self,
        execution_id: str,
        *,
        is_new_execution: bool,
        initial_state: ProjectionState | None = None,
    ) -> bool:
        if execution_id in self.finished:
            LOGGER.info("Execution %s already finished; not subscribing", execution_id)
            return False
        if self._connection is not None and self.connection_state.is_active_for(execution_id):
            LOGGER.debug("Already subscribed to execution %s", execution_id)
            return False

        switching = self._state.execution_id != execution_id
        if self._connection is not None:
            await self._close_connection()
        self._stop_watchdog()
        if switching or is_new_execution:
            self.processed.clear()
        if initial_state is not None:
            self._replace_state(initial_state)
        elif switching:
            self._replace_state(ProjectionState(execution_id=execution_id, flow_name=self._flow_name()))

        self.connection_state.transition(ConnectionStatus.CONNECTING, execution_id=execution_id)
        connection = self._build_connection(execution_id)
        self._connection = connection
        await connection.start()
        self._pump_task = asyncio.create_task(self._pump(connection), name=f"events-{execution_id}")
        await self._deliver_notices()
        return True

    def _build_connection(self, execution_id: str) -> StreamConnection:
        def current() -> bool:
            return self._connection is connection

        async def on_connecting(attempt: int) -> None:
            if current():
                self.connection_state.transition(ConnectionStatus.CONNECTING)

        async def on_connected(initial: bool, attempt: int) -> None:
            if current():
                self.connection_state.transition(ConnectionStatus.CONNECTED)

        async def on_connect_failed(attempt: int, exc: Exception, delay: float) -> None:
            if not current():
                return
            self._state.notify(
                "connection_issue",
                "Connection Issue",
                "Attempting to reconnect to execution stream...",
            )
            await self._deliver_notices()

        async def on_disconnect(exc: Exception) -> None:
            if not current():
                return
            if connection.reconnect_enabled:
                self.connection_state.transition(ConnectionStatus.CONNECTING)
            else:
                self.connection_state.transition(ConnectionStatus.DISCONNECTED)

        async def on_give_up(exc: Exception) -> None:
            if not current():
                return
            self.connection_state.transition(ConnectionStatus.DISCONNECTED)
            self._state.notify(
                "connection_error",
                "Connection Error",
                "Failed to connect to execution stream. Please try again.",
                NoticeLevel.ERROR,
            )
            await self._deliver_notices()

        connection = StreamConnection(
            self._settings,
            execution_id,
            self._transport_factory,
            on_connecting=on_connecting,
            on_connected=on_connected,
            on_connect_failed=on_connect_failed,
            on_disconnect=on_disconnect,
            on_give_up=on_give_up,
            **self._connection_options,
        )
        return connection

    async def _pump(self, connection: StreamConnection) -> None:
        try:
            async for raw in connection.messages():
                if connection is not self._connection:
                    break
                try:
                    await self.handle_raw(raw)
                except asyncio.CancelledError:
                    raise
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Failed to apply event %r", raw.get("event_type"))
        finally:
            if connection is self._connection and connection.is_stopped:
                LOGGER.info("Event stream for execution %s ended", connection.execution_id)
                self._connection = None
                self._pump_task = None
                self.connection_state.reset()

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        pump, self._pump_task = self._pump_task, None
        if connection is not None:
            await connection.close()
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        self.connection_state.reset()

    async def _decide(self, approved: bool) -> None:
        execution_id = self._require_execution()
        state = copy.deepcopy(self._state)
        state.approval = approval_gate.decide(state.approval, approved)
        self._state = state
        try:
            await asyncio.to_thread(self._client.submit_approval, execution_id, approved)
        except ExecutionsClientError as exc:
            LOGGER.error("Failed to submit approval decision for %s: %s", execution_id, exc)
            state = copy.deepcopy(self._state)
            state.approval = approval_gate.revert(state.approval)
            state.notify(
                f"approval_submit_failed:{len(state.notices)}",
                "Error",
                "Failed to submit approval" if approved else "Failed to submit rejection",
                NoticeLevel.ERROR,
            )
            self._state = state
            await self._deliver_notices()
            raise
        if approved:
            self._state.notify(
                f"approval_submitted:{len(self._state.notices)}", "Approval Granted", "Continuing flow execution..."
            )
        else:
            self._state.notify(
                f"approval_submitted:{len(self._state.notices)}", "Approval Rejected", "Retrying previous step..."
            )
        await self._deliver_notices()

    async def _cancel_watchdog(self, execution_id: str, timeout: float) -> None:
        await asyncio.sleep(timeout)
        self._watchdog_task = None
        if execution_id in self.finished or self._state.execution_id != execution_id:
            return
        LOGGER.warning(
            "No cancellation confirmation for execution %s after %.1fs; stopping watch", execution_id, timeout
        )
        await self.stop_watching()

    def _stop_watchdog(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _deliver_notices(self) -> None:
        notices = self._state.notices[self._delivered_notices :]
        self._delivered_notices = len(self._state.notices)
        for notice in notices:
            log = LOGGER.error if notice.level == NoticeLevel.ERROR else LOGGER.info
            log("%s: %s", notice.title, notice.description)
            if self._on_notice:
                try:
                    await self._on_notice(notice)
                except Exception:  # noqa: BLE001
                    LOGGER.debug("Suppress notice callback error", exc_info=True)


__all__ = [
    "ExecutionAlreadyRunningError",
    "ExecutionTracker",
    "NoRunningExecutionError",
    "TrackerError",
    "default_transport_factory",
]
