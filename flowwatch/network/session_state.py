"""Connection state tracking for the execution event stream."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


class ConnectionStatus(enum.Enum):
    """Transport-level states; whether an execution has finished is tracked separately."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ConnectionState:
    """Displayed connectivity for the single live subscription."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    execution_id: Optional[str] = None
    last_transition_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status in {ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED}

    def is_active_for(self, execution_id: str) -> bool:
        return self.is_active and self.execution_id == execution_id

    def transition(self, next_state: ConnectionStatus, *, execution_id: Optional[str] = None) -> None:
        """Move into a new state, validating allowed transitions."""

        if next_state == self.status and execution_id in (None, self.execution_id):
            return
        if not self._is_valid_transition(self.status, next_state):
            raise ValueError(f"Invalid transition {self.status.value} -> {next_state.value}")
        self.status = next_state
        if execution_id is not None:
            self.execution_id = execution_id
        self.last_transition_at = datetime.now(tz=timezone.utc)

    def promote_on_liveness(self) -> bool:
        """A heartbeat proves the stream is up; returns True when the state changed."""

        if self.status == ConnectionStatus.CONNECTED or self.execution_id is None:
            return False
        self.transition(ConnectionStatus.CONNECTED)
        return True

    def reset(self) -> None:
        self.status = ConnectionStatus.DISCONNECTED
        self.execution_id = None
        self.last_transition_at = datetime.now(tz=timezone.utc)

    @staticmethod
    def _is_valid_transition(current: ConnectionStatus, nxt: ConnectionStatus) -> bool:
        allowed = {
            ConnectionStatus.DISCONNECTED: {ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED},
            ConnectionStatus.CONNECTING: {ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED},
            ConnectionStatus.CONNECTED: {ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED},
        }
        return nxt in allowed.get(current, set())
