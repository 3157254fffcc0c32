"""Event stream subscription: connection lifecycle, state and transports."""

from .connection import StreamConnection, TransportFactory
from .errors import ConnectionError, StreamClosedError, StreamStatusError
from .session_state import ConnectionState, ConnectionStatus

__all__ = [
    "ConnectionError",
    "ConnectionState",
    "ConnectionStatus",
    "StreamClosedError",
    "StreamConnection",
    "StreamStatusError",
    "TransportFactory",
]
