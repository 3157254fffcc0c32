"""Errors raised by event stream transports and the connection wrapper."""

from __future__ import annotations


class ConnectionError(RuntimeError):
    """Raised when the event stream connection fails."""


class StreamClosedError(ConnectionError):
    """Raised when the engine ends the event stream."""


class StreamStatusError(ConnectionError):
    """Raised when the engine answers the stream request with a non-200 status."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"Event stream request failed with status {status_code}")
