"""Event stream transports."""

from .base import BaseTransport
from .dummy import DummyTransport
from .sse import SseTransport

__all__ = ["BaseTransport", "DummyTransport", "SseTransport"]
