"""Scripted in-memory transport for offline runs and tests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from flowwatch.network.errors import StreamClosedError

from .base import BaseTransport

LOGGER = logging.getLogger(__name__)


class DummyTransport(BaseTransport):
    """Replays a fixed list of raw events, then idles (or ends the stream)."""

    def __init__(
        self,
        events: Iterable[dict[str, Any]] = (),
        *,
        close_when_drained: bool = False,
        delay: float = 0.0,
    ) -> None:
        self._pending = list(events)
        self._close_when_drained = close_when_drained
        self._delay = delay
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        LOGGER.debug("Dummy transport connect()")
        self.connected = True
        self.closed = False

    async def receive(self) -> dict[str, Any]:
        if self._pending:
            if self._delay:
                await asyncio.sleep(self._delay)
            return self._pending.pop(0)
        if self._close_when_drained:
            raise StreamClosedError("Dummy stream drained")
        LOGGER.debug("Dummy transport receive() (idle)")
        await asyncio.sleep(3600)
        return {}

    async def close(self) -> None:
        LOGGER.debug("Dummy transport close()")
        self.closed = True

    def push(self, event: dict[str, Any], *, index: Optional[int] = None) -> None:
        if index is None:
            self._pending.append(event)
        else:
            self._pending.insert(index, event)
