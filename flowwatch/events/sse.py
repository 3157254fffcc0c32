"""Incremental decoder for the engine's ``text/event-stream`` frames."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

LOGGER = logging.getLogger(__name__)

KEEPALIVE_PAYLOAD = "ping"


class SseDecoder:
    """Assemble ``data:`` lines into JSON event payloads.

    Lines are fed one at a time (without the trailing newline). A blank line
    dispatches the buffered frame. Keep-alive frames (``data: ping``), comment
    lines and frames whose payload is not a JSON object are dropped.
    """

    def __init__(self) -> None:
        self._data: List[str] = []
        self._last_event_id: Optional[str] = None
        self._frame_id: Optional[str] = None

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_event_id

    def feed(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "id":
            self._frame_id = value or None
        # "event" and "retry" fields carry nothing the consumer needs
        return None

    def flush(self) -> Optional[Dict[str, Any]]:
        """Dispatch whatever is buffered, for streams that end without a blank line."""

        return self._dispatch()

    def _dispatch(self) -> Optional[Dict[str, Any]]:
        data = "\n".join(self._data)
        frame_id = self._frame_id
        self._data = []
        self._frame_id = None
        if frame_id is not None:
            self._last_event_id = frame_id
        if not data or data.strip() == KEEPALIVE_PAYLOAD:
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Dropping undecodable stream frame: %s", exc)
            return None
        if not isinstance(payload, dict):
            LOGGER.warning("Dropping non-object stream frame: %r", payload)
            return None
        if frame_id is not None and not payload.get("id"):
            payload["id"] = frame_id
        return payload
