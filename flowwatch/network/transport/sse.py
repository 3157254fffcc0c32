"""Server-sent events transport backed by ``httpx``."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from flowwatch.config import MonitorSettings
from flowwatch.events.sse import SseDecoder
from flowwatch.network.errors import ConnectionError, StreamClosedError, StreamStatusError

from .base import BaseTransport

LOGGER = logging.getLogger(__name__)


class SseTransport(BaseTransport):
    """Reads ``GET /api/executions/{id}/stream`` and yields decoded events."""

    def __init__(
        self,
        settings: MonitorSettings,
        execution_id: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._execution_id = execution_id
        self._client = client
        self._owns_client = client is None
        self._response: Optional[httpx.Response] = None
        self._lines: Optional[AsyncIterator[str]] = None
        self._decoder = SseDecoder()

    @property
    def url(self) -> str:
        return f"{self._settings.api_root}/api/executions/{self._execution_id}/stream"

    async def connect(self) -> None:
        if self._client is None:
            timeout = httpx.Timeout(None, connect=self._settings.stream_connect_timeout_seconds)
            self._client = httpx.AsyncClient(timeout=timeout)
        params: dict[str, Any] = {}
        if self._settings.auth_token:
            params["token"] = self._settings.auth_token
        request = self._client.build_request(
            "GET",
            self.url,
            params=params,
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise ConnectionError(f"Failed to open event stream: {exc}") from exc
        if response.status_code != 200:
            await response.aclose()
            raise StreamStatusError(response.status_code)
        self._response = response
        self._lines = response.aiter_lines()
        self._decoder = SseDecoder()
        LOGGER.debug("Event stream opened for execution %s", self._execution_id)

    async def receive(self) -> dict[str, Any]:
        if self._lines is None:
            raise ConnectionError("Event stream is not open")
        while True:
            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                payload = self._decoder.flush()
                if payload is not None:
                    return payload
                raise StreamClosedError("Event stream closed by engine") from None
            except httpx.HTTPError as exc:
                raise ConnectionError(f"Event stream read failed: {exc}") from exc
            payload = self._decoder.feed(line)
            if payload is not None:
                return payload

    async def close(self) -> None:
        response, self._response = self._response, None
        self._lines = None
        if response is not None:
            await response.aclose()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        LOGGER.debug("Event stream closed for execution %s", self._execution_id)
