"""HTTP client for the orchestration engine's execution APIs."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urljoin

import requests
from pydantic import ValidationError
from requests import Response

from flowwatch.config import MonitorSettings, get_settings

from .models import ApprovalResponse, FlowExecution, FlowExecutionList

LOGGER = logging.getLogger(__name__)


class ExecutionsClientError(Exception):
    """Base error for execution API operations."""


class ExecutionNotFoundError(ExecutionsClientError):
    """Raised when the engine returns 404."""


class ExecutionUnauthorizedError(ExecutionsClientError):
    """Raised when engine authentication fails."""


class ExecutionConflictError(ExecutionsClientError):
    """Raised when the engine reports a conflicting execution state."""


class ExecutionRequestError(ExecutionsClientError):
    """Raised for unexpected engine failures."""


class ExecutionsClient:
    def __init__(
        self,
        *,
        base_url: str,
        auth_token: str | None,
        timeout_seconds: float,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: MonitorSettings | None = None) -> ExecutionsClient:
        settings = settings or get_settings()
        return cls(
            base_url=settings.api_root,
            auth_token=settings.auth_token,
            timeout_seconds=float(settings.request_timeout_seconds),
        )

    def execute_flow(
        self,
        flow_id: str,
        *,
        input_data: Dict[str, Any] | None = None,
        variables: Dict[str, Any] | None = None,
    ) -> FlowExecution:
        payload = {"input_data": input_data or {}, "variables": variables or {}}
        body = self._request_json("POST", f"/api/flows/{flow_id}/execute", json_body=payload)
        return self._parse(FlowExecution, body)

    def cancel_execution(self, execution_id: str) -> None:
        self._request("POST", f"/api/executions/{execution_id}/cancel")

    def submit_approval(self, execution_id: str, approved: bool) -> ApprovalResponse:
        # older engine builds read the decision from the query string
        body = self._request_json(
            "POST",
            f"/api/executions/{execution_id}/approve",
            params={"approved": "true" if approved else "false"},
            json_body={"approved": approved},
        )
        if not body:
            return ApprovalResponse(approved=approved)
        return self._parse(ApprovalResponse, body)

    def list_executions(
        self,
        *,
        flow_id: str | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> FlowExecutionList:
        params = {"flow_id": flow_id, "skip": skip, "limit": limit}
        body = self._request_json("GET", "/api/executions", params=params)
        return self._parse(FlowExecutionList, body)

    def get_execution(self, execution_id: str) -> FlowExecution:
        body = self._request_json("GET", f"/api/executions/{execution_id}")
        return self._parse(FlowExecution, body)

    def list_execution_events(self, execution_id: str) -> List[Dict[str, Any]]:
        """Return the raw persisted events of an execution, oldest first."""

        response = self._request("GET", f"/api/executions/{execution_id}/events")
        if not response.content:
            return []
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise ExecutionRequestError("Engine returned invalid JSON.") from exc
        if isinstance(body, dict):
            body = body.get("events", [])
        if not isinstance(body, list):
            raise ExecutionRequestError("Engine returned an unexpected events payload.")
        return [item for item in body if isinstance(item, dict)]

    def stream_url(self, execution_id: str) -> str:
        params = {"token": self._auth_token} if self._auth_token else None
        return self._build_url(f"/api/executions/{execution_id}/stream", params=params)

    @staticmethod
    def _parse(model: type, body: Dict[str, Any]) -> Any:
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise ExecutionRequestError(f"Engine returned an invalid {model.__name__} payload.") from exc

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, object] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = self._request(method, path, params=params, json_body=json_body)
        if not response.content:
            return {}
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise ExecutionRequestError("Engine returned invalid JSON.") from exc
        if not isinstance(body, dict):
            raise ExecutionRequestError("Engine returned an unexpected payload.")
        return body

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, object] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Response:
        url = self._build_url(path, params=params)
        LOGGER.debug("%s %s", method, url)
        try:
            response = requests.request(
                method,
                url,
                headers=self._build_headers(),
                json=json_body,
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ExecutionRequestError(str(exc)) from exc
        if response.status_code >= 400:
            self._raise_for_status(response)
        return response

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    def _build_url(self, path: str, *, params: Optional[dict[str, object]] = None) -> str:
        url = urljoin(f"{self._base_url}/", path.lstrip("/"))
        if params:
            query = urlencode({key: value for key, value in params.items() if value is not None})
            if query:
                return f"{url}?{query}"
        return url

    @staticmethod
    def _raise_for_status(response: Response) -> None:
        if response.status_code == 404:
            raise ExecutionNotFoundError("Execution resource not found.")
        if response.status_code in {401, 403}:
            raise ExecutionUnauthorizedError("Engine access denied.")
        if response.status_code == 409:
            raise ExecutionConflictError("Execution state conflict.")
        raise ExecutionRequestError(f"Engine request failed with status {response.status_code}.")


__all__ = [
    "ExecutionsClient",
    "ExecutionsClientError",
    "ExecutionNotFoundError",
    "ExecutionUnauthorizedError",
    "ExecutionConflictError",
    "ExecutionRequestError",
]
