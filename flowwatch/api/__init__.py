"""Engine REST client and payload models."""

from .client import (
    ExecutionConflictError,
    ExecutionNotFoundError,
    ExecutionRequestError,
    ExecutionsClient,
    ExecutionsClientError,
    ExecutionUnauthorizedError,
)
from .models import ApprovalResponse, ExecutionRunStatus, FlowExecution, FlowExecutionList

__all__ = [
    "ApprovalResponse",
    "ExecutionConflictError",
    "ExecutionNotFoundError",
    "ExecutionRequestError",
    "ExecutionRunStatus",
    "ExecutionsClient",
    "ExecutionsClientError",
    "ExecutionUnauthorizedError",
    "FlowExecution",
    "FlowExecutionList",
]
