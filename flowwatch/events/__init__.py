"""Execution event models and stream decoding."""

from .models import (
    EVENT_MODELS,
    EVENT_TYPES,
    ApprovalGrantedEvent,
    ApprovalRejectedEvent,
    ApprovalRequiredEvent,
    ConnectionEstablishedEvent,
    ExecutionCancelledEvent,
    ExecutionCompletedEvent,
    ExecutionEvent,
    ExecutionEventBase,
    ExecutionFailedEvent,
    ExecutionStartedEvent,
    FeedbackCompletedEvent,
    FeedbackIterationEvent,
    FeedbackRole,
    FeedbackStartedEvent,
    HeartbeatEvent,
    LlmResponseEvent,
    LlmStreamingChunkEvent,
    StepCompletedEvent,
    StepFailedEvent,
    StepProgressEvent,
    StepSkippedEvent,
    StepStartedEvent,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
    parse_event,
)
from .sse import SseDecoder

__all__ = [
    "EVENT_MODELS",
    "EVENT_TYPES",
    "ApprovalGrantedEvent",
    "ApprovalRejectedEvent",
    "ApprovalRequiredEvent",
    "ConnectionEstablishedEvent",
    "ExecutionCancelledEvent",
    "ExecutionCompletedEvent",
    "ExecutionEvent",
    "ExecutionEventBase",
    "ExecutionFailedEvent",
    "ExecutionStartedEvent",
    "FeedbackCompletedEvent",
    "FeedbackIterationEvent",
    "FeedbackRole",
    "FeedbackStartedEvent",
    "HeartbeatEvent",
    "LlmResponseEvent",
    "LlmStreamingChunkEvent",
    "SseDecoder",
    "StepCompletedEvent",
    "StepFailedEvent",
    "StepProgressEvent",
    "StepSkippedEvent",
    "StepStartedEvent",
    "ToolCallCompletedEvent",
    "ToolCallStartedEvent",
    "parse_event",
]
