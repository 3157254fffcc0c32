"""Event projection: dedup state, the projector and the merged timeline."""

from .dedup import FinishedExecutionSet, ProcessedEventSet
from .projector import mark_stopped, new_execution_state, project
from .state import (
    AgentResponse,
    AgentResponseStatus,
    ExecutionState,
    ExecutionStatus,
    FeedbackIteration,
    LlmResponse,
    Notice,
    NoticeLevel,
    ProjectionState,
    StepOutput,
    ToolCall,
    ToolCallStatus,
)
from .timeline import merge_timeline

__all__ = [
    "AgentResponse",
    "AgentResponseStatus",
    "ExecutionState",
    "ExecutionStatus",
    "FeedbackIteration",
    "FinishedExecutionSet",
    "LlmResponse",
    "Notice",
    "NoticeLevel",
    "ProcessedEventSet",
    "ProjectionState",
    "StepOutput",
    "ToolCall",
    "ToolCallStatus",
    "mark_stopped",
    "merge_timeline",
    "new_execution_state",
    "project",
]
