"""Execution event models emitted by the orchestration engine.

Every ``event_type`` has its own model whose ``data`` payload only carries the
fields that event needs. ``parse_event`` validates a raw mapping against the
discriminated union; unknown or malformed events are logged and dropped so that
engine-side additions never break the consumer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FeedbackRole(str, Enum):
    ASSESSOR = "assessor"
    IMPROVER = "improver"


class EventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _RoundData(EventData):
    round: int = 0

    @field_validator("round", mode="before")
    @classmethod
    def _default_round(cls, value: Any) -> Any:
        return 0 if value is None else value


class EmptyData(EventData):
    pass


class ConnectionEstablishedData(EventData):
    is_completed: bool = False


class StepStartedData(EventData):
    feedback_role: Optional[FeedbackRole] = None
    iteration: Optional[int] = None
    agent_name: Optional[str] = None


class StepResultPayload(EventData):
    output: Optional[str] = None


class StepCompletedData(EventData):
    feedback_role: Optional[FeedbackRole] = None
    iteration: Optional[int] = None
    agent_output: Optional[str] = None
    # Deprecated: older engine builds nest the output under result.output.
    result: Optional[StepResultPayload] = None

    @field_validator("result", mode="before")
    @classmethod
    def _ignore_non_mapping_result(cls, value: Any) -> Any:
        return value if value is None or isinstance(value, (dict, StepResultPayload)) else None

    @property
    def output(self) -> Optional[str]:
        if self.agent_output:
            return self.agent_output
        if self.result is not None and self.result.output:
            return self.result.output
        return None


class StepFailedData(EventData):
    error: Optional[str] = None


class StepProgressData(EventData):
    progress: Optional[float] = None
    status: Optional[str] = None


class ApprovalRequiredData(EventData):
    step_name: Optional[str] = None
    approval_message: Optional[str] = None
    content: Optional[str] = None


class ExecutionFinishedData(EventData):
    error: Optional[str] = None


class LlmStreamingChunkData(_RoundData):
    chunk: str = ""
    agent_name: Optional[str] = None


class LlmResponseData(_RoundData):
    content: Optional[str] = None
    model_used: Optional[str] = None
    agent_name: Optional[str] = None


class ToolCallStartedData(_RoundData):
    tool_name: str
    call_index: int = 0


class ToolCallCompletedData(_RoundData):
    tool_name: str
    call_index: Optional[int] = None
    success: bool = True
    result: Any = None


class FeedbackStartedData(EventData):
    edge_id: str
    source_step_id: str
    target_step_id: str
    # None means the edge's configured limit applies
    max_iterations: Optional[int] = None
    quality_threshold: Optional[float] = None

    @field_validator("max_iterations", mode="before")
    @classmethod
    def _unset_max_iterations(cls, value: Any) -> Any:
        return None if not value else value


class FeedbackIterationData(EventData):
    edge_id: str
    iteration: int
    max_iterations: Optional[int] = None
    quality_score: Optional[float] = None


class FeedbackCompletedData(EventData):
    edge_id: str
    converged: Optional[bool] = None
    iterations: Optional[int] = None
    final_score: Optional[float] = None


class ExecutionEventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    terminal: ClassVar[bool] = False
    deduplicated: ClassVar[bool] = True

    event_type: str
    id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    message: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)

    @field_validator("message", mode="before")
    @classmethod
    def _default_message(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("data", mode="before", check_fields=False)
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_terminal(self) -> bool:
        """Whether this event ends the execution (and with it the subscription)."""

        return self.terminal


class ConnectionEstablishedEvent(ExecutionEventBase):
    deduplicated: ClassVar[bool] = False

    event_type: Literal["connection_established"]
    data: ConnectionEstablishedData = Field(default_factory=ConnectionEstablishedData)

    @property
    def is_terminal(self) -> bool:
        return self.data.is_completed


class HeartbeatEvent(ExecutionEventBase):
    deduplicated: ClassVar[bool] = False

    event_type: Literal["heartbeat"]
    data: EmptyData = Field(default_factory=EmptyData)


class ExecutionStartedEvent(ExecutionEventBase):
    event_type: Literal["execution_started"]
    data: EmptyData = Field(default_factory=EmptyData)


class StepStartedEvent(ExecutionEventBase):
    event_type: Literal["step_started"]
    data: StepStartedData = Field(default_factory=StepStartedData)


class StepCompletedEvent(ExecutionEventBase):
    event_type: Literal["step_completed"]
    data: StepCompletedData = Field(default_factory=StepCompletedData)


class StepFailedEvent(ExecutionEventBase):
    event_type: Literal["step_failed"]
    data: StepFailedData = Field(default_factory=StepFailedData)


class StepSkippedEvent(ExecutionEventBase):
    event_type: Literal["step_skipped"]
    data: EmptyData = Field(default_factory=EmptyData)


class StepProgressEvent(ExecutionEventBase):
    event_type: Literal["step_progress"]
    data: StepProgressData = Field(default_factory=StepProgressData)


class ApprovalRequiredEvent(ExecutionEventBase):
    event_type: Literal["approval_required"]
    data: ApprovalRequiredData = Field(default_factory=ApprovalRequiredData)


class ApprovalGrantedEvent(ExecutionEventBase):
    event_type: Literal["approval_granted"]
    data: EmptyData = Field(default_factory=EmptyData)


class ApprovalRejectedEvent(ExecutionEventBase):
    event_type: Literal["approval_rejected"]
    data: EmptyData = Field(default_factory=EmptyData)


class ExecutionCompletedEvent(ExecutionEventBase):
    terminal: ClassVar[bool] = True

    event_type: Literal["execution_completed"]
    data: ExecutionFinishedData = Field(default_factory=ExecutionFinishedData)


class ExecutionFailedEvent(ExecutionEventBase):
    terminal: ClassVar[bool] = True

    event_type: Literal["execution_failed"]
    data: ExecutionFinishedData = Field(default_factory=ExecutionFinishedData)


class ExecutionCancelledEvent(ExecutionEventBase):
    terminal: ClassVar[bool] = True

    event_type: Literal["execution_cancelled"]
    data: ExecutionFinishedData = Field(default_factory=ExecutionFinishedData)


class LlmStreamingChunkEvent(ExecutionEventBase):
    event_type: Literal["llm_streaming_chunk"]
    data: LlmStreamingChunkData = Field(default_factory=LlmStreamingChunkData)


class LlmResponseEvent(ExecutionEventBase):
    event_type: Literal["llm_response"]
    data: LlmResponseData = Field(default_factory=LlmResponseData)


class ToolCallStartedEvent(ExecutionEventBase):
    event_type: Literal["tool_call_started"]
    data: ToolCallStartedData


class ToolCallCompletedEvent(ExecutionEventBase):
    event_type: Literal["tool_call_completed"]
    data: ToolCallCompletedData


class FeedbackStartedEvent(ExecutionEventBase):
    event_type: Literal["bidirectional_feedback_started"]
    data: FeedbackStartedData


class FeedbackIterationEvent(ExecutionEventBase):
    event_type: Literal["feedback_loop_iteration"]
    data: FeedbackIterationData


class FeedbackCompletedEvent(ExecutionEventBase):
    event_type: Literal["bidirectional_feedback_completed"]
    data: FeedbackCompletedData


EVENT_MODELS: tuple[type[ExecutionEventBase], ...] = (
    ConnectionEstablishedEvent,
    HeartbeatEvent,
    ExecutionStartedEvent,
    StepStartedEvent,
    StepCompletedEvent,
    StepFailedEvent,
    StepSkippedEvent,
    StepProgressEvent,
    ApprovalRequiredEvent,
    ApprovalGrantedEvent,
    ApprovalRejectedEvent,
    ExecutionCompletedEvent,
    ExecutionFailedEvent,
    ExecutionCancelledEvent,
    LlmStreamingChunkEvent,
    LlmResponseEvent,
    ToolCallStartedEvent,
    ToolCallCompletedEvent,
    FeedbackStartedEvent,
    FeedbackIterationEvent,
    FeedbackCompletedEvent,
)

ExecutionEvent = Annotated[
    Union[
        ConnectionEstablishedEvent,
        HeartbeatEvent,
        ExecutionStartedEvent,
        StepStartedEvent,
        StepCompletedEvent,
        StepFailedEvent,
        StepSkippedEvent,
        StepProgressEvent,
        ApprovalRequiredEvent,
        ApprovalGrantedEvent,
        ApprovalRejectedEvent,
        ExecutionCompletedEvent,
        ExecutionFailedEvent,
        ExecutionCancelledEvent,
        LlmStreamingChunkEvent,
        LlmResponseEvent,
        ToolCallStartedEvent,
        ToolCallCompletedEvent,
        FeedbackStartedEvent,
        FeedbackIterationEvent,
        FeedbackCompletedEvent,
    ],
    Field(discriminator="event_type"),
]

EVENT_TYPES: frozenset[str] = frozenset(
    get_args(model.model_fields["event_type"].annotation)[0] for model in EVENT_MODELS
)

_EVENT_ADAPTER: TypeAdapter[ExecutionEvent] = TypeAdapter(ExecutionEvent)


def parse_event(raw: Dict[str, Any]) -> Optional[ExecutionEventBase]:
    """Validate a raw engine event; returns ``None`` for unknown or malformed payloads."""

    if not isinstance(raw, dict):
        LOGGER.warning("Ignoring non-object event payload: %r", raw)
        return None
    event_type = raw.get("event_type")
    if event_type not in EVENT_TYPES:
        LOGGER.info("Ignoring unrecognized event type %r", event_type)
        return None
    try:
        return _EVENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        LOGGER.warning("Ignoring malformed %s event: %s", event_type, exc)
        return None
