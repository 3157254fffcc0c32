"""In-memory view of one execution, folded from its event stream."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from flowwatch.events.models import FeedbackRole
from flowwatch.protocols.approval import ApprovalState
from flowwatch.protocols.feedback import FeedbackLoopState

EMPTY_LLM_RESPONSE_PLACEHOLDER = (
    "[Empty LLM response - this may indicate an issue with the LLM model or prompt]"
)
UNKNOWN_AGENT_NAME = "Unknown Agent"


class ExecutionStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # terminal, but the engine did not say how it ended
    FINISHED = "finished"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FINISHED,
    }
)


class ToolCallStatus(str, enum.Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentResponseStatus(str, enum.Enum):
    STREAMING = "streaming"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NoticeLevel(str, enum.Enum):
    INFO = "info"
    ERROR = "error"


@dataclass
class ExecutionState:
    is_running: bool = False
    current_step_id: Optional[str] = None
    completed_steps: Set[str] = field(default_factory=set)
    running_steps: Set[str] = field(default_factory=set)
    failed_steps: Set[str] = field(default_factory=set)
    skipped_steps: Set[str] = field(default_factory=set)

    def stop(self) -> None:
        """Clear running flags; completed steps are kept for display."""

        self.is_running = False
        self.current_step_id = None
        self.running_steps = set()


@dataclass
class LlmResponse:
    content: str
    round: int
    timestamp: datetime
    model_used: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.content

    @property
    def display_content(self) -> str:
        return self.content or EMPTY_LLM_RESPONSE_PLACEHOLDER


@dataclass
class ToolCall:
    tool_name: str
    round: int
    call_index: int
    timestamp: datetime
    status: ToolCallStatus = ToolCallStatus.STARTED
    result: Any = None

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.tool_name, self.round, self.call_index)


@dataclass
class FeedbackIteration:
    iteration: Optional[int]
    role: FeedbackRole
    output: str
    timestamp: datetime
    step_name: str


@dataclass
class StepOutput:
    llm_responses: List[LlmResponse] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    feedback_iterations: List[FeedbackIteration] = field(default_factory=list)
    final_output: Optional[str] = None
    streaming: Dict[int, str] = field(default_factory=dict)
    streaming_active: bool = False
    feedback_role: Optional[FeedbackRole] = None
    progress: Optional[float] = None
    progress_message: Optional[str] = None


@dataclass
class AgentResponse:
    step_id: str
    step_name: str
    agent_name: str
    output: str
    round: int
    status: AgentResponseStatus
    timestamp: datetime


@dataclass(frozen=True)
class Notice:
    key: str
    title: str
    description: str
    level: NoticeLevel = NoticeLevel.INFO


@dataclass
class ProjectionState:
    """Everything the monitor displays for the tracked execution."""

    execution_id: Optional[str] = None
    flow_name: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.IDLE
    execution: ExecutionState = field(default_factory=ExecutionState)
    step_outputs: Dict[str, StepOutput] = field(default_factory=dict)
    feedback_loops: Dict[str, FeedbackLoopState] = field(default_factory=dict)
    approval: ApprovalState = field(default_factory=ApprovalState)
    agent_responses: List[AgentResponse] = field(default_factory=list)
    notices: List[Notice] = field(default_factory=list)
    shown_notice_keys: Set[str] = field(default_factory=set)
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    def step_output(self, step_id: str) -> StepOutput:
        output = self.step_outputs.get(step_id)
        if output is None:
            output = StepOutput()
            self.step_outputs[step_id] = output
        return output

    def notify(self, key: str, title: str, description: str, level: NoticeLevel = NoticeLevel.INFO) -> bool:
        """Queue a notice unless one with ``key`` was already shown for this execution."""

        if key in self.shown_notice_keys:
            return False
        self.shown_notice_keys.add(key)
        self.notices.append(Notice(key=key, title=title, description=description, level=level))
        return True
