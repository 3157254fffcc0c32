"""Flow graph models: steps, edges and per-edge feedback-loop configuration."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MIN_LOOP_ITERATIONS = 1
MAX_LOOP_ITERATIONS = 50
DEFAULT_LOOP_ITERATIONS = 25
DEFAULT_QUALITY_THRESHOLD = 0.8


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def edge_id(source_step_id: str, target_step_id: str) -> str:
    """Return the edge key used by ``edge_metadata`` maps."""

    return f"{source_step_id}-{target_step_id}"


class StepType(str, Enum):
    AGENT = "agent"
    APPROVAL = "approval"


class Step(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    type: StepType = StepType.AGENT
    agent_id: Optional[str] = None
    description: Optional[str] = None
    next_steps: List[str] = Field(default_factory=list)
    retry_count: int = Field(default=0, ge=0)
    timeout_seconds: Optional[int] = Field(default=None, alias="timeout", ge=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class FeedbackHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    iteration: int
    quality_score: Optional[float] = None
    acceptable: Optional[bool] = None
    timestamp: datetime = Field(default_factory=_utc_now)


class EdgeMetadata(BaseModel):
    """Per-edge configuration; only edges converted by the user carry an entry."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    edge_id: str
    source_step_id: str
    target_step_id: str
    is_feedback_loop: bool = False
    max_iterations: int = Field(
        default=DEFAULT_LOOP_ITERATIONS, ge=MIN_LOOP_ITERATIONS, le=MAX_LOOP_ITERATIONS
    )
    quality_threshold: float = Field(default=DEFAULT_QUALITY_THRESHOLD, ge=0.0, le=1.0)
    convergence_criteria: Optional[str] = None
    current_iteration: int = Field(default=0, ge=0)
    feedback_history: List[FeedbackHistoryEntry] = Field(default_factory=list)
    quality_scores: List[float] = Field(default_factory=list)


class FlowDefinition(BaseModel):
    """A flow as persisted by the engine: steps plus ``edge_metadata``."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    start_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    edge_metadata: Dict[str, EdgeMetadata] = Field(default_factory=dict)

    def step_map(self) -> Dict[str, Step]:
        return {step.id: step for step in self.steps}

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def has_edge(self, source_step_id: str, target_step_id: str) -> bool:
        step = self.get_step(source_step_id)
        return step is not None and target_step_id in step.next_steps

    def edges(self) -> List[tuple[str, str]]:
        return [(step.id, target) for step in self.steps for target in step.next_steps]

    def convert_edge_to_feedback_loop(
        self,
        source_step_id: str,
        target_step_id: str,
        *,
        max_iterations: Optional[int] = None,
        quality_threshold: Optional[float] = None,
        convergence_criteria: Optional[str] = None,
    ) -> EdgeMetadata:
        """Mark an existing edge as a bidirectional feedback loop and store its metadata."""

        from .loops import create_feedback_loop_metadata, validate_feedback_loop_config

        if not self.has_edge(source_step_id, target_step_id):
            raise ValueError(f"Flow has no edge {edge_id(source_step_id, target_step_id)}")
        errors = validate_feedback_loop_config(
            max_iterations=max_iterations, quality_threshold=quality_threshold
        )
        if errors:
            raise ValueError("; ".join(errors))
        key = edge_id(source_step_id, target_step_id)
        metadata = create_feedback_loop_metadata(
            key,
            source_step_id,
            target_step_id,
            max_iterations=max_iterations,
            quality_threshold=quality_threshold,
            convergence_criteria=convergence_criteria,
        )
        self.edge_metadata[key] = metadata
        return metadata

    def to_json(self, *, indent: Optional[int] = 2) -> str:
        return self.model_dump_json(indent=indent, by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, payload: str | bytes) -> FlowDefinition:
        return cls.model_validate_json(payload)
