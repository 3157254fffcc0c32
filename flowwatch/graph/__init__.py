"""Flow graph model and feedback-loop cycle detection."""

from .cycles import (
    CycleInfo,
    detect_all_feedback_loops,
    is_edge_feedback_loop,
    would_create_feedback_loop,
)
from .loops import (
    create_feedback_loop_metadata,
    get_feedback_loop_config,
    is_feedback_loop_edge,
    validate_feedback_loop_config,
)
from .models import EdgeMetadata, FeedbackHistoryEntry, FlowDefinition, Step, StepType, edge_id

__all__ = [
    "CycleInfo",
    "EdgeMetadata",
    "FeedbackHistoryEntry",
    "FlowDefinition",
    "Step",
    "StepType",
    "create_feedback_loop_metadata",
    "detect_all_feedback_loops",
    "edge_id",
    "get_feedback_loop_config",
    "is_edge_feedback_loop",
    "is_feedback_loop_edge",
    "validate_feedback_loop_config",
    "would_create_feedback_loop",
]
