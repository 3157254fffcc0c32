"""Approval gate and feedback-loop protocols."""

from .approval import ApprovalRequest, ApprovalState, ApprovalStateError, ApprovalStatus
from .feedback import CompletionReason, FeedbackLoopState

__all__ = [
    "ApprovalRequest",
    "ApprovalState",
    "ApprovalStateError",
    "ApprovalStatus",
    "CompletionReason",
    "FeedbackLoopState",
]
