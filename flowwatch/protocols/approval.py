"""Human approval gate.

An ``approval_required`` event pauses the execution at a step. The user may
then send exactly one decision (approve or reject); the decision is only
confirmed by a later ``approval_granted`` / ``approval_rejected`` event. If
the HTTP call carrying the decision fails the gate goes back to ``pending`` so
the user can decide again.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_APPROVAL_CONTENT = "No content provided"


class ApprovalStateError(RuntimeError):
    """Raised when a decision is made while no decision is allowed."""


class ApprovalStatus(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    DECIDED = "decided"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class ApprovalRequest:
    step_id: str
    step_name: str
    message: str
    content: str = DEFAULT_APPROVAL_CONTENT


@dataclass(frozen=True)
class ApprovalState:
    status: ApprovalStatus = ApprovalStatus.IDLE
    request: Optional[ApprovalRequest] = None
    decision: Optional[bool] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


def require(state: ApprovalState, request: ApprovalRequest) -> ApprovalState:
    """Open the gate for ``request``; a repeated request for the same content is a no-op."""

    if state.status in {ApprovalStatus.PENDING, ApprovalStatus.DECIDED} and state.request == request:
        return state
    return ApprovalState(status=ApprovalStatus.PENDING, request=request)


def decide(state: ApprovalState, approved: bool) -> ApprovalState:
    if state.status == ApprovalStatus.DECIDED:
        raise ApprovalStateError("A decision was already submitted for this approval")
    if state.status != ApprovalStatus.PENDING:
        raise ApprovalStateError("No approval is pending")
    return replace(state, status=ApprovalStatus.DECIDED, decision=approved)


def revert(state: ApprovalState) -> ApprovalState:
    """Undo a decision whose submission failed."""

    if state.status != ApprovalStatus.DECIDED:
        return state
    return replace(state, status=ApprovalStatus.PENDING, decision=None)


def resolve(state: ApprovalState, approved: bool) -> ApprovalState:
    """Record the engine's confirmation of a decision."""

    if state.status == ApprovalStatus.DECIDED and state.decision is not None and state.decision != approved:
        LOGGER.warning(
            "Engine reported approval %s but the submitted decision was %s",
            "granted" if approved else "rejected",
            "approve" if state.decision else "reject",
        )
    return replace(state, status=ApprovalStatus.RESOLVED, decision=approved)


def clear(state: ApprovalState) -> ApprovalState:
    if state.status == ApprovalStatus.IDLE:
        return state
    return ApprovalState()
