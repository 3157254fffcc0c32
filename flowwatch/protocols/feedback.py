"""Bidirectional feedback-loop progress.

A feedback loop runs ``started -> (assessor feedback <-> improver revision)* ->
completed`` on one edge. The source step produces output and the target step
scores it; a score at or above the edge's quality threshold ends the loop,
otherwise the source revises until ``max_iterations`` is reached. Once either
happens later iteration events are ignored.

All functions here are pure: they return a new mapping and never mutate the
one passed in.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional

from flowwatch.graph.models import (
    DEFAULT_LOOP_ITERATIONS,
    DEFAULT_QUALITY_THRESHOLD,
    EdgeMetadata,
    FeedbackHistoryEntry,
)

LOGGER = logging.getLogger(__name__)

FeedbackLoops = Dict[str, "FeedbackLoopState"]


class CompletionReason(str, enum.Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class FeedbackLoopState:
    edge_id: str
    source_step_id: str
    target_step_id: str
    is_active: bool = True
    current_iteration: int = 0
    max_iterations: int = DEFAULT_LOOP_ITERATIONS
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD
    scores: Dict[int, float] = field(default_factory=dict)
    converged: Optional[bool] = None
    final_score: Optional[float] = None
    completion_reason: Optional[CompletionReason] = None

    @property
    def quality_scores(self) -> List[float]:
        return [self.scores[iteration] for iteration in sorted(self.scores)]

    @property
    def accepts_iterations(self) -> bool:
        return self.is_active and not self.converged and self.current_iteration < self.max_iterations

    def reached_threshold(self) -> bool:
        return any(score >= self.quality_threshold for score in self.scores.values())


def start_loop(
    loops: Mapping[str, FeedbackLoopState],
    *,
    edge_id: str,
    source_step_id: str,
    target_step_id: str,
    max_iterations: Optional[int] = None,
    quality_threshold: Optional[float] = None,
) -> FeedbackLoops:
    """Activate the loop on ``edge_id``; an already active loop is left untouched."""

    existing = loops.get(edge_id)
    if existing is not None and existing.is_active:
        return dict(loops)
    updated = dict(loops)
    updated[edge_id] = FeedbackLoopState(
        edge_id=edge_id,
        source_step_id=source_step_id,
        target_step_id=target_step_id,
        max_iterations=max_iterations if max_iterations else DEFAULT_LOOP_ITERATIONS,
        quality_threshold=quality_threshold if quality_threshold is not None else DEFAULT_QUALITY_THRESHOLD,
    )
    return updated


def record_iteration(
    loops: Mapping[str, FeedbackLoopState],
    edge_id: str,
    iteration: int,
    *,
    quality_score: Optional[float] = None,
) -> FeedbackLoops:
    loop = loops.get(edge_id)
    if loop is None:
        LOGGER.debug("Ignoring iteration %s for unknown feedback loop %s", iteration, edge_id)
        return dict(loops)
    if iteration < loop.current_iteration:
        LOGGER.debug("Ignoring stale iteration %s for feedback loop %s", iteration, edge_id)
        return dict(loops)
    if iteration > loop.current_iteration and not loop.accepts_iterations:
        LOGGER.debug("Feedback loop %s already finished iterating; ignoring iteration %s", edge_id, iteration)
        return dict(loops)
    if iteration > loop.max_iterations:
        LOGGER.debug("Iteration %s exceeds max %s for feedback loop %s", iteration, loop.max_iterations, edge_id)
        return dict(loops)

    scores = dict(loop.scores)
    converged = loop.converged
    if quality_score is not None:
        scores[iteration] = quality_score
        if quality_score >= loop.quality_threshold:
            converged = True
    updated = dict(loops)
    updated[edge_id] = replace(loop, current_iteration=iteration, scores=scores, converged=converged)
    return updated


def complete_loop(
    loops: Mapping[str, FeedbackLoopState],
    edge_id: str,
    *,
    converged: Optional[bool] = None,
    iterations: Optional[int] = None,
    final_score: Optional[float] = None,
) -> FeedbackLoops:
    """Deactivate the loop and record whether it converged or ran out of iterations."""

    loop = loops.get(edge_id)
    if loop is None:
        LOGGER.debug("Ignoring completion for unknown feedback loop %s", edge_id)
        return dict(loops)
    if converged is None:
        converged = loop.reached_threshold()
    if final_score is None and loop.scores:
        final_score = loop.quality_scores[-1]
    updated = dict(loops)
    updated[edge_id] = replace(
        loop,
        is_active=False,
        current_iteration=iterations if iterations is not None else loop.current_iteration,
        converged=converged,
        final_score=final_score,
        completion_reason=CompletionReason.CONVERGED if converged else CompletionReason.MAX_ITERATIONS,
    )
    return updated


def apply_loop_to_edge_metadata(metadata: EdgeMetadata, loop: FeedbackLoopState) -> EdgeMetadata:
    """Fold a loop's progress into its edge metadata for display."""

    history = [
        FeedbackHistoryEntry(
            iteration=iteration,
            quality_score=score,
            acceptable=score >= loop.quality_threshold,
        )
        for iteration, score in sorted(loop.scores.items())
    ]
    return metadata.model_copy(
        update={
            "current_iteration": loop.current_iteration,
            "quality_scores": loop.quality_scores,
            "feedback_history": history,
        }
    )
