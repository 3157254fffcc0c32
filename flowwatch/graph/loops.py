"""Feedback-loop edge configuration helpers."""

from __future__ import annotations

from typing import List, Mapping, Optional

from .models import (
    DEFAULT_LOOP_ITERATIONS,
    DEFAULT_QUALITY_THRESHOLD,
    MAX_LOOP_ITERATIONS,
    MIN_LOOP_ITERATIONS,
    EdgeMetadata,
)


def create_feedback_loop_metadata(
    edge_key: str,
    source_step_id: str,
    target_step_id: str,
    *,
    max_iterations: Optional[int] = None,
    quality_threshold: Optional[float] = None,
    convergence_criteria: Optional[str] = None,
) -> EdgeMetadata:
    """Build fresh metadata for a bidirectional feedback loop on ``edge_key``."""

    return EdgeMetadata(
        edge_id=edge_key,
        source_step_id=source_step_id,
        target_step_id=target_step_id,
        is_feedback_loop=True,
        max_iterations=max_iterations if max_iterations is not None else DEFAULT_LOOP_ITERATIONS,
        quality_threshold=(
            quality_threshold if quality_threshold is not None else DEFAULT_QUALITY_THRESHOLD
        ),
        convergence_criteria=convergence_criteria,
    )


def validate_feedback_loop_config(
    *,
    max_iterations: Optional[int] = None,
    quality_threshold: Optional[float] = None,
) -> List[str]:
    """Return human-readable validation errors; an empty list means the config is valid."""

    errors: List[str] = []
    if max_iterations is not None:
        if max_iterations < MIN_LOOP_ITERATIONS or max_iterations > MAX_LOOP_ITERATIONS:
            errors.append(
                f"Max iterations must be between {MIN_LOOP_ITERATIONS} and {MAX_LOOP_ITERATIONS}"
            )
    if quality_threshold is not None:
        if quality_threshold < 0.0 or quality_threshold > 1.0:
            errors.append("Quality threshold must be between 0.0 and 1.0")
    return errors


def is_feedback_loop_edge(edge_metadata: Mapping[str, EdgeMetadata], edge_key: str) -> bool:
    metadata = edge_metadata.get(edge_key)
    return bool(metadata and metadata.is_feedback_loop)


def get_feedback_loop_config(
    edge_metadata: Mapping[str, EdgeMetadata], edge_key: str
) -> Optional[EdgeMetadata]:
    metadata = edge_metadata.get(edge_key)
    if metadata is not None and metadata.is_feedback_loop:
        return metadata
    return None
