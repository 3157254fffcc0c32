"""Cycle detection used to classify edges as feedback loops.

An edge ``source -> target`` closes a feedback loop when ``target`` can already
reach ``source``. The search is a depth-first walk from ``target`` that hands
each recursive call its own copy of the visited set, so a join node reached
through two different branches is explored on both of them and only a path
that actually returns to ``source`` is reported. The per-branch copy makes the
worst case exponential on dense graphs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .models import Step, edge_id

AdjacencyList = Dict[str, List[str]]


@dataclass(frozen=True)
class CycleInfo:
    is_feedback_loop: bool
    cycle_steps: List[str] = field(default_factory=list)

    @property
    def cycle_length(self) -> int:
        # a self-loop is reported as [s, s] but is a cycle of one step
        return len(set(self.cycle_steps))


def build_adjacency_list(steps: Iterable[Step]) -> AdjacencyList:
    return {step.id: list(step.next_steps) for step in steps}


def find_path(
    adjacency: AdjacencyList,
    start_id: str,
    target_id: str,
    visited: Optional[Set[str]] = None,
    path: Optional[List[str]] = None,
) -> List[str]:
    """Return a path ``start_id ... target_id`` or ``[]`` when none exists.

    The path always contains at least one edge, so ``find_path(adj, s, s)``
    only succeeds when ``s`` lies on a cycle.
    """

    visited = visited if visited is not None else set()
    path = path if path is not None else []

    if start_id == target_id and path:
        return [*path, start_id]
    if start_id in visited:
        return []

    visited.add(start_id)
    path.append(start_id)
    for neighbour in adjacency.get(start_id, []):
        found = find_path(adjacency, neighbour, target_id, set(visited), list(path))
        if found:
            return found
    return []


def _cycle_info(path: List[str]) -> CycleInfo:
    return CycleInfo(is_feedback_loop=bool(path), cycle_steps=path)


def would_create_feedback_loop(steps: Iterable[Step], source_id: str, target_id: str) -> CycleInfo:
    """Check whether adding ``source_id -> target_id`` would close a cycle."""

    adjacency = build_adjacency_list(steps)
    adjacency.setdefault(source_id, []).append(target_id)
    return _cycle_info(find_path(adjacency, target_id, source_id))


def is_edge_feedback_loop(steps: Iterable[Step], source_id: str, target_id: str) -> CycleInfo:
    """Check whether an existing edge ``source_id -> target_id`` is part of a cycle."""

    adjacency = build_adjacency_list(steps)
    return _cycle_info(find_path(adjacency, target_id, source_id))


def detect_all_feedback_loops(steps: Iterable[Step]) -> Dict[str, CycleInfo]:
    """Classify every existing edge; only feedback-loop edges appear in the result."""

    steps = list(steps)
    adjacency = build_adjacency_list(steps)
    loops: Dict[str, CycleInfo] = {}
    for step in steps:
        for next_step_id in step.next_steps:
            path = find_path(adjacency, next_step_id, step.id)
            if path:
                loops[edge_id(step.id, next_step_id)] = _cycle_info(path)
    return loops
