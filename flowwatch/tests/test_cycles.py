import itertools

from flowwatch.graph import Step, detect_all_feedback_loops, is_edge_feedback_loop, would_create_feedback_loop
from flowwatch.graph.cycles import build_adjacency_list, find_path


def _steps(edges: dict[str, list[str]]) -> list[Step]:
    return [Step(id=step_id, name=step_id.upper(), next_steps=targets) for step_id, targets in edges.items()]


def _reachable(edges: dict[str, list[str]], start: str, goal: str) -> bool:
    seen, stack = set(), [start]
    while stack:
        node = stack.pop()
        if node == goal:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(edges.get(node, []))
    return False


def test_back_edge_closes_loop_and_reports_path():
    steps = _steps({"a": ["b"], "b": ["c"], "c": []})

    info = would_create_feedback_loop(steps, "c", "a")

    assert info.is_feedback_loop
    assert info.cycle_steps == ["a", "b", "c"]
    assert info.cycle_length == 3


def test_forward_edge_is_not_a_loop():
    steps = _steps({"a": ["b"], "b": ["c"], "c": []})

    info = would_create_feedback_loop(steps, "a", "c")

    assert not info.is_feedback_loop
    assert info.cycle_steps == []
    assert info.cycle_length == 0


def test_shared_join_node_is_not_mistaken_for_cycle():
    # diamond: a -> b -> d, a -> c -> d; d is reached twice but never returns to a
    steps = _steps({"a": ["b", "c"], "b": ["d"], "c": ["d"], "d": []})

    assert not would_create_feedback_loop(steps, "b", "c").is_feedback_loop
    assert not detect_all_feedback_loops(steps)


def test_path_through_second_branch_is_found():
    # the first branch from b dead-ends at d; the loop back to a goes through c
    steps = _steps({"a": ["b"], "b": ["d", "c"], "c": ["d", "e"], "d": [], "e": []})

    info = would_create_feedback_loop(steps, "e", "a")

    assert info.cycle_steps == ["a", "b", "c", "e"]


def test_self_loop_is_cycle_of_length_one():
    steps = _steps({"a": ["b"], "b": []})

    info = would_create_feedback_loop(steps, "b", "b")

    assert info.is_feedback_loop
    assert info.cycle_steps == ["b", "b"]
    assert info.cycle_length == 1


def test_candidate_edge_is_not_persisted():
    steps = _steps({"a": ["b"], "b": []})

    would_create_feedback_loop(steps, "b", "a")

    assert steps[1].next_steps == []
    assert not is_edge_feedback_loop(steps, "a", "b").is_feedback_loop


def test_detect_all_feedback_loops_annotates_every_cycle_edge():
    steps = _steps({"a": ["b"], "b": ["c", "a"], "c": ["c"]})

    loops = detect_all_feedback_loops(steps)

    assert set(loops) == {"a-b", "b-a", "c-c"}
    assert loops["b-a"].cycle_steps == ["a", "b"]
    assert loops["a-b"].cycle_steps == ["b", "a"]
    assert loops["c-c"].cycle_length == 1


def test_would_create_matches_reachability_on_small_graphs():
    nodes = ["a", "b", "c", "d"]
    candidate_edges = [(s, t) for s, t in itertools.product(nodes, nodes) if s != t]
    # every DAG-ish subset of a fixed edge pool, checked against a plain reachability search
    pool = [("a", "b"), ("b", "c"), ("c", "d"), ("a", "c"), ("b", "d")]
    for size in range(len(pool) + 1):
        for subset in itertools.combinations(pool, size):
            edges: dict[str, list[str]] = {node: [] for node in nodes}
            for src, tgt in subset:
                edges[src].append(tgt)
            steps = _steps(edges)
            for src, tgt in candidate_edges:
                expected = _reachable(edges, tgt, src)
                assert would_create_feedback_loop(steps, src, tgt).is_feedback_loop is expected


def test_find_path_requires_at_least_one_edge():
    adjacency = build_adjacency_list(_steps({"a": ["b"], "b": []}))

    assert find_path(adjacency, "a", "a") == []
    assert find_path(adjacency, "a", "b") == ["a", "b"]
