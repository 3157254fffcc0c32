import pytest
from pydantic import ValidationError

from flowwatch.graph import (
    EdgeMetadata,
    FlowDefinition,
    Step,
    StepType,
    create_feedback_loop_metadata,
    edge_id,
    get_feedback_loop_config,
    is_feedback_loop_edge,
    validate_feedback_loop_config,
)


def _flow() -> FlowDefinition:
    return FlowDefinition(
        id="flow-1",
        name="Review",
        start_step_id="writer",
        steps=[
            Step(id="writer", name="Writer", agent_id="agent-w", next_steps=["critic"]),
            Step(id="critic", name="Critic", agent_id="agent-c", next_steps=["gate"]),
            Step(id="gate", name="Gate", type=StepType.APPROVAL),
        ],
    )


def test_convert_edge_uses_defaults():
    flow = _flow()

    metadata = flow.convert_edge_to_feedback_loop("writer", "critic")

    assert metadata.edge_id == edge_id("writer", "critic") == "writer-critic"
    assert metadata.is_feedback_loop
    assert metadata.max_iterations == 25
    assert metadata.quality_threshold == 0.8
    assert flow.edge_metadata["writer-critic"] is metadata
    assert is_feedback_loop_edge(flow.edge_metadata, "writer-critic")
    assert get_feedback_loop_config(flow.edge_metadata, "critic-gate") is None


def test_convert_edge_rejects_missing_edge():
    flow = _flow()

    with pytest.raises(ValueError, match="no edge critic-writer"):
        flow.convert_edge_to_feedback_loop("critic", "writer")


def test_convert_edge_rejects_out_of_range_config():
    flow = _flow()

    with pytest.raises(ValueError, match="Max iterations must be between 1 and 50"):
        flow.convert_edge_to_feedback_loop("writer", "critic", max_iterations=51)
    assert "writer-critic" not in flow.edge_metadata


def test_validate_feedback_loop_config_lists_every_problem():
    errors = validate_feedback_loop_config(max_iterations=0, quality_threshold=1.5)

    assert errors == [
        "Max iterations must be between 1 and 50",
        "Quality threshold must be between 0.0 and 1.0",
    ]
    assert validate_feedback_loop_config(max_iterations=50, quality_threshold=0.0) == []


def test_edge_metadata_enforces_bounds_on_assignment():
    metadata = create_feedback_loop_metadata("a-b", "a", "b", max_iterations=3)

    with pytest.raises(ValidationError):
        metadata.max_iterations = 0
    with pytest.raises(ValidationError):
        EdgeMetadata(edge_id="a-b", source_step_id="a", target_step_id="b", quality_threshold=1.2)


def test_flow_round_trips_with_edge_metadata():
    flow = _flow()
    flow.convert_edge_to_feedback_loop("writer", "critic", max_iterations=3, quality_threshold=0.9)
    flow.steps[0].timeout_seconds = 120

    payload = flow.to_json()
    restored = FlowDefinition.from_json(payload)

    assert '"timeout": 120' in payload
    assert restored.edge_metadata["writer-critic"].max_iterations == 3
    assert restored.edge_metadata["writer-critic"].quality_threshold == 0.9
    assert restored.get_step("writer").timeout_seconds == 120
    assert restored.get_step("gate").type == StepType.APPROVAL
    assert restored.edges() == [("writer", "critic"), ("critic", "gate")]


def test_step_accepts_engine_field_names():
    step = Step.model_validate(
        {"id": "s1", "name": "S1", "type": "agent", "timeout": 30, "retry_count": 2, "unknown": True}
    )

    assert step.timeout_seconds == 30
    assert step.retry_count == 2
