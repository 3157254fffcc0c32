import pytest

from flowwatch.events import EVENT_MODELS, LlmStreamingChunkEvent, parse_event
from flowwatch.graph import Step, create_feedback_loop_metadata
from flowwatch.projection import (
    AgentResponseStatus,
    ExecutionStatus,
    NoticeLevel,
    ProjectionState,
    ToolCallStatus,
    mark_stopped,
    new_execution_state,
    project,
)
from flowwatch.projection.projector import handled_event_types
from flowwatch.projection.state import EMPTY_LLM_RESPONSE_PLACEHOLDER
from flowwatch.protocols import ApprovalStatus
from flowwatch.protocols.approval import decide

STEPS = [
    Step(id="writer", name="Writer", next_steps=["critic"]),
    Step(id="critic", name="Critic", next_steps=["gate"]),
    Step(id="gate", name="Gate", type="approval"),
]

_COUNTER = iter(range(1, 100000))


def _event(event_type, step_id="writer", **kwargs):
    raw = {
        "id": kwargs.pop("id", f"evt-{next(_COUNTER)}"),
        "execution_id": "exec-1",
        "event_type": event_type,
        "step_id": step_id,
        "message": kwargs.pop("message", ""),
        "timestamp": "2026-01-01T00:00:00Z",
        "data": kwargs,
    }
    event = parse_event(raw)
    assert event is not None, raw
    return event


def _apply(state, *events, **kwargs):
    for event in events:
        state = project(state, event, steps=STEPS, **kwargs)
    return state


def test_every_event_type_has_a_handler():
    assert handled_event_types() == set(EVENT_MODELS)


def test_project_does_not_mutate_input():
    state = new_execution_state("exec-1", flow_name="Review")

    updated = project(state, _event("step_started"), steps=STEPS)

    assert state.execution.running_steps == set()
    assert updated.execution.running_steps == {"writer"}
    assert updated.execution.current_step_id == "writer"


REPEATABLE_EVENTS = [
    _event("connection_established", step_id=None, id=None),
    _event("connection_established", step_id=None, id=None, is_completed=True),
    _event("heartbeat", step_id=None, id=None),
    _event("execution_started", step_id=None),
    _event("step_started"),
    _event("step_completed", agent_output="done"),
    _event("step_completed", agent_output="idea", feedback_role="assessor", iteration=1),
    _event("step_failed", message="boom"),
    _event("step_skipped"),
    _event("step_progress", progress=0.5, status="halfway"),
    _event("approval_required", step_id="gate", approval_message="Publish?"),
    _event("approval_granted", step_id="gate", message="ok"),
    _event("approval_rejected", step_id="gate", message="no"),
    _event("llm_response", content="hello", round=1),
    _event("tool_call_started", tool_name="search", round=1),
    _event("tool_call_completed", tool_name="search", round=1),
    _event("bidirectional_feedback_started", edge_id="writer-critic", source_step_id="writer", target_step_id="critic"),
    _event("feedback_loop_iteration", edge_id="writer-critic", iteration=1, quality_score=0.5),
    _event("bidirectional_feedback_completed", edge_id="writer-critic", iterations=1),
    _event("execution_completed", message="all done"),
    _event("execution_failed", message="bad"),
    _event("execution_cancelled"),
]


def _busy_state():
    # an active loop and a pending approval give every handler something to act on
    return _apply(
        new_execution_state("exec-1"),
        _event("bidirectional_feedback_started", id="setup-loop", edge_id="writer-critic", source_step_id="writer", target_step_id="critic"),
        _event("approval_required", id="setup-gate", step_id="gate", approval_message="Publish?"),
    )


def test_repeatable_events_cover_every_type_but_streaming_chunks():
    covered = {type(event) for event in REPEATABLE_EVENTS}

    assert covered == set(EVENT_MODELS) - {LlmStreamingChunkEvent}


@pytest.mark.parametrize("event", REPEATABLE_EVENTS, ids=lambda event: event.event_type)
def test_applying_the_same_event_twice_changes_nothing(event):
    state = _busy_state()

    once = project(state, event, steps=STEPS)
    twice = project(once, event, steps=STEPS)

    assert twice == once


def test_execution_started_notice_only_for_new_runs():
    fresh = ProjectionState(execution_id="exec-1", flow_name="Review")
    state = _apply(fresh, _event("execution_started", step_id=None))

    assert state.status is ExecutionStatus.RUNNING
    assert [notice.description for notice in state.notices] == ['Starting execution of "Review"']

    reconnected = ProjectionState(execution_id="exec-1")
    reconnected.execution.completed_steps.add("writer")
    assert _apply(reconnected, _event("execution_started", step_id=None)).notices == []


def test_already_completed_handshake_finishes_state():
    state = new_execution_state("exec-1")

    state = _apply(state, _event("connection_established", step_id=None, id=None, is_completed=True))

    assert state.status is ExecutionStatus.FINISHED
    assert not state.execution.is_running
    assert state.notices[0].title == "Execution Already Completed"


def test_terminal_status_is_not_overwritten():
    state = _apply(new_execution_state("exec-1"), _event("execution_cancelled"), _event("execution_completed"))

    assert state.status is ExecutionStatus.CANCELLED


def test_step_completed_records_output_and_feedback_iterations():
    state = _apply(
        new_execution_state("exec-1"),
        _event("step_started"),
        _event("step_completed", result={"output": "legacy output"}),
        _event("step_completed", step_id="critic", agent_output="needs work", feedback_role="assessor", iteration=1),
        _event("step_completed", step_id="critic", agent_output="needs work", feedback_role="assessor", iteration=1),
        _event("step_completed", step_id="critic", agent_output="revised", feedback_role="improver", iteration=1),
    )

    assert state.step_outputs["writer"].final_output == "legacy output"
    critic = state.step_outputs["critic"]
    assert critic.final_output is None
    assert [(item.iteration, item.role.value) for item in critic.feedback_iterations] == [
        (1, "assessor"),
        (1, "improver"),
    ]
    assert critic.feedback_iterations[0].step_name == "Critic"
    assert state.execution.completed_steps == {"writer", "critic"}
    assert state.execution.running_steps == set()


def test_step_failed_stops_execution_and_notifies():
    state = _apply(new_execution_state("exec-1"), _event("step_started"), _event("step_failed", error="timeout"))

    assert not state.execution.is_running
    assert state.execution.failed_steps == {"writer"}
    assert state.error == "timeout"
    assert state.notices[-1].level is NoticeLevel.ERROR


def test_streaming_chunks_become_a_response():
    state = _apply(
        new_execution_state("exec-1"),
        _event("llm_streaming_chunk", chunk="Hel", round=1, agent_name="Writer Bot"),
        _event("llm_streaming_chunk", chunk="lo", round=1),
    )

    output = state.step_outputs["writer"]
    assert output.streaming == {1: "Hello"}
    assert output.streaming_active
    assert state.agent_responses[0].output == "Hello"
    assert state.agent_responses[0].status is AgentResponseStatus.STREAMING

    state = _apply(state, _event("llm_response", content="Hello!", round=1))

    output = state.step_outputs["writer"]
    assert output.streaming == {}
    assert not output.streaming_active
    assert len(state.agent_responses) == 1
    assert state.agent_responses[0].output == "Hello!"
    assert state.agent_responses[0].status is AgentResponseStatus.RUNNING

    state = _apply(state, _event("step_completed", agent_output="Hello!"))
    assert state.agent_responses[0].status is AgentResponseStatus.COMPLETED


def test_duplicate_llm_response_with_new_id_is_collapsed():
    state = _apply(
        new_execution_state("exec-1"),
        _event("llm_response", content="same", round=2),
        _event("llm_response", content="same", round=2),
        _event("llm_response", content="same", round=3),
    )

    assert [(item.content, item.round) for item in state.step_outputs["writer"].llm_responses] == [
        ("same", 2),
        ("same", 3),
    ]
    assert len(state.agent_responses) == 1


def test_empty_llm_response_gets_placeholder():
    state = _apply(new_execution_state("exec-1"), _event("llm_response", content=None, round=1))

    response = state.step_outputs["writer"].llm_responses[0]
    assert response.is_empty
    assert response.display_content == EMPTY_LLM_RESPONSE_PLACEHOLDER
    assert state.agent_responses == []


def test_tool_call_completion_matches_started_call():
    state = _apply(
        new_execution_state("exec-1"),
        _event("tool_call_started", tool_name="search", round=1, call_index=0),
        _event("tool_call_started", tool_name="search", round=1, call_index=1),
        _event("tool_call_completed", tool_name="search", round=1, call_index=1, result={"hits": 3}),
        _event("tool_call_completed", tool_name="fetch", round=2, success=False),
    )

    calls = state.step_outputs["writer"].tool_calls
    assert [(call.key, call.status) for call in calls] == [
        (("search", 1, 0), ToolCallStatus.STARTED),
        (("search", 1, 1), ToolCallStatus.COMPLETED),
        (("fetch", 2, 0), ToolCallStatus.FAILED),
    ]
    assert calls[1].result == {"hits": 3}


def test_tool_call_completion_without_index_matches_by_round():
    state = _apply(
        new_execution_state("exec-1"),
        _event("tool_call_started", tool_name="search", round=1),
        _event("tool_call_completed", tool_name="search", round=1),
    )

    calls = state.step_outputs["writer"].tool_calls
    assert len(calls) == 1
    assert calls[0].status is ToolCallStatus.COMPLETED


def test_approval_flow_and_terminal_clears_gate():
    state = _apply(
        new_execution_state("exec-1"),
        _event("approval_required", step_id="gate", approval_message="Ship it?", content="draft"),
    )

    assert state.approval.is_pending
    assert state.approval.request.step_name == "Gate"
    assert state.approval.request.content == "draft"
    assert state.notices[-1].description == 'Please review and approve "Gate"'

    state.approval = decide(state.approval, True)
    granted = _apply(state, _event("approval_granted", step_id="gate", message="approved"))
    assert granted.approval.status is ApprovalStatus.RESOLVED

    cancelled = _apply(state, _event("execution_cancelled"))
    assert cancelled.approval.status is ApprovalStatus.IDLE


def test_feedback_loop_lifecycle_and_notices():
    metadata = {"writer-critic": create_feedback_loop_metadata("writer-critic", "writer", "critic", quality_threshold=0.6)}
    state = _apply(
        new_execution_state("exec-1"),
        _event("bidirectional_feedback_started", edge_id="writer-critic", source_step_id="writer", target_step_id="critic", max_iterations=4),
        _event("feedback_loop_iteration", edge_id="writer-critic", iteration=1, quality_score=0.4),
        _event("feedback_loop_iteration", edge_id="writer-critic", iteration=2, quality_score=0.65),
        _event("bidirectional_feedback_completed", edge_id="writer-critic", iterations=2),
        edge_metadata=metadata,
    )

    loop = state.feedback_loops["writer-critic"]
    assert loop.quality_threshold == 0.6
    assert loop.converged is True
    assert not loop.is_active
    assert [notice.title for notice in state.notices] == [
        "Bidirectional Feedback Started",
        "Bidirectional Feedback Converged",
    ]
    assert state.notices[0].description == "Starting collaboration between Writer and Critic"
    assert state.notices[1].description == "Finished after 2 iterations with score 0.65"


def test_feedback_loop_without_limit_uses_edge_configuration():
    metadata = {"writer-critic": create_feedback_loop_metadata("writer-critic", "writer", "critic", max_iterations=3)}
    state = _apply(
        new_execution_state("exec-1"),
        _event("bidirectional_feedback_started", edge_id="writer-critic", source_step_id="writer", target_step_id="critic"),
        *[
            _event("feedback_loop_iteration", edge_id="writer-critic", iteration=iteration, quality_score=0.1)
            for iteration in range(1, 5)
        ],
        edge_metadata=metadata,
    )

    loop = state.feedback_loops["writer-critic"]
    assert loop.max_iterations == 3
    assert loop.current_iteration == 3
    assert loop.quality_scores == [0.1, 0.1, 0.1]


def test_mark_stopped_keeps_completed_steps():
    state = _apply(
        new_execution_state("exec-1"),
        _event("step_completed", agent_output="ok"),
        _event("step_started", step_id="critic"),
        _event("llm_streaming_chunk", step_id="critic", chunk="...", round=1),
    )

    stopped = mark_stopped(state)

    assert not stopped.execution.is_running
    assert stopped.execution.running_steps == set()
    assert stopped.execution.completed_steps == {"writer"}
    assert not stopped.step_outputs["critic"].streaming_active
    assert stopped.status is ExecutionStatus.RUNNING
    assert state.execution.running_steps == {"critic"}

    assert mark_stopped(state, ExecutionStatus.CANCELLED).status is ExecutionStatus.CANCELLED
