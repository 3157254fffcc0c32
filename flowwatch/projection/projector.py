"""Fold execution events into a :class:`ProjectionState`.

``project`` never mutates its input: it works on a deep copy and returns it.
Delivery deduplication by event id is the caller's job (see
:class:`flowwatch.projection.dedup.ProcessedEventSet`); the handlers here
additionally deduplicate by content where the engine may resend the same
payload under a new id (LLM responses, tool calls, feedback iterations).
"""

from __future__ import annotations

import copy
import logging
from typing import Callable, Dict, Iterable, Mapping, Optional

from flowwatch.events.models import (
    ApprovalGrantedEvent,
    ApprovalRejectedEvent,
    ApprovalRequiredEvent,
    ConnectionEstablishedEvent,
    ExecutionCancelledEvent,
    ExecutionCompletedEvent,
    ExecutionEventBase,
    ExecutionFailedEvent,
    ExecutionStartedEvent,
    FeedbackCompletedEvent,
    FeedbackIterationEvent,
    FeedbackRole,
    FeedbackStartedEvent,
    HeartbeatEvent,
    LlmResponseEvent,
    LlmStreamingChunkEvent,
    StepCompletedEvent,
    StepFailedEvent,
    StepProgressEvent,
    StepSkippedEvent,
    StepStartedEvent,
    ToolCallCompletedEvent,
    ToolCallStartedEvent,
)
from flowwatch.graph.models import EdgeMetadata, Step
from flowwatch.protocols import approval as approval_gate
from flowwatch.protocols import feedback as feedback_protocol

from .state import (
    UNKNOWN_AGENT_NAME,
    AgentResponse,
    AgentResponseStatus,
    ExecutionStatus,
    FeedbackIteration,
    LlmResponse,
    NoticeLevel,
    ProjectionState,
    ToolCall,
    ToolCallStatus,
)

LOGGER = logging.getLogger(__name__)


class _Context:
    __slots__ = ("steps", "edge_metadata")

    def __init__(self, steps: Mapping[str, Step], edge_metadata: Mapping[str, EdgeMetadata]) -> None:
        self.steps = steps
        self.edge_metadata = edge_metadata

    def step_name(self, step_id: Optional[str], default: Optional[str] = None) -> str:
        step = self.steps.get(step_id or "")
        if step is not None and step.name:
            return step.name
        if default is not None:
            return default
        return step_id or "Step"


Handler = Callable[[ProjectionState, ExecutionEventBase, _Context], None]


def new_execution_state(execution_id: str, *, flow_name: Optional[str] = None) -> ProjectionState:
    """State for a run the user just started; running until the engine says otherwise."""

    state = ProjectionState(execution_id=execution_id, flow_name=flow_name, status=ExecutionStatus.RUNNING)
    state.execution.is_running = True
    return state


def mark_stopped(state: ProjectionState, status: Optional[ExecutionStatus] = None) -> ProjectionState:
    """Return a copy with running flags cleared.

    Without ``status`` the execution's outcome is left for the engine to
    report; pass one to record a terminal outcome locally.
    """

    updated = copy.deepcopy(state)
    if status is None:
        updated.execution.stop()
        for output in updated.step_outputs.values():
            output.streaming_active = False
    else:
        _finish(updated, status)
    return updated


def project(
    state: ProjectionState,
    event: ExecutionEventBase,
    *,
    steps: Optional[Iterable[Step]] = None,
    edge_metadata: Optional[Mapping[str, EdgeMetadata]] = None,
) -> ProjectionState:
    """Apply one event and return the resulting state."""

    handler = _HANDLERS.get(type(event))
    if handler is None:
        LOGGER.info("No projection for event type %s", type(event).__name__)
        return state
    updated = copy.deepcopy(state)
    context = _Context({step.id: step for step in steps or ()}, edge_metadata or {})
    handler(updated, event, context)
    return updated


def _finish(state: ProjectionState, status: ExecutionStatus) -> None:
    state.execution.stop()
    if not state.status.is_terminal or state.status == ExecutionStatus.FINISHED:
        state.status = status
    state.approval = approval_gate.clear(state.approval)
    for response in state.agent_responses:
        if response.status == AgentResponseStatus.STREAMING:
            response.status = AgentResponseStatus.RUNNING
    for output in state.step_outputs.values():
        output.streaming_active = False


def _on_connection_established(state: ProjectionState, event: ConnectionEstablishedEvent, ctx: _Context) -> None:
    if not event.data.is_completed:
        return
    LOGGER.info("Connected to already finished execution %s", state.execution_id)
    _finish(state, ExecutionStatus.FINISHED)
    state.notify(
        "execution_already_completed",
        "Execution Already Completed",
        "This execution has already finished.",
    )


def _on_heartbeat(state: ProjectionState, event: HeartbeatEvent, ctx: _Context) -> None:
    # connectivity only; the tracker promotes the connection state
    return None


def _on_execution_started(state: ProjectionState, event: ExecutionStartedEvent, ctx: _Context) -> None:
    execution = state.execution
    is_new = (
        not execution.is_running
        and not execution.completed_steps
        and "execution_started" not in state.shown_notice_keys
        and not state.status.is_terminal
    )
    if not is_new:
        LOGGER.debug("Reconnected to ongoing execution %s", state.execution_id)
        return
    execution.is_running = True
    state.status = ExecutionStatus.RUNNING
    state.notify(
        "execution_started",
        "Flow Execution Started",
        f'Starting execution of "{state.flow_name or "Flow"}"',
    )


def _on_step_started(state: ProjectionState, event: StepStartedEvent, ctx: _Context) -> None:
    if not event.step_id:
        return
    state.execution.running_steps.add(event.step_id)
    state.execution.current_step_id = event.step_id
    output = state.step_output(event.step_id)
    output.feedback_role = event.data.feedback_role
    if event.data.feedback_role is not None:
        action = "providing feedback" if event.data.feedback_role == FeedbackRole.ASSESSOR else "improving work"
        LOGGER.debug(
            "Feedback loop: %s is %s (iteration %s)",
            ctx.step_name(event.step_id),
            action,
            event.data.iteration,
        )


def _on_step_completed(state: ProjectionState, event: StepCompletedEvent, ctx: _Context) -> None:
    if not event.step_id:
        return
    output = state.step_output(event.step_id)
    agent_output = event.data.output
    role = event.data.feedback_role
    if role is not None:
        if agent_output:
            exists = any(
                item.iteration == event.data.iteration and item.role == role
                for item in output.feedback_iterations
            )
            if not exists:
                output.feedback_iterations.append(
                    FeedbackIteration(
                        iteration=event.data.iteration,
                        role=role,
                        output=agent_output,
                        timestamp=event.timestamp,
                        step_name=ctx.step_name(event.step_id),
                    )
                )
    elif agent_output:
        output.final_output = agent_output

    execution = state.execution
    execution.running_steps.discard(event.step_id)
    execution.completed_steps.add(event.step_id)
    for response in state.agent_responses:
        if response.step_id == event.step_id and response.status == AgentResponseStatus.RUNNING:
            response.status = AgentResponseStatus.COMPLETED


def _on_step_failed(state: ProjectionState, event: StepFailedEvent, ctx: _Context) -> None:
    execution = state.execution
    execution.is_running = False
    if event.step_id:
        execution.running_steps.discard(event.step_id)
        execution.failed_steps.add(event.step_id)
        for response in state.agent_responses:
            if response.step_id == event.step_id and response.status == AgentResponseStatus.RUNNING:
                response.status = AgentResponseStatus.FAILED
    description = event.message or event.data.error or f"Step {ctx.step_name(event.step_id)} failed"
    state.error = description
    state.notify(f"step_failed:{event.id or event.step_id}", "Step Failed", description, NoticeLevel.ERROR)


def _on_step_skipped(state: ProjectionState, event: StepSkippedEvent, ctx: _Context) -> None:
    if not event.step_id:
        return
    state.execution.running_steps.discard(event.step_id)
    state.execution.skipped_steps.add(event.step_id)


def _on_step_progress(state: ProjectionState, event: StepProgressEvent, ctx: _Context) -> None:
    if not event.step_id:
        return
    output = state.step_output(event.step_id)
    if event.data.progress is not None:
        output.progress = event.data.progress
    output.progress_message = event.message or event.data.status or output.progress_message


def _on_approval_required(state: ProjectionState, event: ApprovalRequiredEvent, ctx: _Context) -> None:
    step_name = ctx.step_name(event.step_id)
    request = approval_gate.ApprovalRequest(
        step_id=event.step_id or "",
        step_name=event.data.step_name or step_name,
        message=event.data.approval_message or event.message,
        content=event.data.content or approval_gate.DEFAULT_APPROVAL_CONTENT,
    )
    state.approval = approval_gate.require(state.approval, request)
    key = f"approval_required:{event.id or event.step_id}"
    state.notify(key, "Approval Required", f'Please review and approve "{step_name}"')


def _on_approval_granted(state: ProjectionState, event: ApprovalGrantedEvent, ctx: _Context) -> None:
    state.approval = approval_gate.resolve(state.approval, True)
    state.notify(f"approval_granted:{event.id or event.step_id}", "Approval Granted", event.message)


def _on_approval_rejected(state: ProjectionState, event: ApprovalRejectedEvent, ctx: _Context) -> None:
    state.approval = approval_gate.resolve(state.approval, False)
    state.notify(f"approval_rejected:{event.id or event.step_id}", "Approval Rejected", event.message)


def _on_execution_completed(state: ProjectionState, event: ExecutionCompletedEvent, ctx: _Context) -> None:
    _finish(state, ExecutionStatus.COMPLETED)
    state.notify("execution_completed", "Execution Completed", event.message)


def _on_execution_failed(state: ProjectionState, event: ExecutionFailedEvent, ctx: _Context) -> None:
    _finish(state, ExecutionStatus.FAILED)
    description = event.message or event.data.error or "Execution failed"
    state.error = description
    state.notify("execution_failed", "Execution Failed", description, NoticeLevel.ERROR)


def _on_execution_cancelled(state: ProjectionState, event: ExecutionCancelledEvent, ctx: _Context) -> None:
    _finish(state, ExecutionStatus.CANCELLED)
    state.notify("execution_cancelled", "Execution Cancelled", event.message)


def _find_agent_response(
    state: ProjectionState, step_id: str, round_: int, status: AgentResponseStatus
) -> Optional[AgentResponse]:
    for response in state.agent_responses:
        if response.step_id == step_id and response.round == round_ and response.status == status:
            return response
    return None


def _on_llm_streaming_chunk(state: ProjectionState, event: LlmStreamingChunkEvent, ctx: _Context) -> None:
    chunk = event.data.chunk
    if not chunk or not event.step_id:
        return
    round_ = event.data.round
    output = state.step_output(event.step_id)
    output.streaming[round_] = output.streaming.get(round_, "") + chunk
    output.streaming_active = True

    response = _find_agent_response(state, event.step_id, round_, AgentResponseStatus.STREAMING)
    if response is not None:
        response.output += chunk
        return
    state.agent_responses.append(
        AgentResponse(
            step_id=event.step_id,
            step_name=ctx.step_name(event.step_id, f"Step {event.step_id}"),
            agent_name=event.data.agent_name or UNKNOWN_AGENT_NAME,
            output=chunk,
            round=round_,
            status=AgentResponseStatus.STREAMING,
            timestamp=event.timestamp,
        )
    )


def _on_llm_response(state: ProjectionState, event: LlmResponseEvent, ctx: _Context) -> None:
    if not event.step_id:
        return
    round_ = event.data.round
    content = event.data.content or ""
    output = state.step_output(event.step_id)
    if any(item.content == content and item.round == round_ for item in output.llm_responses):
        LOGGER.debug("Skipping duplicate LLM response for step %s, round %s", event.step_id, round_)
        return
    output.llm_responses.append(
        LlmResponse(
            content=content,
            round=round_,
            timestamp=event.timestamp,
            model_used=event.data.model_used,
        )
    )
    output.streaming.pop(round_, None)
    output.streaming_active = False
    if not content:
        LOGGER.warning("Empty LLM response for step %s, round %s", event.step_id, round_)
        return

    streaming = _find_agent_response(state, event.step_id, round_, AgentResponseStatus.STREAMING)
    if streaming is not None:
        streaming.output = content
        streaming.status = AgentResponseStatus.RUNNING
        return
    if any(r.step_id == event.step_id and r.output == content for r in state.agent_responses):
        return
    state.agent_responses.append(
        AgentResponse(
            step_id=event.step_id,
            step_name=ctx.step_name(event.step_id, f"Step {event.step_id}"),
            agent_name=event.data.agent_name or UNKNOWN_AGENT_NAME,
            output=content,
            round=round_,
            status=AgentResponseStatus.RUNNING,
            timestamp=event.timestamp,
        )
    )


def _on_tool_call_started(state: ProjectionState, event: ToolCallStartedEvent, ctx: _Context) -> None:
    if not event.step_id:
        return
    output = state.step_output(event.step_id)
    key = (event.data.tool_name, event.data.round, event.data.call_index)
    if any(call.key == key for call in output.tool_calls):
        return
    output.tool_calls.append(
        ToolCall(
            tool_name=event.data.tool_name,
            round=event.data.round,
            call_index=event.data.call_index,
            timestamp=event.timestamp,
        )
    )


def _on_tool_call_completed(state: ProjectionState, event: ToolCallCompletedEvent, ctx: _Context) -> None:
    if not event.step_id:
        return
    data = event.data
    output = state.step_output(event.step_id)
    status = ToolCallStatus.COMPLETED if data.success else ToolCallStatus.FAILED
    matched = False
    for call in output.tool_calls:
        if call.tool_name != data.tool_name or call.round != data.round:
            continue
        if data.call_index is not None and call.call_index != data.call_index:
            continue
        call.status = status
        call.result = data.result
        matched = True
    if not matched:
        output.tool_calls.append(
            ToolCall(
                tool_name=data.tool_name,
                round=data.round,
                call_index=data.call_index if data.call_index is not None else 0,
                timestamp=event.timestamp,
                status=status,
                result=data.result,
            )
        )


def _on_feedback_started(state: ProjectionState, event: FeedbackStartedEvent, ctx: _Context) -> None:
    data = event.data
    threshold = data.quality_threshold
    max_iterations = data.max_iterations
    configured = ctx.edge_metadata.get(data.edge_id)
    if configured is not None:
        if threshold is None:
            threshold = configured.quality_threshold
        if max_iterations is None:
            max_iterations = configured.max_iterations
    state.feedback_loops = feedback_protocol.start_loop(
        state.feedback_loops,
        edge_id=data.edge_id,
        source_step_id=data.source_step_id,
        target_step_id=data.target_step_id,
        max_iterations=max_iterations,
        quality_threshold=threshold,
    )
    state.notify(
        f"feedback_started:{event.id or data.edge_id}",
        "Bidirectional Feedback Started",
        f"Starting collaboration between {ctx.step_name(data.source_step_id)} "
        f"and {ctx.step_name(data.target_step_id)}",
    )


def _on_feedback_iteration(state: ProjectionState, event: FeedbackIterationEvent, ctx: _Context) -> None:
    data = event.data
    state.feedback_loops = feedback_protocol.record_iteration(
        state.feedback_loops,
        data.edge_id,
        data.iteration,
        quality_score=data.quality_score,
    )


def _on_feedback_completed(state: ProjectionState, event: FeedbackCompletedEvent, ctx: _Context) -> None:
    data = event.data
    state.feedback_loops = feedback_protocol.complete_loop(
        state.feedback_loops,
        data.edge_id,
        converged=data.converged,
        iterations=data.iterations,
        final_score=data.final_score,
    )
    loop = state.feedback_loops.get(data.edge_id)
    if loop is None:
        return
    iterations = loop.current_iteration
    description = f"Finished after {iterations} iteration{'s' if iterations != 1 else ''}"
    if loop.final_score:
        description += f" with score {loop.final_score:.2f}"
    state.notify(
        f"feedback_completed:{event.id or data.edge_id}",
        f"Bidirectional Feedback {'Converged' if loop.converged else 'Completed'}",
        description,
    )


_HANDLERS: Dict[type, Handler] = {
    ConnectionEstablishedEvent: _on_connection_established,
    HeartbeatEvent: _on_heartbeat,
    ExecutionStartedEvent: _on_execution_started,
    StepStartedEvent: _on_step_started,
    StepCompletedEvent: _on_step_completed,
    StepFailedEvent: _on_step_failed,
    StepSkippedEvent: _on_step_skipped,
    StepProgressEvent: _on_step_progress,
    ApprovalRequiredEvent: _on_approval_required,
    ApprovalGrantedEvent: _on_approval_granted,
    ApprovalRejectedEvent: _on_approval_rejected,
    ExecutionCompletedEvent: _on_execution_completed,
    ExecutionFailedEvent: _on_execution_failed,
    ExecutionCancelledEvent: _on_execution_cancelled,
    LlmStreamingChunkEvent: _on_llm_streaming_chunk,
    LlmResponseEvent: _on_llm_response,
    ToolCallStartedEvent: _on_tool_call_started,
    ToolCallCompletedEvent: _on_tool_call_completed,
    FeedbackStartedEvent: _on_feedback_started,
    FeedbackIterationEvent: _on_feedback_iteration,
    FeedbackCompletedEvent: _on_feedback_completed,
}


def handled_event_types() -> frozenset[type]:
    return frozenset(_HANDLERS)
