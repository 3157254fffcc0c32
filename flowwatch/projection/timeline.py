"""Chronological merge of a step's LLM responses and tool calls."""

from __future__ import annotations

from typing import List, Union

from .state import LlmResponse, StepOutput, ToolCall

TimelineEntry = Union[ToolCall, LlmResponse]


def merge_timeline(step_output: StepOutput) -> List[TimelineEntry]:
    """Order entries by round; tool calls precede the round's LLM responses.

    Within a round tool calls are ordered by ``call_index`` and responses by
    arrival order.
    """

    keyed = []
    for arrival, call in enumerate(step_output.tool_calls):
        keyed.append(((call.round, 0, call.call_index, arrival), call))
    for arrival, response in enumerate(step_output.llm_responses):
        keyed.append(((response.round, 1, arrival, arrival), response))
    keyed.sort(key=lambda item: item[0])
    return [entry for _, entry in keyed]
