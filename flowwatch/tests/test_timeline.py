from datetime import datetime, timezone

from flowwatch.projection import LlmResponse, StepOutput, ToolCall, merge_timeline

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _label(entry):
    if isinstance(entry, ToolCall):
        return f"tool:{entry.tool_name}:{entry.round}:{entry.call_index}"
    return f"llm:{entry.content}:{entry.round}"


def test_tool_calls_precede_llm_responses_within_a_round():
    output = StepOutput(
        llm_responses=[
            LlmResponse(content="second round", round=2, timestamp=NOW),
            LlmResponse(content="first round", round=1, timestamp=NOW),
        ],
        tool_calls=[
            ToolCall(tool_name="fetch", round=2, call_index=1, timestamp=NOW),
            ToolCall(tool_name="search", round=2, call_index=0, timestamp=NOW),
            ToolCall(tool_name="search", round=1, call_index=0, timestamp=NOW),
        ],
    )

    assert [_label(entry) for entry in merge_timeline(output)] == [
        "tool:search:1:0",
        "llm:first round:1",
        "tool:search:2:0",
        "tool:fetch:2:1",
        "llm:second round:2",
    ]


def test_responses_in_the_same_round_keep_arrival_order():
    output = StepOutput(
        llm_responses=[
            LlmResponse(content="b", round=0, timestamp=NOW),
            LlmResponse(content="a", round=0, timestamp=NOW),
        ]
    )

    assert [_label(entry) for entry in merge_timeline(output)] == ["llm:b:0", "llm:a:0"]


def test_empty_step_output_has_empty_timeline():
    assert merge_timeline(StepOutput()) == []
