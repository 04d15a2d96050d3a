"""
Tests for the event accumulator.
Run with: pytest tests/test_accumulator.py
"""

import pytest

from threadline.accumulator import (
    StreamState,
    abort_active_tools,
    advance_status,
    apply,
    extract_citations,
    replay,
    replay_async,
)
from threadline.storage.models import Message, ToolCall

from fakes import completed, created, delta, failed, incomplete, item_added, item_done


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

def test_sample_scenario():
    """created, two deltas, completed → finished text with the response id."""
    state = replay([created(), delta("Hello"), delta(" world"), completed("resp_1")])
    assert state.content == "Hello world"
    assert state.response_id == "resp_1"
    assert state.reasoning == ()
    assert state.tool_calls == ()
    assert not state.is_error


def test_replay_is_deterministic():
    """Replaying the same events twice gives equal states, fallback ids included."""
    events = [
        created(),
        {"type": "response.function_call_arguments.delta", "delta": '{"a":'},
        item_added({"type": "web_search_call", "status": "in_progress"}),
        delta("hi"),
        completed("resp_9"),
    ]
    assert replay(events) == replay(events)


def test_created_does_not_set_response_id():
    """The id in response.created is not confirmed yet."""
    state = apply(StreamState(), created("resp_early"))
    assert state.response_id is None


def test_empty_delta_returns_same_state():
    state = apply(StreamState(), delta("x"))
    assert apply(state, delta("")) is state


def test_text_done_only_fills_when_no_deltas():
    state = apply(StreamState(), {"type": "response.output_text.done", "text": "full text"})
    assert state.content == "full text"

    streamed = apply(StreamState(), delta("partial"))
    assert apply(streamed, {"type": "response.output_text.done", "text": "other"}) is streamed


# ---------------------------------------------------------------------------
# Unknown / malformed
# ---------------------------------------------------------------------------

def test_unknown_event_ignored():
    state = apply(StreamState(), delta("a"))
    assert apply(state, {"type": "response.something_new", "x": 1}) is state


def test_malformed_events_ignored():
    state = StreamState()
    assert apply(state, "not a dict") is state
    assert apply(state, {"no_type": True}) is state
    assert apply(state, {"type": ""}) is state


def test_non_string_payloads_ignored():
    state = apply(StreamState(), delta("ok"))
    assert apply(state, {"type": "response.output_text.delta", "delta": 5}) is state
    assert apply(state, {"type": "response.output_text.done", "text": ["x"]}) is state
    thinking = apply(state, {"type": "response.reasoning_summary_text.delta", "item_id": "rs", "delta": "hm"})
    assert apply(thinking, {"type": "response.reasoning_summary_text.delta", "item_id": "rs", "delta": None}) is thinking

    calling = apply(state, {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": "{"})
    assert apply(calling, {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": {"a": 1}}) is calling
    assert apply(calling, {"type": "response.function_call_arguments.done", "item_id": "fc_1", "arguments": 7}) is calling
    assert calling.tool_calls[0].arguments == "{"


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------

def test_reasoning_deltas_keyed_by_item_and_index():
    events = [
        {"type": "response.reasoning_summary_text.delta", "item_id": "rs_1", "summary_index": 0, "delta": "First"},
        {"type": "response.reasoning_summary_text.delta", "item_id": "rs_1", "summary_index": 1, "delta": "Second"},
        {"type": "response.reasoning_summary_text.delta", "item_id": "rs_1", "summary_index": 0, "delta": " part"},
    ]
    state = replay(events)
    assert [r.id for r in state.reasoning] == ["rs_1_0", "rs_1_1"]
    assert state.reasoning[0].content == "First part"
    assert state.reasoning[1].content == "Second"


def test_reasoning_alias_and_done():
    state = replay([
        {"type": "response.reasoning.delta", "item_id": "rs_2", "delta": "thin"},
        {"type": "response.reasoning_summary_text.done", "item_id": "rs_2", "summary_index": 0, "text": "thinking"},
    ])
    assert len(state.reasoning) == 1
    assert state.reasoning[0].content == "thinking"


def test_reasoning_output_item_finalises_summary():
    state = apply(StreamState(), item_done({
        "type": "reasoning",
        "id": "rs_3",
        "summary": [{"type": "summary_text", "text": "a"}, {"type": "summary_text", "text": "b"}],
    }))
    assert [(r.id, r.content) for r in state.reasoning] == [("rs_3_0", "a"), ("rs_3_1", "b")]


def test_reasoning_deltas_without_id_share_one_step():
    state = replay([
        {"type": "response.reasoning_summary_text.delta", "delta": "Think"},
        {"type": "response.reasoning_summary_text.delta", "delta": "ing"},
        {"type": "response.reasoning_summary_text.delta", "delta": " hard"},
    ])
    assert len(state.reasoning) == 1
    assert state.reasoning[0].content == "Thinking hard"


def test_reasoning_delta_without_id_continues_latest_item():
    state = replay([
        {"type": "response.reasoning_summary_text.delta", "item_id": "rs_1", "delta": "A"},
        {"type": "response.reasoning_summary_text.delta", "delta": "B"},
    ])
    assert [(r.id, r.content) for r in state.reasoning] == [("rs_1_0", "AB")]


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

def test_interleaved_tool_calls_do_not_cross_contaminate():
    events = [
        item_added({"type": "function_call", "id": "fc_1", "name": "lookup"}),
        item_added({"type": "function_call", "id": "fc_2", "name": "fetch"}),
        {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"q":'},
        {"type": "response.function_call_arguments.delta", "item_id": "fc_2", "delta": '{"url":'},
        {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '"cats"}'},
        {"type": "response.function_call_arguments.delta", "item_id": "fc_2", "delta": '"x"}'},
    ]
    state = replay(events)
    calls = {c.id: c for c in state.tool_calls}
    assert calls["fc_1"].arguments == '{"q":"cats"}'
    assert calls["fc_2"].arguments == '{"url":"x"}'
    assert calls["fc_1"].name == "lookup"


def test_web_search_status_flow():
    state = replay([
        item_added({"type": "web_search_call", "id": "ws_1", "status": "in_progress"}),
        {"type": "response.web_search_call.searching", "item_id": "ws_1"},
        item_done({"type": "web_search_call", "id": "ws_1", "status": "completed",
                   "action": {"query": "weather today"}}),
    ])
    call = state.tool_calls[0]
    assert call.type == "web_search"
    assert call.status == "completed"
    assert call.query == "weather today"
    assert call.arguments == '{"query":"weather today"}'


def test_terminal_status_never_regresses():
    state = replay([
        item_added({"type": "web_search_call", "id": "ws_1", "status": "in_progress"}),
        {"type": "response.web_search_call.completed", "item_id": "ws_1"},
    ])
    after = apply(state, {"type": "response.web_search_call.in_progress", "item_id": "ws_1"})
    assert after is state
    assert after.tool_calls[0].status == "completed"


def test_advance_status_does_not_go_backwards():
    call = ToolCall(id="ci", type="code_interpreter", status="interpreting")
    assert advance_status(call, "in_progress") is call
    assert advance_status(call, "completed").status == "completed"


def test_status_for_unseen_item_ignored():
    state = StreamState()
    assert apply(state, {"type": "response.mcp_call.completed", "item_id": "nope"}) is state


def test_code_interpreter_code_and_output():
    state = replay([
        item_added({"type": "code_interpreter_call", "id": "ci_1", "status": "in_progress",
                    "container_id": "cntr_1"}),
        {"type": "response.code_interpreter_call_code.delta", "item_id": "ci_1", "delta": "print("},
        {"type": "response.code_interpreter_call.code.delta", "item_id": "ci_1", "delta": "1)"},
        {"type": "response.code_interpreter_call.interpreting", "item_id": "ci_1"},
        {"type": "response.code_interpreter_call_outputs.done", "item_id": "ci_1",
         "outputs": [{"type": "logs", "logs": "1"}]},
        {"type": "response.code_interpreter_call.completed", "item_id": "ci_1"},
    ])
    call = state.tool_calls[0]
    assert call.code == "print(1)"
    assert call.output == "1"
    assert call.container_id == "cntr_1"
    assert call.status == "completed"


def test_mcp_call_display_name_and_error():
    state = replay([
        item_added({"type": "mcp_call", "id": "mcp_1", "name": "search", "server_label": "docs"}),
        {"type": "response.mcp_call_arguments.delta", "item_id": "mcp_1", "delta": '{"q":1}'},
        item_done({"type": "mcp_call", "id": "mcp_1", "name": "search", "server_label": "docs",
                   "status": "completed", "error": "denied by server"}),
    ])
    call = state.tool_calls[0]
    assert call.name == "docs/search"
    assert call.arguments == '{"q":1}'
    assert call.result == "Error: denied by server"
    assert call.status == "completed"


def test_mcp_approval_request_creates_pending_call():
    state = apply(StreamState(), item_added({
        "type": "mcp_approval_request", "id": "mcpr_1", "name": "delete", "server_label": "fs",
        "arguments": '{"path":"/"}',
    }))
    call = state.tool_calls[0]
    assert call.type == "mcp_approval"
    assert call.status == "pending_approval"
    assert call.approval_request_id == "mcpr_1"
    assert call.server_label == "fs"
    # The done event carries the same payload and changes nothing
    assert apply(state, item_done({"type": "mcp_approval_request", "id": "mcpr_1"})) is state


def test_items_without_id_get_deterministic_ids():
    state = replay([
        item_added({"type": "web_search_call", "status": "in_progress"}),
        item_added({"type": "function_call", "name": "f"}),
    ])
    assert [c.id for c in state.tool_calls] == ["tool_0", "tool_1"]


def test_abort_active_tools():
    state = replay([
        item_added({"type": "web_search_call", "id": "ws_1", "status": "searching"}),
        item_added({"type": "function_call", "id": "fc_1", "name": "f", "status": "completed"}),
        item_added({"type": "mcp_approval_request", "id": "mcpr_1"}),
    ])
    aborted = abort_active_tools(state)
    statuses = {c.id: c.status for c in aborted.tool_calls}
    assert statuses == {"ws_1": "aborted", "fc_1": "completed", "mcpr_1": "pending_approval"}
    assert abort_active_tools(aborted) is aborted


# ---------------------------------------------------------------------------
# Terminal events
# ---------------------------------------------------------------------------

def test_completed_captures_usage_and_citations():
    output = [{
        "type": "message",
        "content": [{
            "type": "output_text",
            "text": "see",
            "annotations": [
                {"type": "url_citation", "url": "https://a.example", "title": "A", "start_index": 0, "end_index": 3},
                {"type": "url_citation", "url": "https://a.example", "title": "A again", "start_index": 4, "end_index": 5},
                {"type": "file_citation", "file_id": "f"},
            ],
        }],
    }]
    usage = {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}
    state = replay([delta("see"), completed("resp_c", usage=usage, output=output)])

    assert [c.url for c in state.citations] == ["https://a.example"]
    assert state.usage.total_tokens == 15
    assert state.response_json["id"] == "resp_c"


def test_citations_only_on_finished_message():
    state = replay([delta("x"), completed(output=[{
        "type": "message",
        "content": [{"type": "output_text", "annotations": [
            {"type": "url_citation", "url": "u", "title": "t", "start_index": 0, "end_index": 1}]}],
    }])])
    base = Message(role="assistant")
    assert state.to_message(base, streaming=True).citations == []
    assert len(state.to_message(base, streaming=False).citations) == 1


def test_streamed_annotations_used_when_response_has_none():
    state = replay([
        {"type": "response.output_text.annotation.added",
         "annotation": {"type": "url_citation", "url": "u1", "title": "t", "start_index": 0, "end_index": 1}},
        completed(),
    ])
    assert [c.url for c in state.citations] == ["u1"]


def test_extract_citations_tolerates_junk():
    assert extract_citations({"output": "nope"}) == []
    assert extract_citations({"output": [None, {"type": "message", "content": None}]}) == []


def test_incomplete_sets_truncation_and_response_id():
    state = replay([delta("cut"), incomplete("resp_t", "max_output_tokens")])
    assert state.is_truncated
    assert state.truncation_reason == "max_output_tokens"
    assert state.response_id == "resp_t"
    msg = state.to_message(Message(role="assistant"), streaming=False)
    assert msg.is_truncated


def test_failed_keeps_partial_content():
    state = replay([
        delta("partial"),
        item_added({"type": "function_call", "id": "fc_1", "name": "f"}),
        failed("rate limited"),
    ])
    assert state.is_error
    assert state.error == "rate limited"
    assert state.content == "partial"
    assert len(state.tool_calls) == 1
    assert state.response_id is None


def test_error_event_alias():
    state = apply(StreamState(), {"type": "error", "message": "bad request"})
    assert state.is_error
    assert state.error == "bad request"


# ---------------------------------------------------------------------------
# Seeding / async replay
# ---------------------------------------------------------------------------

def test_from_message_continues_content():
    msg = Message(role="assistant", content="Before", tool_calls=[
        ToolCall(id="mcpr_1", type="mcp_approval", status="approved", approval_request_id="mcpr_1"),
    ])
    state = apply(StreamState.from_message(msg), delta(" after"))
    assert state.content == "Before after"
    assert state.tool_calls[0].status == "approved"


@pytest.mark.asyncio
async def test_replay_async_matches_replay():
    events = [created(), delta("a"), delta("b"), completed("resp_2")]

    async def source():
        for e in events:
            yield e

    assert await replay_async(source()) == replay(events)
