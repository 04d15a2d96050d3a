"""
Event accumulator: fold Responses stream events into a StreamState.

apply(state, event) is a pure function. It never mutates its input and
never performs I/O. When an event changes nothing (empty delta, unknown
type, status event for an item we never saw) the *same* state object is
returned so callers can skip redundant updates with an identity check.

In-progress items are keyed by their server-assigned id. Deltas for
different tool calls or reasoning parts can interleave freely without
touching each other. Items that arrive without an id get one derived from
the current state, so replaying the same sequence always yields the same
result.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import AsyncIterable, Callable, Iterable

from threadline.events import EventKind, StreamEvent, classify
from threadline.storage.models import (
    ACTIVE_TOOL_STATUSES,
    Citation,
    Message,
    ReasoningStep,
    ToolCall,
)
from threadline.usage import TokenUsage, extract_token_usage


# Forward order of each tool variant's status machine. "aborted" is
# reachable from any non-terminal status and is applied by the session.
STATUS_FLOW: dict[str, tuple[str, ...]] = {
    "web_search": ("in_progress", "searching", "completed"),
    "code_interpreter": ("in_progress", "interpreting", "completed"),
    "mcp": ("in_progress", "completed"),
    "function": ("in_progress", "completed"),
    "mcp_approval": ("pending_approval", "approved"),
}
TERMINAL_STATUSES = frozenset({"completed", "aborted", "failed", "approved", "denied"})


@dataclass(frozen=True)
class StreamState:
    """Everything accumulated so far for one assistant message."""
    content: str = ""
    reasoning: tuple[ReasoningStep, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    citations: tuple[Citation, ...] = ()
    response_id: str | None = None
    response_json: dict | None = None
    usage: TokenUsage | None = None
    is_error: bool = False
    error: str | None = None
    is_truncated: bool = False
    truncation_reason: str | None = None

    @classmethod
    def from_message(cls, msg: Message) -> "StreamState":
        """Seed a state from an existing message (continuing a turn)."""
        return cls(
            content=msg.content,
            reasoning=tuple(replace(r) for r in msg.reasoning),
            tool_calls=tuple(replace(t) for t in msg.tool_calls),
            citations=tuple(replace(c) for c in msg.citations),
        )

    def to_message(self, base: Message, streaming: bool) -> Message:
        """
        Project this state onto a copy of `base`.
        Citations are only attached once the message is finished.
        """
        msg = base.copy()
        msg.content = self.content
        msg.reasoning = [replace(r) for r in self.reasoning]
        msg.tool_calls = [replace(t) for t in self.tool_calls]
        msg.citations = [] if streaming else [replace(c) for c in self.citations]
        msg.is_streaming = streaming
        if self.response_json is not None:
            msg.response_json = self.response_json
        if self.is_truncated:
            msg.is_truncated = True
            msg.truncation_reason = self.truncation_reason
        return msg


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _compact_json(obj) -> str:
    return json.dumps(obj, separators=(",", ":"))


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def _index_of(items: tuple, item_id: str) -> int:
    for i, item in enumerate(items):
        if item.id == item_id:
            return i
    return -1


def _fallback_tool_id(state: StreamState) -> str:
    return f"tool_{len(state.tool_calls)}"


def _fallback_reasoning_id(state: StreamState) -> str:
    return f"reasoning_{len(state.reasoning)}"


def advance_status(call: ToolCall, status: str | None) -> ToolCall:
    """Move a tool call forward in its status machine. Never regresses."""
    if not status or status == call.status:
        return call
    if call.status in TERMINAL_STATUSES:
        return call
    flow = STATUS_FLOW.get(call.type, ())
    if call.status in flow and status in flow and flow.index(status) < flow.index(call.status):
        return call
    return replace(call, status=status)


def _upsert_tool(
    state: StreamState,
    item_id: str,
    create: Callable[[], ToolCall],
    update: Callable[[ToolCall], ToolCall],
) -> StreamState:
    idx = _index_of(state.tool_calls, item_id)
    calls = list(state.tool_calls)
    if idx >= 0:
        updated = update(calls[idx])
        if updated is calls[idx]:
            return state
        calls[idx] = updated
    else:
        calls.append(create())
    return replace(state, tool_calls=tuple(calls))


def _update_existing_tool(state: StreamState, item_id, update: Callable[[ToolCall], ToolCall]) -> StreamState:
    if not item_id:
        return state
    idx = _index_of(state.tool_calls, item_id)
    if idx < 0:
        return state
    updated = update(state.tool_calls[idx])
    if updated is state.tool_calls[idx]:
        return state
    calls = list(state.tool_calls)
    calls[idx] = updated
    return replace(state, tool_calls=tuple(calls))


def _logs_from(outputs) -> str | None:
    if not isinstance(outputs, list):
        return None
    return "\n".join(
        o.get("logs") or ""
        for o in outputs
        if isinstance(o, dict) and o.get("type") == "logs"
    )


def extract_citations(response: dict) -> list[Citation]:
    """
    Pull url_citation annotations out of a completed response.
    Looks at output[] message items → output_text content → annotations.
    Deduplicated by URL, first occurrence wins.
    """
    citations: list[Citation] = []
    output = response.get("output")
    if not isinstance(output, list):
        return citations

    for item in output:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if not isinstance(part, dict) or part.get("type") != "output_text":
                continue
            annotations = part.get("annotations")
            if not isinstance(annotations, list):
                continue
            for ann in annotations:
                citation = _citation_from(ann)
                if citation is not None:
                    citations.append(citation)

    seen: set[str] = set()
    unique = []
    for c in citations:
        if c.url in seen:
            continue
        seen.add(c.url)
        unique.append(c)
    return unique


def _citation_from(ann) -> Citation | None:
    if not isinstance(ann, dict) or ann.get("type") != "url_citation":
        return None
    url, title = ann.get("url"), ann.get("title")
    start, end = ann.get("start_index"), ann.get("end_index")
    if not isinstance(url, str) or not isinstance(title, str):
        return None
    if not isinstance(start, int) or not isinstance(end, int):
        return None
    return Citation(url=url, title=title, start_index=start, end_index=end)


# ---------------------------------------------------------------------------
# Handlers, one per EventKind
# ---------------------------------------------------------------------------

def _on_created(state: StreamState, event: StreamEvent) -> StreamState:
    # The id in response.created is not confirmed yet; continuity waits for a terminal event.
    return state


def _on_text_delta(state: StreamState, event: StreamEvent) -> StreamState:
    delta = _text(event.data.get("delta"))
    if not delta:
        return state
    return replace(state, content=state.content + delta)


def _on_text_done(state: StreamState, event: StreamEvent) -> StreamState:
    # Deltas are authoritative. Only recover the text if every delta was missed.
    text = _text(event.data.get("text"))
    if state.content or not text:
        return state
    return replace(state, content=text)


def _on_annotation(state: StreamState, event: StreamEvent) -> StreamState:
    citation = _citation_from(event.data.get("annotation"))
    if citation is None or any(c.url == citation.url for c in state.citations):
        return state
    return replace(state, citations=state.citations + (citation,))


def _reasoning_key(state: StreamState, event: StreamEvent) -> str:
    item_id = event.data.get("item_id")
    if not item_id:
        # Id-less parts continue the latest step's item
        if state.reasoning:
            item_id = state.reasoning[-1].id.rsplit("_", 1)[0]
        else:
            item_id = _fallback_reasoning_id(state)
    summary_index = event.data.get("summary_index") or 0
    return f"{item_id}_{summary_index}"


def _on_reasoning_delta(state: StreamState, event: StreamEvent) -> StreamState:
    delta = _text(event.data.get("delta"))
    key = _reasoning_key(state, event)
    idx = _index_of(state.reasoning, key)
    if idx >= 0 and not delta:
        return state
    steps = list(state.reasoning)
    if idx >= 0:
        steps[idx] = replace(steps[idx], content=steps[idx].content + delta)
    else:
        steps.append(ReasoningStep(id=key, content=delta))
    return replace(state, reasoning=tuple(steps))


def _on_reasoning_done(state: StreamState, event: StreamEvent) -> StreamState:
    text = event.data.get("text")
    if not isinstance(text, str):
        return state
    key = _reasoning_key(state, event)
    idx = _index_of(state.reasoning, key)
    steps = list(state.reasoning)
    if idx >= 0:
        if steps[idx].content == text:
            return state
        steps[idx] = replace(steps[idx], content=text)
    else:
        steps.append(ReasoningStep(id=key, content=text))
    return replace(state, reasoning=tuple(steps))


def _item_reasoning(state: StreamState, item: dict) -> StreamState:
    summary = item.get("summary")
    if not isinstance(summary, list):
        return state
    item_id = item.get("id") or _fallback_reasoning_id(state)
    steps = list(state.reasoning)
    changed = False
    for i, part in enumerate(summary):
        if not isinstance(part, dict) or part.get("type") != "summary_text":
            continue
        text = _text(part.get("text"))
        if not text:
            continue
        key = f"{item_id}_{i}"
        idx = _index_of(tuple(steps), key)
        if idx >= 0:
            if steps[idx].content != text:
                steps[idx] = replace(steps[idx], content=text)
                changed = True
        else:
            steps.append(ReasoningStep(id=key, content=text))
            changed = True
    if not changed:
        return state
    return replace(state, reasoning=tuple(steps))


def _item_web_search(state: StreamState, item: dict) -> StreamState:
    item_id = item.get("id") or _fallback_tool_id(state)
    status = item.get("status")
    action = item.get("action") if isinstance(item.get("action"), dict) else {}
    query = action.get("query") or None

    def create() -> ToolCall:
        return ToolCall(
            id=item_id,
            type="web_search",
            name="web_search",
            arguments=_compact_json({"query": query}) if query else "",
            status=status or "in_progress",
            query=query,
        )

    def update(call: ToolCall) -> ToolCall:
        updated = advance_status(call, status)
        if query and query != call.query:
            updated = replace(updated, query=query, arguments=_compact_json({"query": query}))
        return updated

    return _upsert_tool(state, item_id, create, update)


def _item_code_interpreter(state: StreamState, item: dict) -> StreamState:
    item_id = item.get("id") or _fallback_tool_id(state)
    status = item.get("status")
    code = _text(item.get("code")) or None
    container_id = item.get("container_id") or None
    logs = _logs_from(item.get("outputs")) or None

    def create() -> ToolCall:
        return ToolCall(
            id=item_id,
            type="code_interpreter",
            name="code_interpreter",
            status=status or "in_progress",
            code=code or "",
            container_id=container_id,
            output=logs,
        )

    def update(call: ToolCall) -> ToolCall:
        updated = advance_status(call, status)
        changes = {}
        if code and code != call.code:
            changes["code"] = code
        if container_id and container_id != call.container_id:
            changes["container_id"] = container_id
        if logs and logs != call.output:
            changes["output"] = logs
        return replace(updated, **changes) if changes else updated

    return _upsert_tool(state, item_id, create, update)


def _item_mcp_call(state: StreamState, item: dict) -> StreamState:
    item_id = item.get("id") or _fallback_tool_id(state)
    status = item.get("status")
    tool_name = item.get("name") or "mcp_tool"
    server_label = item.get("server_label") or None
    display = f"{server_label}/{tool_name}" if server_label else tool_name
    args = _text(item.get("arguments"))
    output = item.get("output") or None
    error = item.get("error") or None
    result = f"Error: {error}" if error else output

    def create() -> ToolCall:
        return ToolCall(
            id=item_id,
            type="mcp",
            name=display,
            arguments=args,
            status=status or "in_progress",
            result=result,
            server_label=server_label,
        )

    def update(call: ToolCall) -> ToolCall:
        updated = advance_status(call, status)
        changes = {}
        if display != "mcp_tool" and display != call.name:
            changes["name"] = display
        if server_label and server_label != call.server_label:
            changes["server_label"] = server_label
        if args and args != call.arguments:
            changes["arguments"] = args
        if result and result != call.result:
            changes["result"] = result
        return replace(updated, **changes) if changes else updated

    return _upsert_tool(state, item_id, create, update)


def _item_mcp_approval(state: StreamState, item: dict) -> StreamState:
    item_id = item.get("id") or _fallback_tool_id(state)
    tool_name = item.get("name") or "mcp_tool"
    server_label = item.get("server_label") or None

    def create() -> ToolCall:
        return ToolCall(
            id=item_id,
            type="mcp_approval",
            name=f"{server_label}/{tool_name}" if server_label else tool_name,
            arguments=_text(item.get("arguments")),
            status="pending_approval",
            server_label=server_label,
            approval_request_id=item_id,
        )

    # added and done carry the same payload; the first one wins
    return _upsert_tool(state, item_id, create, lambda call: call)


def _item_function_call(state: StreamState, item: dict) -> StreamState:
    item_id = item.get("id") or _fallback_tool_id(state)
    name = item.get("name") or None
    args = _text(item.get("arguments"))
    status = item.get("status")

    def create() -> ToolCall:
        return ToolCall(
            id=item_id,
            type="function",
            name=name or "unknown",
            arguments=args,
            status=status or "in_progress",
        )

    def update(call: ToolCall) -> ToolCall:
        updated = advance_status(call, status)
        changes = {}
        if name and name != call.name:
            changes["name"] = name
        if args and args != call.arguments:
            changes["arguments"] = args
        return replace(updated, **changes) if changes else updated

    return _upsert_tool(state, item_id, create, update)


_ITEM_HANDLERS: dict[str, Callable[[StreamState, dict], StreamState]] = {
    "reasoning": _item_reasoning,
    "web_search_call": _item_web_search,
    "code_interpreter_call": _item_code_interpreter,
    "mcp_call": _item_mcp_call,
    "mcp_approval_request": _item_mcp_approval,
    "function_call": _item_function_call,
}


def _on_output_item(state: StreamState, event: StreamEvent) -> StreamState:
    item = event.data.get("item")
    if not isinstance(item, dict):
        return state
    handler = _ITEM_HANDLERS.get(item.get("type"))
    if handler is None:
        return state
    return handler(state, item)


def _on_web_search_status(state: StreamState, event: StreamEvent) -> StreamState:
    status = event.status_suffix
    return _update_existing_tool(state, event.data.get("item_id"), lambda c: advance_status(c, status))


def _on_code_status(state: StreamState, event: StreamEvent) -> StreamState:
    status = event.status_suffix
    return _update_existing_tool(state, event.data.get("item_id"), lambda c: advance_status(c, status))


def _on_mcp_status(state: StreamState, event: StreamEvent) -> StreamState:
    status = event.status_suffix
    return _update_existing_tool(state, event.data.get("item_id"), lambda c: advance_status(c, status))


def _on_code_delta(state: StreamState, event: StreamEvent) -> StreamState:
    item_id = event.data.get("item_id")
    if not item_id:
        return state
    delta = _text(event.data.get("delta"))
    if not delta and _index_of(state.tool_calls, item_id) >= 0:
        return state
    return _upsert_tool(
        state,
        item_id,
        lambda: ToolCall(id=item_id, type="code_interpreter", name="code_interpreter", code=delta),
        lambda call: replace(call, code=(call.code or "") + delta),
    )


def _on_code_done(state: StreamState, event: StreamEvent) -> StreamState:
    item_id = event.data.get("item_id")
    code = event.data.get("code")
    if not item_id or not isinstance(code, str):
        return state
    return _upsert_tool(
        state,
        item_id,
        lambda: ToolCall(id=item_id, type="code_interpreter", name="code_interpreter", code=code),
        lambda call: call if call.code == code else replace(call, code=code),
    )


def _on_code_output(state: StreamState, event: StreamEvent) -> StreamState:
    outputs = event.data.get("outputs")
    if outputs is None:
        outputs = event.data.get("output")
    logs = _logs_from(outputs) or ""
    return _update_existing_tool(
        state,
        event.data.get("item_id"),
        lambda call: call if call.output == logs else replace(call, output=logs),
    )


def _on_mcp_args_delta(state: StreamState, event: StreamEvent) -> StreamState:
    item_id = event.data.get("item_id")
    if not item_id:
        return state
    delta = _text(event.data.get("delta"))
    if not delta and _index_of(state.tool_calls, item_id) >= 0:
        return state
    return _upsert_tool(
        state,
        item_id,
        lambda: ToolCall(id=item_id, type="mcp", name="mcp_tool", arguments=delta),
        lambda call: replace(call, arguments=call.arguments + delta),
    )


def _on_mcp_args_done(state: StreamState, event: StreamEvent) -> StreamState:
    item_id = event.data.get("item_id")
    args = event.data.get("arguments")
    if not item_id or not isinstance(args, str):
        return state
    return _upsert_tool(
        state,
        item_id,
        lambda: ToolCall(id=item_id, type="mcp", name="mcp_tool", arguments=args),
        lambda call: call if call.arguments == args else replace(call, arguments=args),
    )


def _on_function_args_delta(state: StreamState, event: StreamEvent) -> StreamState:
    delta = _text(event.data.get("delta"))
    item_id = event.data.get("item_id")
    if item_id and not delta and _index_of(state.tool_calls, item_id) >= 0:
        return state
    item_id = item_id or _fallback_tool_id(state)
    name = event.data.get("name") or "unknown"
    return _upsert_tool(
        state,
        item_id,
        lambda: ToolCall(id=item_id, type="function", name=name, arguments=delta),
        lambda call: replace(call, arguments=call.arguments + delta),
    )


def _on_function_args_done(state: StreamState, event: StreamEvent) -> StreamState:
    item_id = event.data.get("item_id")
    args = event.data.get("arguments")
    if not item_id or not isinstance(args, str):
        return state
    name = event.data.get("name") or "unknown"
    return _upsert_tool(
        state,
        item_id,
        lambda: ToolCall(id=item_id, type="function", name=name, arguments=args),
        lambda call: call if call.arguments == args else replace(call, arguments=args),
    )


def _terminal_capture(state: StreamState, response: dict) -> StreamState:
    response_id = response.get("id") if isinstance(response.get("id"), str) else None
    citations = extract_citations(response)
    return replace(
        state,
        response_id=response_id,
        response_json=response,
        citations=tuple(citations) if citations else state.citations,
        usage=extract_token_usage(response),
    )


def _on_completed(state: StreamState, event: StreamEvent) -> StreamState:
    response = event.data.get("response")
    if not isinstance(response, dict):
        return state
    return _terminal_capture(state, response)


def _on_incomplete(state: StreamState, event: StreamEvent) -> StreamState:
    response = event.data.get("response")
    if not isinstance(response, dict):
        return state
    details = response.get("incomplete_details")
    reason = details.get("reason") if isinstance(details, dict) else None
    return replace(_terminal_capture(state, response), is_truncated=True, truncation_reason=reason)


def _on_failed(state: StreamState, event: StreamEvent) -> StreamState:
    message = None
    response = event.data.get("response")
    if isinstance(response, dict) and isinstance(response.get("error"), dict):
        message = response["error"].get("message")
    if not message:
        message = event.data.get("message")
    return replace(state, is_error=True, error=message or "The response failed")


_HANDLERS: dict[EventKind, Callable[[StreamState, StreamEvent], StreamState]] = {
    EventKind.CREATED: _on_created,
    EventKind.TEXT_DELTA: _on_text_delta,
    EventKind.TEXT_DONE: _on_text_done,
    EventKind.ANNOTATION: _on_annotation,
    EventKind.REASONING_DELTA: _on_reasoning_delta,
    EventKind.REASONING_DONE: _on_reasoning_done,
    EventKind.OUTPUT_ITEM: _on_output_item,
    EventKind.WEB_SEARCH_STATUS: _on_web_search_status,
    EventKind.CODE_STATUS: _on_code_status,
    EventKind.CODE_DELTA: _on_code_delta,
    EventKind.CODE_DONE: _on_code_done,
    EventKind.CODE_OUTPUT: _on_code_output,
    EventKind.MCP_STATUS: _on_mcp_status,
    EventKind.MCP_ARGS_DELTA: _on_mcp_args_delta,
    EventKind.MCP_ARGS_DONE: _on_mcp_args_done,
    EventKind.FUNCTION_ARGS_DELTA: _on_function_args_delta,
    EventKind.FUNCTION_ARGS_DONE: _on_function_args_done,
    EventKind.COMPLETED: _on_completed,
    EventKind.INCOMPLETE: _on_incomplete,
    EventKind.FAILED: _on_failed,
}

_unhandled = set(EventKind) - set(_HANDLERS) - {EventKind.UNKNOWN}
if _unhandled:
    raise RuntimeError(f"No accumulator handler for event kinds: {sorted(k.value for k in _unhandled)}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def apply(state: StreamState, event) -> StreamState:
    """Fold one event (raw dict or StreamEvent) into the state."""
    classified = classify(event)
    handler = _HANDLERS.get(classified.kind)
    if handler is None:
        return state
    return handler(state, classified)


def abort_active_tools(state: StreamState) -> StreamState:
    """Mark every still-running tool call as aborted."""
    if not any(t.status in ACTIVE_TOOL_STATUSES for t in state.tool_calls):
        return state
    return replace(
        state,
        tool_calls=tuple(
            replace(t, status="aborted") if t.status in ACTIVE_TOOL_STATUSES else t
            for t in state.tool_calls
        ),
    )


def replay(events: Iterable, state: StreamState | None = None) -> StreamState:
    """Fold a finite event sequence into a final state."""
    state = state or StreamState()
    for event in events:
        state = apply(state, event)
    return state


async def replay_async(events: AsyncIterable, state: StreamState | None = None) -> StreamState:
    """Fold an async event source into a final state."""
    state = state or StreamState()
    async for event in events:
        state = apply(state, event)
    return state
