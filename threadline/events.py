"""
Event kinds for the Responses streaming protocol.

Every raw event from the transport is a JSON object with a "type" field.
classify() maps it onto a closed EventKind. Anything not listed here is
EventKind.UNKNOWN and gets ignored by the accumulator, so new upstream
event types never break a stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CREATED = "created"
    TEXT_DELTA = "text_delta"
    TEXT_DONE = "text_done"
    ANNOTATION = "annotation"
    REASONING_DELTA = "reasoning_delta"
    REASONING_DONE = "reasoning_done"
    OUTPUT_ITEM = "output_item"
    WEB_SEARCH_STATUS = "web_search_status"
    CODE_STATUS = "code_status"
    CODE_DELTA = "code_delta"
    CODE_DONE = "code_done"
    CODE_OUTPUT = "code_output"
    MCP_STATUS = "mcp_status"
    MCP_ARGS_DELTA = "mcp_args_delta"
    MCP_ARGS_DONE = "mcp_args_done"
    FUNCTION_ARGS_DELTA = "function_args_delta"
    FUNCTION_ARGS_DONE = "function_args_done"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    UNKNOWN = "unknown"


# Wire type → kind. Several kinds have two spellings in the wild.
WIRE_TYPES: dict[str, EventKind] = {
    "response.created": EventKind.CREATED,
    "response.in_progress": EventKind.CREATED,
    "response.output_text.delta": EventKind.TEXT_DELTA,
    "response.output_text.done": EventKind.TEXT_DONE,
    "response.output_text.annotation.added": EventKind.ANNOTATION,
    "response.reasoning_summary_text.delta": EventKind.REASONING_DELTA,
    "response.reasoning.delta": EventKind.REASONING_DELTA,
    "response.reasoning_summary_text.done": EventKind.REASONING_DONE,
    "response.output_item.added": EventKind.OUTPUT_ITEM,
    "response.output_item.done": EventKind.OUTPUT_ITEM,
    "response.web_search_call.in_progress": EventKind.WEB_SEARCH_STATUS,
    "response.web_search_call.searching": EventKind.WEB_SEARCH_STATUS,
    "response.web_search_call.completed": EventKind.WEB_SEARCH_STATUS,
    "response.code_interpreter_call.in_progress": EventKind.CODE_STATUS,
    "response.code_interpreter_call.interpreting": EventKind.CODE_STATUS,
    "response.code_interpreter_call.completed": EventKind.CODE_STATUS,
    "response.code_interpreter_call_code.delta": EventKind.CODE_DELTA,
    "response.code_interpreter_call.code.delta": EventKind.CODE_DELTA,
    "response.code_interpreter_call_code.done": EventKind.CODE_DONE,
    "response.code_interpreter_call.code.done": EventKind.CODE_DONE,
    "response.code_interpreter_call_outputs.done": EventKind.CODE_OUTPUT,
    "response.code_interpreter_call.output": EventKind.CODE_OUTPUT,
    "response.mcp_call.in_progress": EventKind.MCP_STATUS,
    "response.mcp_call.completed": EventKind.MCP_STATUS,
    "response.mcp_call_arguments.delta": EventKind.MCP_ARGS_DELTA,
    "response.mcp_call_arguments.done": EventKind.MCP_ARGS_DONE,
    "response.function_call_arguments.delta": EventKind.FUNCTION_ARGS_DELTA,
    "response.function_call_arguments.done": EventKind.FUNCTION_ARGS_DONE,
    "response.completed": EventKind.COMPLETED,
    "response.incomplete": EventKind.INCOMPLETE,
    "response.failed": EventKind.FAILED,
    "error": EventKind.FAILED,
}

TERMINAL_KINDS = frozenset({EventKind.COMPLETED, EventKind.INCOMPLETE, EventKind.FAILED})


@dataclass(frozen=True)
class StreamEvent:
    """A classified event. `data` is the raw event object."""
    kind: EventKind
    type: str
    data: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @property
    def status_suffix(self) -> str:
        """Last dotted segment of the wire type, e.g. 'searching'."""
        return self.type.rsplit(".", 1)[-1]


def classify(raw) -> StreamEvent:
    """Classify a raw transport event. Malformed input becomes UNKNOWN."""
    if isinstance(raw, StreamEvent):
        return raw
    if not isinstance(raw, dict):
        logger.warning("Ignoring malformed stream event (not an object): %r", raw)
        return StreamEvent(kind=EventKind.UNKNOWN, type="", data={})

    event_type = raw.get("type")
    if not isinstance(event_type, str) or not event_type:
        logger.warning("Ignoring stream event without a type: %r", raw)
        return StreamEvent(kind=EventKind.UNKNOWN, type="", data=raw)

    kind = WIRE_TYPES.get(event_type, EventKind.UNKNOWN)
    if kind is EventKind.UNKNOWN:
        logger.debug("Unknown stream event type '%s' ignored", event_type)
    return StreamEvent(kind=kind, type=event_type, data=raw)
