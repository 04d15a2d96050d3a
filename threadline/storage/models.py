"""
Data models for threads and messages.
These define the shape of data flowing between the stream engine,
the thread coordinator and the durable store.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

PLACEHOLDER_TITLE = "New Chat"

# Tool call statuses that still represent live work
ACTIVE_TOOL_STATUSES = ("in_progress", "searching", "interpreting")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ReasoningStep:
    """One reasoning summary part. id is '<item_id>_<summary_index>'."""
    id: str
    content: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "ReasoningStep":
        return cls(id=data.get("id", ""), content=data.get("content", ""))


@dataclass
class ToolCall:
    """A tool invocation made by the assistant while streaming."""
    id: str
    type: str                # function | web_search | code_interpreter | mcp | mcp_approval
    name: str = ""
    arguments: str = ""
    status: str = "in_progress"
    result: str | None = None
    query: str | None = None
    code: str | None = None
    output: str | None = None
    container_id: str | None = None
    server_label: str | None = None
    approval_request_id: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status,
        }
        for key in ("result", "query", "code", "output", "container_id",
                    "server_label", "approval_request_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(
            id=data.get("id", ""),
            type=data.get("type", "function"),
            name=data.get("name", ""),
            arguments=data.get("arguments", ""),
            status=data.get("status", "in_progress"),
            result=data.get("result"),
            query=data.get("query"),
            code=data.get("code"),
            output=data.get("output"),
            container_id=data.get("container_id"),
            server_label=data.get("server_label"),
            approval_request_id=data.get("approval_request_id"),
        )


@dataclass
class Citation:
    """URL citation attached to finished assistant content."""
    url: str
    title: str
    start_index: int
    end_index: int

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "start_index": self.start_index,
            "end_index": self.end_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Citation":
        return cls(
            url=data.get("url", ""),
            title=data.get("title", ""),
            start_index=data.get("start_index", 0),
            end_index=data.get("end_index", 0),
        )


@dataclass
class Message:
    """A single message in a thread. One per turn per role."""
    id: str = field(default_factory=lambda: uuid4().hex)
    role: str = "user"       # "user" or "assistant"
    content: str = ""
    reasoning: list[ReasoningStep] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    is_streaming: bool = False
    is_stopped: bool = False
    is_error: bool = False
    is_truncated: bool = False
    truncation_reason: str | None = None
    request_json: dict | None = None
    response_json: dict | None = None
    timestamp: str = field(default_factory=_now)

    def copy(self) -> "Message":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """Serialize for storage. Streaming messages are written as stopped."""
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "reasoning": [r.to_dict() for r in self.reasoning],
            "tool_calls": [t.to_dict() for t in self.tool_calls],
            "citations": [c.to_dict() for c in self.citations],
            "is_streaming": self.is_streaming,
            "is_stopped": self.is_stopped,
            "is_error": self.is_error,
            "timestamp": self.timestamp,
        }
        if self.is_streaming:
            data["is_streaming"] = False
            data["is_stopped"] = True
        if self.is_truncated:
            data["is_truncated"] = True
            data["truncation_reason"] = self.truncation_reason
        if self.request_json is not None:
            data["request_json"] = self.request_json
        if self.response_json is not None:
            data["response_json"] = self.response_json
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data.get("id") or uuid4().hex,
            role=data.get("role", "user"),
            content=data.get("content", ""),
            reasoning=[ReasoningStep.from_dict(r) for r in data.get("reasoning") or []],
            tool_calls=[ToolCall.from_dict(t) for t in data.get("tool_calls") or []],
            citations=[Citation.from_dict(c) for c in data.get("citations") or []],
            is_streaming=bool(data.get("is_streaming", False)),
            is_stopped=bool(data.get("is_stopped", False)),
            is_error=bool(data.get("is_error", False)),
            is_truncated=bool(data.get("is_truncated", False)),
            truncation_reason=data.get("truncation_reason"),
            request_json=data.get("request_json"),
            response_json=data.get("response_json"),
            timestamp=data.get("timestamp") or _now(),
        )


@dataclass
class Thread:
    """A conversation thread. Owned by the ThreadCoordinator."""
    id: str = field(default_factory=lambda: uuid4().hex)
    title: str = PLACEHOLDER_TITLE
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    messages: list[Message] = field(default_factory=list)
    previous_response_id: str | None = None
    uploaded_file_ids: list[str] = field(default_factory=list)

    def copy(self) -> "Thread":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": serialize_messages(self.messages),
            "previous_response_id": self.previous_response_id,
            "uploaded_file_ids": list(self.uploaded_file_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Thread":
        return cls(
            id=data["id"],
            title=data.get("title") or PLACEHOLDER_TITLE,
            created_at=data.get("created_at") or _now(),
            updated_at=data.get("updated_at") or _now(),
            messages=deserialize_messages(data.get("messages") or []),
            previous_response_id=data.get("previous_response_id"),
            uploaded_file_ids=list(data.get("uploaded_file_ids") or []),
        )


def serialize_messages(messages: list[Message]) -> list[dict]:
    """Serialize messages for storage, sanitizing any still-streaming message."""
    return [m.to_dict() for m in messages]


def deserialize_messages(raw: list[dict]) -> list[Message]:
    return [Message.from_dict(m) for m in raw]
