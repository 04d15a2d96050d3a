"""
Outbound request construction for the Responses API.

ChatSettings is the subset of config that shapes a request. build_request()
turns user text plus continuity state into the request body;
build_approval_request() builds the MCP approval continuation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class McpServer:
    """A remote MCP server exposed to the model as a tool."""
    server_label: str
    server_url: str
    require_approval: str = "never"
    headers: dict[str, str] = field(default_factory=dict)
    enabled: bool = True

    def to_tool(self) -> dict:
        tool = {
            "type": "mcp",
            "server_label": self.server_label,
            "server_url": self.server_url,
            "require_approval": self.require_approval,
        }
        headers = {}
        for key, value in (self.headers or {}).items():
            key = str(key).strip()
            value = str(value).strip() if value is not None else ""
            if key and value:
                headers[key] = value
        if headers:
            tool["headers"] = headers
        return tool


@dataclass
class Attachment:
    """
    A file sent alongside a user turn. Either an uploaded file_id or inline
    base64 data; file_id wins when both are set.
    """
    name: str
    mime_type: str
    file_id: str = ""
    data: str = ""

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def to_part(self) -> dict:
        data_url = f"data:{self.mime_type};base64,{self.data}"
        if self.is_image:
            if self.file_id:
                return {"type": "input_image", "file_id": self.file_id}
            return {"type": "input_image", "image_url": data_url}
        if self.file_id:
            return {"type": "input_file", "file_id": self.file_id}
        return {"type": "input_file", "filename": self.name, "file_data": data_url}


@dataclass
class ChatSettings:
    model: str = "gpt-5-mini"
    deployment: str = ""
    title_model: str = ""
    reasoning_effort: str | None = None
    reasoning_summary: str | None = "detailed"
    verbosity: str | None = None
    instructions: str | None = None
    max_output_tokens: int | None = None
    web_search: bool = False
    code_interpreter: bool = False
    mcp_servers: list[McpServer] = field(default_factory=list)

    @property
    def deployment_name(self) -> str:
        """The model name sent on the wire. Deployment wins when set."""
        return self.deployment or self.model

    @classmethod
    def from_config(cls, cfg: dict) -> "ChatSettings":
        chat = cfg.get("chat", {}) or {}
        reasoning = chat.get("reasoning", {}) or {}
        tools = chat.get("tools", {}) or {}
        servers = []
        for entry in tools.get("mcp_servers", []) or []:
            if not entry.get("server_label") or not entry.get("server_url"):
                logger.warning("Skipping MCP server without label or url: %r", entry)
                continue
            servers.append(McpServer(
                server_label=entry["server_label"],
                server_url=entry["server_url"],
                require_approval=entry.get("require_approval", "never"),
                headers=entry.get("headers", {}) or {},
                enabled=entry.get("enabled", True),
            ))
        return cls(
            model=chat.get("model", "gpt-5-mini"),
            deployment=chat.get("deployment", "") or "",
            title_model=chat.get("title_model", "") or "",
            reasoning_effort=reasoning.get("effort") or None,
            reasoning_summary=reasoning.get("summary", "detailed") or None,
            verbosity=chat.get("verbosity") or None,
            instructions=chat.get("instructions") or None,
            max_output_tokens=chat.get("max_output_tokens") or None,
            web_search=bool(tools.get("web_search", False)),
            code_interpreter=bool(tools.get("code_interpreter", False)),
            mcp_servers=servers,
        )


def build_tools(settings: ChatSettings) -> tuple[list[dict], list[str]]:
    """Tools array and include list for the enabled tools."""
    tools: list[dict] = []
    include: list[str] = []
    if settings.web_search:
        tools.append({"type": "web_search_preview"})
    if settings.code_interpreter:
        tools.append({"type": "code_interpreter", "container": {"type": "auto"}})
        include.append("code_interpreter_call.outputs")
    for server in settings.mcp_servers:
        if server.enabled:
            tools.append(server.to_tool())
    return tools, include


def _common_fields(body: dict, settings: ChatSettings):
    if settings.instructions and settings.instructions.strip():
        body["instructions"] = settings.instructions.strip()
    if settings.reasoning_effort:
        reasoning = {"effort": settings.reasoning_effort}
        if settings.reasoning_summary:
            reasoning["summary"] = settings.reasoning_summary
        body["reasoning"] = reasoning
    if settings.verbosity:
        body["verbosity"] = settings.verbosity
    tools, include = build_tools(settings)
    if tools:
        body["tools"] = tools
    if include:
        body["include"] = include


def build_input(content: str, attachments: list[Attachment] | None = None):
    text = content.strip()
    if not attachments:
        return text
    parts: list[dict] = []
    if text:
        parts.append({"type": "input_text", "text": text})
    parts.extend(a.to_part() for a in attachments)
    return [{"role": "user", "content": parts}]


def attachment_file_ids(attachments: list[Attachment] | None) -> list[str]:
    """Uploaded file ids referenced by a turn, in order, without repeats."""
    ids: list[str] = []
    for a in attachments or []:
        if a.file_id and a.file_id not in ids:
            ids.append(a.file_id)
    return ids


def build_request(
    settings: ChatSettings,
    content: str,
    previous_response_id: str | None = None,
    attachments: list[Attachment] | None = None,
) -> dict:
    """
    Request body for a user turn. Plain text goes out as a string; with
    attachments the input becomes one user message of content parts.
    """
    body: dict = {
        "model": settings.deployment_name,
        "input": build_input(content, attachments),
    }
    if previous_response_id:
        body["previous_response_id"] = previous_response_id
    _common_fields(body, settings)
    if settings.max_output_tokens:
        body["max_output_tokens"] = settings.max_output_tokens
    body["stream"] = True
    return body


def build_approval_request(
    settings: ChatSettings,
    approval_request_id: str,
    approve: bool,
    previous_response_id: str | None,
) -> dict:
    """Continuation body answering an mcp_approval_request."""
    body: dict = {
        "model": settings.deployment_name,
        "input": [{
            "type": "mcp_approval_response",
            "approval_request_id": approval_request_id,
            "approve": approve,
        }],
        "previous_response_id": previous_response_id,
    }
    _common_fields(body, settings)
    body["stream"] = True
    return body
