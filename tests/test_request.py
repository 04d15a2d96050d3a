"""
Tests for request construction and chat settings.
Run with: pytest tests/test_request.py
"""

from threadline.request import (
    Attachment,
    ChatSettings,
    McpServer,
    attachment_file_ids,
    build_approval_request,
    build_request,
    build_tools,
)


def test_minimal_request():
    body = build_request(ChatSettings(model="gpt-5-mini"), "  hello  ")
    assert body == {"model": "gpt-5-mini", "input": "hello", "stream": True}


def test_previous_response_id_included_when_set():
    body = build_request(ChatSettings(), "again", previous_response_id="resp_9")
    assert body["previous_response_id"] == "resp_9"
    assert "previous_response_id" not in build_request(ChatSettings(), "first")


def test_attachments_build_structured_input():
    attachments = [
        Attachment(name="chart.png", mime_type="image/png", data="iVBOR"),
        Attachment(name="report.pdf", mime_type="application/pdf", data="JVBER"),
        Attachment(name="photo.jpg", mime_type="image/jpeg", file_id="file_img"),
        Attachment(name="notes.pdf", mime_type="application/pdf", file_id="file_doc"),
    ]
    body = build_request(ChatSettings(), "  look at these  ", attachments=attachments)
    assert body["input"] == [{
        "role": "user",
        "content": [
            {"type": "input_text", "text": "look at these"},
            {"type": "input_image", "image_url": "data:image/png;base64,iVBOR"},
            {"type": "input_file", "filename": "report.pdf", "file_data": "data:application/pdf;base64,JVBER"},
            {"type": "input_image", "file_id": "file_img"},
            {"type": "input_file", "file_id": "file_doc"},
        ],
    }]
    assert attachment_file_ids(attachments + attachments[2:3]) == ["file_img", "file_doc"]


def test_attachment_without_text_has_no_text_part():
    body = build_request(ChatSettings(), "", attachments=[Attachment(name="a.pdf", mime_type="application/pdf", file_id="f1")])
    assert body["input"] == [{"role": "user", "content": [{"type": "input_file", "file_id": "f1"}]}]


def test_empty_attachment_list_sends_plain_text():
    assert build_request(ChatSettings(), "hi", attachments=[])["input"] == "hi"


def test_deployment_overrides_model():
    settings = ChatSettings(model="gpt-5", deployment="my-gpt5-deployment")
    assert settings.deployment_name == "my-gpt5-deployment"
    assert build_request(settings, "x")["model"] == "my-gpt5-deployment"


def test_reasoning_and_verbosity():
    settings = ChatSettings(reasoning_effort="high", reasoning_summary="concise", verbosity="low",
                            instructions="  Be brief.  ", max_output_tokens=256)
    body = build_request(settings, "x")
    assert body["reasoning"] == {"effort": "high", "summary": "concise"}
    assert body["verbosity"] == "low"
    assert body["instructions"] == "Be brief."
    assert body["max_output_tokens"] == 256


def test_no_reasoning_block_without_effort():
    body = build_request(ChatSettings(reasoning_effort=None, reasoning_summary="detailed"), "x")
    assert "reasoning" not in body


def test_blank_instructions_omitted():
    assert "instructions" not in build_request(ChatSettings(instructions="   "), "x")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

def test_builtin_tools():
    tools, include = build_tools(ChatSettings(web_search=True, code_interpreter=True))
    assert tools == [
        {"type": "web_search_preview"},
        {"type": "code_interpreter", "container": {"type": "auto"}},
    ]
    assert include == ["code_interpreter_call.outputs"]


def test_mcp_tool_headers_trimmed():
    server = McpServer(
        server_label="docs",
        server_url="https://mcp.example.com/sse",
        require_approval="always",
        headers={" Authorization ": " Bearer t ", "X-Empty": "  ", "": "orphan"},
    )
    assert server.to_tool() == {
        "type": "mcp",
        "server_label": "docs",
        "server_url": "https://mcp.example.com/sse",
        "require_approval": "always",
        "headers": {"Authorization": "Bearer t"},
    }


def test_disabled_mcp_server_skipped():
    settings = ChatSettings(mcp_servers=[
        McpServer("on", "https://a"),
        McpServer("off", "https://b", enabled=False),
    ])
    tools, _ = build_tools(settings)
    assert [t["server_label"] for t in tools] == ["on"]
    assert build_request(settings, "x")["tools"] == tools


def test_no_tools_key_when_nothing_enabled():
    body = build_request(ChatSettings(), "x")
    assert "tools" not in body
    assert "include" not in body


# ---------------------------------------------------------------------------
# Approval continuation
# ---------------------------------------------------------------------------

def test_approval_request():
    settings = ChatSettings(model="m", mcp_servers=[McpServer("fs", "https://fs", require_approval="always")])
    body = build_approval_request(settings, "mcpr_1", False, "resp_a")
    assert body["input"] == [{"type": "mcp_approval_response", "approval_request_id": "mcpr_1", "approve": False}]
    assert body["previous_response_id"] == "resp_a"
    assert body["stream"] is True
    assert body["tools"][0]["server_label"] == "fs"
    assert "max_output_tokens" not in body


# ---------------------------------------------------------------------------
# Settings from config
# ---------------------------------------------------------------------------

def test_settings_from_config():
    settings = ChatSettings.from_config({"chat": {
        "model": "gpt-5",
        "deployment": "dep",
        "title_model": "gpt-5-nano",
        "reasoning": {"effort": "low", "summary": "auto"},
        "verbosity": "medium",
        "max_output_tokens": 1000,
        "tools": {
            "web_search": True,
            "mcp_servers": [
                {"server_label": "docs", "server_url": "https://d", "require_approval": "always"},
                {"server_label": "broken"},
            ],
        },
    }})
    assert settings.deployment_name == "dep"
    assert settings.title_model == "gpt-5-nano"
    assert settings.reasoning_effort == "low"
    assert settings.reasoning_summary == "auto"
    assert settings.web_search
    assert not settings.code_interpreter
    assert [s.server_label for s in settings.mcp_servers] == ["docs"]
    assert settings.mcp_servers[0].require_approval == "always"


def test_settings_from_empty_config():
    settings = ChatSettings.from_config({})
    assert settings.model == "gpt-5-mini"
    assert settings.deployment_name == "gpt-5-mini"
    assert settings.reasoning_effort is None
    assert settings.mcp_servers == []
