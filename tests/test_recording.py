"""
Tests for stream recording and replay.
Run with: pytest tests/test_recording.py
"""

import json

import pytest

from threadline.recording import (
    RecordingSession,
    create_recording_session,
    load_recording,
    load_recording_file,
    mock_stream,
    recording_stats,
    replay_recording,
)

from fakes import completed, created, delta


def _write(tmp_path, events, request=None):
    session = RecordingSession(str(tmp_path))
    session.record_request(request or {"model": "gpt-5-mini", "input": "hi"})
    for event in events:
        session.record_event(event)
    return session, session.finalize()


def test_finalize_writes_jsonl(tmp_path):
    _, path = _write(tmp_path, [created(), delta("Hi"), completed("resp_1")])
    lines = path.read_text().strip().split("\n")
    assert len(lines) == 4
    first = json.loads(lines[0])
    assert first["type"] == "request"
    assert first["data"]["model"] == "gpt-5-mini"
    assert json.loads(lines[2])["type"] == "response.output_text.delta"


def test_finalize_only_writes_once(tmp_path):
    session, path = _write(tmp_path, [delta("a")])
    session.record_event(delta("ignored"))
    assert session.finalize() is None
    assert len(load_recording_file(str(path)).events) == 1


def test_replay_recording(tmp_path):
    _, path = _write(tmp_path, [created(), delta("Hello"), delta(" again"), completed("resp_2")])
    state = replay_recording(load_recording_file(str(path)))
    assert state.content == "Hello again"
    assert state.response_id == "resp_2"


def test_load_recording_validation():
    with pytest.raises(ValueError, match="empty"):
        load_recording("   \n")
    with pytest.raises(ValueError, match="request"):
        load_recording(json.dumps({"type": "response.created", "timestamp": 0, "data": {}}))


def test_recording_stats(tmp_path):
    _, path = _write(tmp_path, [delta("a"), delta("b"), completed()])
    stats = recording_stats(load_recording_file(str(path)))
    assert stats["total_events"] == 3
    assert stats["event_types"]["response.output_text.delta"] == 2
    assert stats["request_model"] == "gpt-5-mini"


@pytest.mark.asyncio
async def test_mock_stream_yields_events(tmp_path):
    _, path = _write(tmp_path, [delta("x"), completed()])
    recording = load_recording_file(str(path))
    events = [e async for e in mock_stream(recording)]
    assert [e["type"] for e in events] == ["response.output_text.delta", "response.completed"]


def test_create_recording_session(tmp_path):
    assert create_recording_session({}) is None
    assert create_recording_session({"recording": {"enabled": False}}) is None
    session = create_recording_session({"recording": {"enabled": True, "path": str(tmp_path)}})
    assert isinstance(session, RecordingSession)
    assert session.directory == tmp_path
