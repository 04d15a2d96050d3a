"""
Tests for the threadline CLI commands that run without a service.
Run with: pytest tests/test_cli.py
"""

import json

import pytest

from threadline import cli, config
from threadline.recording import RecordingSession
from threadline.storage.models import Message, Thread
from threadline.storage.sqlite_store import SQLiteStore

from fakes import completed, delta


@pytest.fixture(autouse=True)
def fresh_config():
    config.reset_config()
    yield
    config.reset_config()


@pytest.fixture
def cfg_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "storage:\n"
        "  backend: sqlite\n"
        f"  sqlite_path: {tmp_path / 'threads.db'}\n"
        "logging:\n"
        "  level: WARNING\n"
    )
    return path


def _run(monkeypatch, *argv):
    monkeypatch.setattr("sys.argv", ["threadline", *argv])
    cli.main()


def test_replay_command(tmp_path, monkeypatch, capsys):
    session = RecordingSession(str(tmp_path))
    session.record_request({"model": "gpt-5-mini", "input": "hi"})
    for event in (delta("Hello"), delta(" there"), completed("resp_cli")):
        session.record_event(event)
    path = session.finalize()

    _run(monkeypatch, "replay", str(path), "-v")
    out = capsys.readouterr().out
    assert "gpt-5-mini" in out
    assert "resp_cli" in out
    assert "response.output_text.delta" in out
    assert out.rstrip().endswith("Hello there")


def test_threads_and_export(tmp_path, cfg_path, monkeypatch, capsys):
    store = SQLiteStore(str(tmp_path / "threads.db"))
    store.save_thread(Thread(title="Saved One", messages=[Message(role="user", content="q")]))

    _run(monkeypatch, "--config", str(cfg_path), "ls")
    assert "Saved One" in capsys.readouterr().out

    output = tmp_path / "export.json"
    _run(monkeypatch, "--config", str(cfg_path), "dump", "-o", str(output))
    data = json.loads(output.read_text())
    assert [t["title"] for t in data] == ["Saved One"]


def test_no_command_prints_help(monkeypatch, capsys):
    _run(monkeypatch)
    assert "usage" in capsys.readouterr().out.lower()
