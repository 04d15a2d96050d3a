"""
Recording — tap the stream, replay it later.

Two parts:
  1. RecordingSession: writes one JSONL file per turn with the request and
     every raw event that came over the wire
  2. load_recording() / replay_recording() / mock_stream(): read a file back
     and push it through the accumulator, for offline tests and debugging

File format:
    {"type": "request", "timestamp": 0, "data": {...request body...}}
    {"type": "response.output_text.delta", "timestamp": 12, "data": {...event...}}
    ...

Timestamps are milliseconds since the session started.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator
from uuid import uuid4

from threadline.accumulator import StreamState, replay

logger = logging.getLogger(__name__)


@dataclass
class RecordedEvent:
    type: str
    timestamp: int
    data: dict


@dataclass
class Recording:
    request: dict
    events: list[RecordedEvent] = field(default_factory=list)


class RecordingSession:
    """Captures the request and every event for a single turn."""

    def __init__(self, directory: str):
        self.id = uuid4().hex
        self.directory = Path(directory)
        self.path = self.directory / f"recording-{self.id}.jsonl"
        self._start = time.monotonic()
        self._request: dict | None = None
        self._events: list[RecordedEvent] = []
        self._finalized = False

    def record_request(self, body: dict):
        self._request = body

    def record_event(self, event):
        if self._finalized:
            return
        elapsed = int((time.monotonic() - self._start) * 1000)
        event_type = event.get("type", "") if isinstance(event, dict) else ""
        self._events.append(RecordedEvent(type=event_type, timestamp=elapsed, data=event))

    def finalize(self) -> Path | None:
        """Write the recording to disk. Only the first call writes."""
        if self._finalized:
            return None
        self._finalized = True
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            if self._request is not None:
                f.write(json.dumps({"type": "request", "timestamp": 0, "data": self._request}) + "\n")
            for ev in self._events:
                f.write(json.dumps({"type": ev.type, "timestamp": ev.timestamp, "data": ev.data},
                                   ensure_ascii=False) + "\n")
        logger.info("Saved recording %s (%d events)", self.path.name, len(self._events))
        return self.path


def create_recording_session(cfg: dict) -> RecordingSession | None:
    """Start a recording session if recording is enabled in config."""
    rec_cfg = cfg.get("recording", {}) or {}
    if not rec_cfg.get("enabled", False):
        return None
    return RecordingSession(rec_cfg.get("path", "./data/recordings"))


def load_recording(content: str) -> Recording:
    """
    Parse JSONL recording text.

    Raises:
        ValueError: empty content, or the first line is not a request line.
    """
    lines = [line for line in content.strip().split("\n") if line.strip()]
    if not lines:
        raise ValueError("Recording file is empty")

    first = json.loads(lines[0])
    if first.get("type") != "request":
        raise ValueError("Recording file must start with a request line")

    events = []
    for line in lines[1:]:
        parsed = json.loads(line)
        events.append(RecordedEvent(
            type=parsed.get("type", ""),
            timestamp=parsed.get("timestamp", 0),
            data=parsed.get("data"),
        ))
    return Recording(request=first.get("data") or {}, events=events)


def load_recording_file(path: str) -> Recording:
    with open(path) as f:
        return load_recording(f.read())


def replay_recording(recording: Recording, state: StreamState | None = None) -> StreamState:
    """Push every recorded event through the accumulator."""
    return replay((ev.data for ev in recording.events), state)


async def mock_stream(recording: Recording, realtime: bool = False) -> AsyncIterator[dict]:
    """Yield recorded events as a transport would, optionally with original pacing."""
    previous = 0
    for ev in recording.events:
        if realtime and ev.timestamp > previous:
            await asyncio.sleep((ev.timestamp - previous) / 1000)
        previous = ev.timestamp
        yield ev.data


def recording_stats(recording: Recording) -> dict:
    """Summary statistics: event counts by type, duration, requested model."""
    by_type: dict[str, int] = {}
    duration = 0
    for ev in recording.events:
        by_type[ev.type] = by_type.get(ev.type, 0) + 1
        duration = max(duration, ev.timestamp)
    return {
        "total_events": len(recording.events),
        "event_types": by_type,
        "duration_ms": duration,
        "request_model": recording.request.get("model"),
    }
