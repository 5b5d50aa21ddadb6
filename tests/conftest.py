#!/usr/bin/env python3
"""
Pytest configuration and fixtures for chat relay testing
"""

import sys
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import pytest

# Add the src directory to the path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from chat.cancellation import CancellationToken
from chat.events import EventType, StreamEvent
from chat.models import ChatMessage, FileAttachment, StreamOptions
from chat.permissions import PermissionCoordinator
from chat.session import SessionStore
from engine.base import AgentStreamSource


class ScriptedSource(AgentStreamSource):
    """
    Agent stream source that replays a fixed list of frames.

    Items may be bytes or str frames. An Exception instance in the script is
    raised at that point instead of being yielded.
    """

    def __init__(self, script: Optional[List[Any]] = None):
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def open(
        self,
        prompt: str,
        history: List[ChatMessage],
        attachments: List[FileAttachment],
        permission_mode: str,
        cancellation_signal: CancellationToken,
        options: StreamOptions,
    ) -> AsyncIterator[Union[bytes, str]]:
        self.calls.append(
            {
                "prompt": prompt,
                "history": list(history),
                "attachments": list(attachments),
                "permission_mode": permission_mode,
                "cancellation_signal": cancellation_signal,
                "options": options,
            }
        )
        return self._replay()

    async def _replay(self):
        try:
            for item in self.script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def frame(event_type: EventType, payload: Any) -> bytes:
    """Encode a structured frame."""
    return StreamEvent.structured(event_type, payload).encode()


@pytest.fixture
def session_store():
    return SessionStore()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def coordinator(fake_clock):
    return PermissionCoordinator(timeout_seconds=300, clock=fake_clock)


@pytest.fixture
def hello_script():
    """A short successful turn: status, two text deltas, usage, done."""
    return [
        frame(EventType.STATUS, {"session_id": "agent-1", "model": "claude-test"}),
        StreamEvent.text("Hel").encode(),
        StreamEvent.text("lo").encode(),
        frame(EventType.RESULT, {"usage": {"input_tokens": 5, "output_tokens": 2}}),
        StreamEvent.done().encode(),
    ]


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps a process-wide exit event bound to the first loop."""
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
