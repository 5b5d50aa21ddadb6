#!/usr/bin/env python3
"""
Tests for agent tools, conversation memory, the engine factory and the
OpenAI stream source
"""

import base64
import sys
from types import SimpleNamespace

import pytest

from chat.cancellation import CancellationToken
from chat.events import EventType, iter_frame_events
from chat.models import ChatMessage, FileAttachment, StreamOptions
from engine import EngineFactory
from engine.base import ConversationMemory, describe_attachment
from engine.implementations import AnthropicStreamSource, OpenAIStreamSource
from engine.tools import BashTool, CurrentTimeTool, ToolRegistry, default_tools


def message(role, content):
    return ChatMessage(session_id="s1", role=role, content=content)


class TestTools:
    @pytest.mark.asyncio
    async def test_current_time_in_utc(self):
        result = await CurrentTimeTool().execute({})

        assert result.endswith("+00:00")

    @pytest.mark.asyncio
    async def test_current_time_unknown_timezone(self):
        result = await CurrentTimeTool().execute({"timezone": "Mars/Olympus"})

        assert result == "Unknown timezone: Mars/Olympus"

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")
    async def test_bash_runs_command(self, tmp_path):
        result = await BashTool().execute({"command": "echo hello"}, str(tmp_path))

        assert result == "hello"

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")
    async def test_bash_reports_exit_code(self):
        result = await BashTool().execute({"command": "exit 3"})

        assert "[exit code 3]" in result

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")
    async def test_bash_times_out(self):
        result = await BashTool(timeout_seconds=0.1).execute({"command": "sleep 5"})

        assert result.startswith("[timed out")

    @pytest.mark.asyncio
    async def test_bash_requires_command(self):
        assert await BashTool().execute({}) == "Error: missing command"

    def test_registry_approval_rules(self):
        registry = default_tools()

        assert len(registry) == 2
        assert registry.needs_approval("bash", "acceptEdits") is True
        assert registry.needs_approval("bash", "bypassPermissions") is False
        assert registry.needs_approval("get_current_time", "acceptEdits") is False
        assert registry.needs_approval("teleport", "acceptEdits") is False

    def test_registry_definitions(self):
        registry = ToolRegistry([CurrentTimeTool()])

        assert registry.definitions() == [
            {
                "name": "get_current_time",
                "description": CurrentTimeTool.description,
                "input_schema": CurrentTimeTool.input_schema,
            }
        ]


class TestConversationMemory:
    def test_new_conversation_seeds_from_history(self):
        memory = ConversationMemory()
        history = [
            message("user", "a"),
            message("user", "b"),
            message("assistant", "c"),
            message("user", "now"),
        ]

        session_id, messages = memory.resume(None, history, "now")

        assert session_id
        assert messages == [
            {"role": "user", "content": "a\n\nb"},
            {"role": "assistant", "content": "c"},
        ]

    def test_resume_returns_stored_copy(self):
        memory = ConversationMemory()
        memory.remember("agent-1", [{"role": "user", "content": "hi"}])

        session_id, messages = memory.resume("agent-1", [], "next")
        messages.append({"role": "user", "content": "next"})

        assert session_id == "agent-1"
        assert memory.resume("agent-1", [], "x")[1] == [{"role": "user", "content": "hi"}]

    def test_unknown_resume_id_starts_fresh(self):
        memory = ConversationMemory()

        session_id, messages = memory.resume("gone", [], "hi")

        assert session_id != "gone"
        assert messages == []

    def test_oldest_conversation_evicted(self):
        memory = ConversationMemory(max_conversations=2)
        memory.remember("a", [])
        memory.remember("b", [])
        memory.remember("c", [])

        assert "a" not in memory
        assert "b" in memory and "c" in memory


def test_describe_text_attachment():
    attachment = FileAttachment(
        name="notes.txt",
        type="text/plain",
        data=base64.b64encode(b"hello").decode(),
        file_path="/tmp/notes.txt",
    )

    assert describe_attachment(attachment) == "[Attached file: notes.txt at /tmp/notes.txt]\nhello"


def test_describe_binary_attachment():
    attachment = FileAttachment(
        name="blob.bin", type="application/octet-stream", size=3,
        data=base64.b64encode(b"\xff\xfe\xfd").decode(),
    )

    assert describe_attachment(attachment) == "[Attached file: blob.bin (application/octet-stream, 3 bytes)]"


def test_factory_builds_sources(coordinator):
    anthropic = EngineFactory.create_source("anthropic", {"api_key": "k"}, coordinator)
    openai = EngineFactory.create_source("OpenAI", {"api_key": "k"}, coordinator)

    assert isinstance(anthropic, AnthropicStreamSource)
    assert isinstance(openai, OpenAIStreamSource)


def test_factory_rejects_unknown_engine(coordinator):
    with pytest.raises(ValueError, match="Unknown Engine type"):
        EngineFactory.create_source("llama", {}, coordinator)


class FakeCompletions:
    def __init__(self, chunks):
        self.chunks = chunks
        self.requests = []

    async def create(self, **request):
        self.requests.append(request)
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk


def completion_chunk(content=None, usage=None):
    choices = [SimpleNamespace(delta=SimpleNamespace(content=content))] if content else []
    return SimpleNamespace(choices=choices, usage=usage)


@pytest.mark.asyncio
async def test_openai_source_streams_text_and_usage():
    completions = FakeCompletions(
        [
            completion_chunk("Hel"),
            completion_chunk("lo"),
            completion_chunk(usage=SimpleNamespace(prompt_tokens=4, completion_tokens=2)),
        ]
    )
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    source = OpenAIStreamSource({"api_key": "k", "llm_model": "gpt-test"}, client=client)

    stream = source.open(
        "Hi", [], [], "acceptEdits", CancellationToken(),
        StreamOptions(system_prompt="be brief"),
    )
    events = []
    async for item in stream:
        events.extend(iter_frame_events(item))

    assert [e.type for e in events] == [
        EventType.STATUS,
        EventType.TEXT,
        EventType.TEXT,
        EventType.RESULT,
        EventType.DONE,
    ]
    assert events[0].json_payload()["model"] == "gpt-test"
    assert events[3].json_payload()["usage"]["output_tokens"] == 2
    request = completions.requests[0]
    assert request["messages"][0] == {"role": "system", "content": "be brief"}
    assert request["messages"][-1] == {"role": "user", "content": "Hi"}
    assert request["stream"] is True
