#!/usr/bin/env python3
"""
Tests for the in-memory session store
"""

from datetime import timedelta

import pytest

from chat.models import MessageRole, TokenUsage
from chat.session import DEFAULT_TITLE


@pytest.mark.asyncio
async def test_append_creates_session_on_first_use(session_store):
    message = await session_store.append("s1", MessageRole.USER, "hello")

    session = await session_store.get_session("s1")
    assert session is not None
    assert message.role == "user"
    assert [m.content for m in session.messages] == ["hello"]


@pytest.mark.asyncio
async def test_history_preserves_order_and_usage(session_store):
    await session_store.append("s1", MessageRole.USER, "q")
    await session_store.append(
        "s1", MessageRole.ASSISTANT, "a", TokenUsage(input_tokens=3, output_tokens=1)
    )

    history = await session_store.history("s1")

    assert [(m.role, m.content) for m in history] == [("user", "q"), ("assistant", "a")]
    assert history[1].token_usage.output_tokens == 1


@pytest.mark.asyncio
async def test_history_of_unknown_session_is_empty(session_store):
    assert await session_store.history("nope") == []


@pytest.mark.asyncio
async def test_set_correlation_id(session_store):
    await session_store.create_session("s1")

    assert await session_store.set_correlation_id("s1", "agent-9") is True
    assert (await session_store.get_session("s1")).sdk_session_id == "agent-9"
    assert await session_store.set_correlation_id("missing", "agent-9") is False


@pytest.mark.asyncio
async def test_display_title_from_first_user_message(session_store):
    await session_store.append("short", MessageRole.USER, "What time is it?")
    await session_store.append("long", MessageRole.USER, "x" * 60)
    await session_store.create_session("empty")

    assert (await session_store.get_session("short")).display_title() == "What time is it?"
    assert (await session_store.get_session("long")).display_title() == "x" * 50 + "..."
    assert (await session_store.get_session("empty")).display_title() == DEFAULT_TITLE


@pytest.mark.asyncio
async def test_explicit_title_wins(session_store):
    await session_store.append("s1", MessageRole.USER, "hello")
    await session_store.set_title("s1", "Greetings")

    assert (await session_store.get_session("s1")).display_title() == "Greetings"


@pytest.mark.asyncio
async def test_list_sessions_newest_first(session_store):
    await session_store.create_session("a")
    await session_store.create_session("b")
    await session_store.append("a", MessageRole.USER, "bump")

    sessions = await session_store.list_sessions()

    assert [s.id for s in sessions] == ["a", "b"]


@pytest.mark.asyncio
async def test_delete_session(session_store):
    await session_store.create_session("s1")

    assert await session_store.delete_session("s1") is True
    assert await session_store.delete_session("s1") is False
    assert await session_store.get_session("s1") is None


@pytest.mark.asyncio
async def test_cleanup_drops_stale_sessions(session_store):
    old = await session_store.create_session("old")
    await session_store.create_session("new")
    old.updated_at = old.updated_at - timedelta(hours=48)

    removed = await session_store.cleanup(max_age_hours=24)

    assert removed == 1
    assert [s.id for s in await session_store.list_sessions()] == ["new"]
