import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .models import ChatMessage, MessageRole, TokenUsage

DEFAULT_TITLE = "New chat"
TITLE_LENGTH = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """A conversation and the agent's own session id used to resume it."""

    id: str
    title: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    sdk_session_id: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)

    def display_title(self) -> str:
        """Explicit title, else the start of the first user message."""
        if self.title:
            return self.title

        for message in self.messages:
            if message.role == MessageRole.USER:
                title = message.content[:TITLE_LENGTH]
                if len(message.content) > TITLE_LENGTH:
                    title += "..."
                return title

        return DEFAULT_TITLE


class SessionStore:
    """
    In-memory store for chat sessions, their messages and correlation ids.

    Sessions are created on first use, so a turn can name any session id.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("SessionStore")
        self._sessions: Dict[str, Session] = {}

    async def create_session(self, session_id: Optional[str] = None) -> Session:
        session = Session(id=session_id or str(uuid.uuid4()))
        self._sessions[session.id] = session

        self.logger.info(f"Created new session: {session.id}")
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def get_or_create_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = await self.create_session(session_id)
        return session

    async def append(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        token_usage: Optional[TokenUsage] = None,
    ) -> ChatMessage:
        """
        Append a message to a session, creating the session if needed.

        Returns:
            The stored message
        """
        session = await self.get_or_create_session(session_id)
        message = ChatMessage(
            session_id=session_id,
            role=role,
            content=content,
            token_usage=token_usage,
        )
        session.messages.append(message)
        session.updated_at = _utcnow()

        self.logger.debug(f"Appended {message.role} message to session {session_id}")
        return message

    async def history(self, session_id: str) -> List[ChatMessage]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return list(session.messages)

    async def set_correlation_id(self, session_id: str, correlation_id: str) -> bool:
        """
        Remember the agent's session id for later resumption.

        Returns:
            True if the session exists and was updated
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False

        session.sdk_session_id = correlation_id
        session.updated_at = _utcnow()
        self.logger.info(f"Session {session_id} linked to agent session {correlation_id}")
        return True

    async def set_title(self, session_id: str, title: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False

        session.title = title
        session.updated_at = _utcnow()
        return True

    async def list_sessions(self) -> List[Session]:
        """All sessions, most recently updated first."""
        return sorted(
            self._sessions.values(), key=lambda s: s.updated_at, reverse=True
        )

    async def delete_session(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False

        self.logger.info(f"Deleted session {session_id}")
        return True

    async def cleanup(self, max_age_hours: int = 24) -> int:
        """
        Drop sessions not updated within ``max_age_hours``.

        Returns:
            Number of sessions removed
        """
        cutoff = _utcnow() - timedelta(hours=max_age_hours)
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.updated_at < cutoff
        ]
        for session_id in expired:
            del self._sessions[session_id]

        if expired:
            self.logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)
