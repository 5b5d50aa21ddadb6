"""
Chat data models shared by the relay, consumer and agent stream sources.

Defines transcript messages, tool records, permission requests and the
decision payload passed back into the Permission Coordinator.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TokenUsage(BaseModel):
    """Usage and cost summary reported at the end of a turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    cost_usd: Optional[float] = None


class ChatMessage(BaseModel):
    """A finalized transcript entry."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    token_usage: Optional[TokenUsage] = None


class FileAttachment(BaseModel):
    """A file sent along with a turn. ``data`` is base64 encoded."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str
    type: str = "application/octet-stream"
    size: int = 0
    data: str = ""
    file_path: Optional[str] = Field(default=None, alias="filePath")

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")


class ToolUseRecord(BaseModel):
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultRecord(BaseModel):
    tool_use_id: str
    content: Any = ""
    is_error: Optional[bool] = None


class ToolProgress(BaseModel):
    """Structured progress marker carried inside a ``tool_output`` frame."""

    model_config = ConfigDict(populate_by_name=True)

    progress: Literal[True] = Field(alias="_progress")
    tool_name: str
    elapsed_time_seconds: float = Field(default=0.0, allow_inf_nan=False)


class PermissionRequest(BaseModel):
    """An approval request surfaced to the human mid-stream."""

    model_config = ConfigDict(populate_by_name=True)

    permission_request_id: str = Field(alias="permissionRequestId")
    tool_name: str = Field(alias="toolName")
    tool_input: Dict[str, Any] = Field(default_factory=dict, alias="toolInput")
    decision_reason: Optional[str] = Field(default=None, alias="decisionReason")
    suggestions: Optional[List[Dict[str, Any]]] = None
    tool_use_id: Optional[str] = Field(default=None, alias="toolUseId")
    blocked_path: Optional[str] = Field(default=None, alias="blockedPath")
    description: Optional[str] = None


class PermissionDecision(BaseModel):
    """Outcome delivered to whoever awaits a pending permission."""

    behavior: Literal["allow", "deny"]
    message: Optional[str] = None
    updated_input: Optional[Dict[str, Any]] = None

    @classmethod
    def allow(cls, updated_input: Optional[Dict[str, Any]] = None) -> "PermissionDecision":
        return cls(behavior="allow", updated_input=updated_input)

    @classmethod
    def deny(cls, message: str) -> "PermissionDecision":
        return cls(behavior="deny", message=message)


class TurnRequest(BaseModel):
    """
    Turn-start request body. Unknown fields are kept so callers can pass
    extra context through to the agent.
    """

    model_config = ConfigDict(extra="allow")

    session_id: Optional[str] = None
    content: Optional[str] = None
    model: Optional[str] = None
    files: List[FileAttachment] = Field(default_factory=list)
    system_context: Optional[str] = None
    working_directory: Optional[str] = None


class StreamOptions(BaseModel):
    """Per-turn options handed to an agent stream source."""

    model: Optional[str] = None
    system_prompt: Optional[str] = None
    working_directory: Optional[str] = None
    resume_session_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)
