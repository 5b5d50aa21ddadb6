from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from chat.models import PermissionDecision
from chat.permissions import DENIED_MESSAGE
from chat.session import Session


class DecisionBody(BaseModel):
    behavior: Literal["allow", "deny"]
    message: Optional[str] = None
    updated_input: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("updated_input", "updatedInput"),
    )


class DecisionRequest(BaseModel):
    """Body of a decision submission: a plain string or a full decision."""

    model_config = ConfigDict(populate_by_name=True)

    permission_request_id: str = Field(alias="permissionRequestId", min_length=1)
    decision: Union[Literal["allow", "allow_session", "deny"], DecisionBody]

    def to_decision(self) -> PermissionDecision:
        """``allow`` and ``allow_session`` both allow the call with its original input."""
        if isinstance(self.decision, str):
            if self.decision == "deny":
                return PermissionDecision.deny(DENIED_MESSAGE)
            return PermissionDecision.allow()

        return PermissionDecision(
            behavior=self.decision.behavior,
            message=self.decision.message,
            updated_input=self.decision.updated_input,
        )


class DecisionResponse(BaseModel):
    success: bool
    resolved: bool


class PendingPermissionsResponse(BaseModel):
    pending: List[str]


class SessionSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        return cls(
            id=session.id,
            title=session.display_title(),
            created_at=session.created_at,
            updated_at=session.updated_at,
            message_count=len(session.messages),
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionSummary]


class SessionCreateRequest(BaseModel):
    session_id: Optional[str] = None
    title: Optional[str] = None


class SessionResponse(BaseModel):
    session: SessionSummary
