"""
Chat Streaming Package

Provides the protocol and coordination layer between a chat client and a
streaming agent:
- StreamRelay forwards agent frames onto the outbound event stream
- StreamConsumer decodes that stream into per-turn client state
- PermissionCoordinator pairs a paused turn with the later human decision
- SessionStore keeps session messages and the agent's correlation id
"""

from .cancellation import CancellationToken
from .errors import ChatRequestError, OperationCancelled, TurnValidationError
from .events import EventType, FrameDecoder, StreamEvent
from .models import ChatMessage, PermissionDecision, PermissionRequest, TurnRequest
from .permissions import PermissionCoordinator
from .session import Session, SessionStore
from .relay import StreamRelay
from .consumer import StreamConsumer, TurnState

__all__ = [
    "CancellationToken",
    "ChatMessage",
    "ChatRequestError",
    "EventType",
    "FrameDecoder",
    "OperationCancelled",
    "PermissionCoordinator",
    "PermissionDecision",
    "PermissionRequest",
    "Session",
    "SessionStore",
    "StreamConsumer",
    "StreamEvent",
    "StreamRelay",
    "TurnRequest",
    "TurnState",
    "TurnValidationError",
]
