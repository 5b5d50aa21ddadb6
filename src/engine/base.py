import base64
import binascii
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from chat.cancellation import CancellationToken
from chat.models import ChatMessage, FileAttachment, StreamOptions


class AgentStreamSource(ABC):
    """
    Upstream agent that turns one prompt into a stream of encoded frames.

    Every yielded item is one complete frame (see ``chat.events``). Sources
    should watch ``cancellation_signal`` and stop at their next await when it
    fires.
    """

    @abstractmethod
    def open(
        self,
        prompt: str,
        history: List[ChatMessage],
        attachments: List[FileAttachment],
        permission_mode: str,
        cancellation_signal: CancellationToken,
        options: StreamOptions,
    ) -> AsyncIterator[bytes]:
        pass


def describe_attachment(attachment: FileAttachment) -> str:
    """Render a non-image attachment as text for the model."""
    header = f"[Attached file: {attachment.name}"
    if attachment.file_path:
        header += f" at {attachment.file_path}"

    try:
        text = base64.b64decode(attachment.data, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return f"{header} ({attachment.type}, {attachment.size} bytes)]"

    return f"{header}]\n{text}"


class ConversationMemory:
    """
    Provider-format transcripts keyed by the agent's own session id.

    The agent session id is announced in the first ``status`` frame of each
    turn; the relay stores it and hands it back as ``resume_session_id``.
    """

    def __init__(self, max_conversations: int = 100):
        self.max_conversations = max_conversations
        self._conversations: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()

    def resume(
        self, resume_session_id: Optional[str], history: List[ChatMessage], prompt: str
    ) -> Tuple[str, List[Dict[str, Any]]]:
        """
        Pick up a stored conversation, or seed a new one from the store's history.

        Returns:
            (agent session id, messages so far, not including ``prompt``)
        """
        if resume_session_id and resume_session_id in self._conversations:
            self._conversations.move_to_end(resume_session_id)
            return resume_session_id, list(self._conversations[resume_session_id])

        prior = history
        if history and history[-1].role == "user" and history[-1].content == prompt:
            prior = history[:-1]
        return str(uuid.uuid4()), _merge_roles(prior)

    def remember(self, agent_session_id: str, messages: List[Dict[str, Any]]) -> None:
        self._conversations[agent_session_id] = list(messages)
        self._conversations.move_to_end(agent_session_id)
        while len(self._conversations) > self.max_conversations:
            self._conversations.popitem(last=False)

    def __contains__(self, agent_session_id: str) -> bool:
        return agent_session_id in self._conversations


def _merge_roles(history: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Collapse consecutive messages from the same role into one."""
    messages: List[Dict[str, Any]] = []
    for message in history:
        if messages and messages[-1]["role"] == message.role:
            messages[-1]["content"] += "\n\n" + message.content
        else:
            messages.append({"role": message.role, "content": message.content})
    return messages
