"""
Client-side consumer for the chat event stream.

Sends one turn at a time to the relay, decodes the frames as they arrive
into observable per-turn state (streaming text, tool activity, status text,
pending permission) and finalizes a transcript entry when the stream ends,
whether it completed, was cancelled or failed.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx

from .cancellation import CancellationToken
from .errors import ChatRequestError, OperationCancelled
from .events import EventType, FrameDecoder, StreamEvent
from .models import (
    ChatMessage,
    FileAttachment,
    MessageRole,
    PermissionRequest,
    TokenUsage,
    ToolProgress,
    ToolResultRecord,
    ToolUseRecord,
)

FILES_SENTINEL_PREFIX = "<!--files:"
FILES_SENTINEL_SUFFIX = "-->"
GENERATION_STOPPED_MARKER = "\n\n*(generation stopped)*"
ERROR_PREFIX = "**Error:** "

CONNECTED_STATUS_TTL_SECONDS = 2.0
TOOL_OUTPUT_LIMIT = 5000

Listener = Callable[[str, Any], None]


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnSnapshot:
    """What a finished turn looked like just before its state was cleared."""

    outcome: TurnState
    content: str
    tool_uses: List[ToolUseRecord] = field(default_factory=list)
    tool_results: List[ToolResultRecord] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None
    message: Optional[ChatMessage] = None


def embed_attachments(content: str, attachments: Optional[List[FileAttachment]]) -> str:
    """Prefix attachment metadata so a replayed transcript can rebuild it."""
    if not attachments:
        return content

    meta = [
        {"id": f.id, "name": f.name, "type": f.type, "size": f.size, "data": f.data}
        for f in attachments
    ]
    return f"{FILES_SENTINEL_PREFIX}{json.dumps(meta)}{FILES_SENTINEL_SUFFIX}{content}"


def extract_attachments(content: str) -> Tuple[str, List[FileAttachment]]:
    """Inverse of ``embed_attachments``. Malformed sentinels are left in place."""
    if not content.startswith(FILES_SENTINEL_PREFIX):
        return content, []

    end = content.find(FILES_SENTINEL_SUFFIX, len(FILES_SENTINEL_PREFIX))
    if end == -1:
        return content, []

    try:
        meta = json.loads(content[len(FILES_SENTINEL_PREFIX):end])
        files = [FileAttachment.model_validate(item) for item in meta]
    except ValueError:
        return content, []

    return content[end + len(FILES_SENTINEL_SUFFIX):], files


def _error_text(error: BaseException) -> str:
    if isinstance(error, ChatRequestError):
        return error.message
    return str(error) or type(error).__name__


class StreamConsumer:
    """
    Drives turns against the relay for one chat session.

    At most one turn is in flight per instance. Observers registered with
    ``subscribe`` are called with ``(field, value)`` on every state change.
    """

    def __init__(
        self,
        session_id: str,
        client: httpx.AsyncClient,
        api_endpoint: str = "/api/chat",
        permission_endpoint: str = "/api/chat/permission",
        model: Optional[str] = None,
        working_directory: Optional[str] = None,
        extra_payload: Optional[Dict[str, Any]] = None,
        connected_status_ttl: float = CONNECTED_STATUS_TTL_SECONDS,
        tool_output_limit: int = TOOL_OUTPUT_LIMIT,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_id = session_id
        self.client = client
        self.api_endpoint = api_endpoint
        self.permission_endpoint = permission_endpoint
        self.model = model
        self.working_directory = working_directory
        self.extra_payload = extra_payload or {}
        self.connected_status_ttl = connected_status_ttl
        self.tool_output_limit = tool_output_limit
        self.logger = logger or logging.getLogger("StreamConsumer")

        self.messages: List[ChatMessage] = []
        self.state = TurnState.IDLE
        self.last_turn: Optional[TurnSnapshot] = None

        self._listeners: List[Listener] = []
        self._token: Optional[CancellationToken] = None
        self._status_clear_handle: Optional[asyncio.TimerHandle] = None
        self._submissions: Set[asyncio.Task] = set()

        self.streaming_content = ""
        self.tool_uses: List[ToolUseRecord] = []
        self.tool_results: List[ToolResultRecord] = []
        self.streaming_tool_output = ""
        self.status_text: Optional[str] = None
        self.pending_permission: Optional[PermissionRequest] = None
        self.permission_resolved: Optional[str] = None
        self._token_usage: Optional[TokenUsage] = None

        self._handlers: Dict[EventType, Callable[[StreamEvent], None]] = {
            EventType.TEXT: self._on_text,
            EventType.TOOL_USE: self._on_tool_use,
            EventType.TOOL_RESULT: self._on_tool_result,
            EventType.TOOL_OUTPUT: self._on_tool_output,
            EventType.STATUS: self._on_status,
            EventType.RESULT: self._on_result,
            EventType.PERMISSION_REQUEST: self._on_permission_request,
            EventType.ERROR: self._on_error,
            EventType.DONE: lambda event: None,
        }

    @property
    def is_streaming(self) -> bool:
        return self.state != TurnState.IDLE

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def tool_result_for(self, tool_use_id: str) -> Optional[ToolResultRecord]:
        """First result reported for a tool use, if any."""
        for result in self.tool_results:
            if result.tool_use_id == tool_use_id:
                return result
        return None

    async def send(
        self, content: str, attachments: Optional[List[FileAttachment]] = None
    ) -> Optional[ChatMessage]:
        """
        Run one turn to completion, cancellation or failure.

        Args:
            content: User prompt
            attachments: Optional files sent with the prompt

        Returns:
            The finalized assistant message, or None if nothing was
            finalized or the call was rejected because a turn is in flight.
        """
        if self.is_streaming:
            self.logger.warning(
                f"Ignoring send for session {self.session_id}: turn already in flight"
            )
            return None

        self._set("state", TurnState.SENDING)
        self._add_message(
            ChatMessage(
                id=f"temp-{uuid.uuid4().hex}",
                session_id=self.session_id,
                role=MessageRole.USER,
                content=embed_attachments(content, attachments),
            )
        )
        self._reset_turn_state()

        token = CancellationToken()
        self._token = token

        payload: Dict[str, Any] = {
            "session_id": self.session_id,
            "content": content,
            "model": self.model,
            "working_directory": self.working_directory,
        }
        if attachments:
            payload["files"] = [f.model_dump(by_alias=True) for f in attachments]
        payload.update(self.extra_payload)

        outcome = TurnState.FAILED
        error: Optional[BaseException] = None
        message: Optional[ChatMessage] = None
        try:
            await token.race(self._stream_turn(payload))
            outcome = TurnState.COMPLETED
        except OperationCancelled:
            outcome = TurnState.CANCELLED
        except asyncio.CancelledError:
            outcome = TurnState.CANCELLED
            raise
        except Exception as e:
            error = e
            self.logger.error(f"Turn failed for session {self.session_id}: {e}")
        finally:
            message = self._finalize(outcome, error)

        return message

    def cancel(self) -> bool:
        """Stop the in-flight turn. Safe to call repeatedly or when idle."""
        if self._token is None:
            return False
        return self._token.cancel()

    def respond_to_permission(self, decision: str) -> bool:
        """
        Answer the surfaced permission request.

        ``decision`` is ``allow``, ``allow_session`` or ``deny``. Local state
        is updated immediately; the decision is posted in the background and
        never awaited or retried. Must be called from the running event loop.

        Returns:
            False if there is no pending permission to answer
        """
        pending = self.pending_permission
        if pending is None:
            return False

        resolved = "deny" if decision == "deny" else "allow"
        self._set("permission_resolved", resolved)

        body = {
            "permissionRequestId": pending.permission_request_id,
            "decision": resolved,
        }
        task = asyncio.get_running_loop().create_task(self._submit_decision(body))
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)
        return True

    async def drain(self) -> None:
        """Wait for background decision submissions to finish."""
        if self._submissions:
            await asyncio.gather(*list(self._submissions), return_exceptions=True)

    async def _submit_decision(self, body: Dict[str, Any]) -> None:
        try:
            response = await self.client.post(self.permission_endpoint, json=body)
            if not response.is_success:
                self.logger.warning(
                    f"Decision for {body['permissionRequestId']} rejected: "
                    f"{response.status_code}"
                )
        except Exception as e:
            self.logger.warning(
                f"Failed to submit decision for {body['permissionRequestId']}: {e}"
            )

    async def _stream_turn(self, payload: Dict[str, Any]) -> None:
        async with self.client.stream("POST", self.api_endpoint, json=payload) as response:
            if not response.is_success:
                body = await response.aread()
                raise ChatRequestError(self._read_error(body), response.status_code)

            self._set("state", TurnState.STREAMING)
            decoder = FrameDecoder()
            async for chunk in response.aiter_text():
                for event in decoder.feed(chunk):
                    self._dispatch(event)

    @staticmethod
    def _read_error(body: bytes) -> str:
        try:
            data = json.loads(body)
        except ValueError:
            return "Failed to send message"
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return "Failed to send message"

    def _dispatch(self, event: StreamEvent) -> None:
        # A bad frame is skipped; it never ends the turn
        try:
            self._handlers[event.type](event)
        except Exception as e:
            self.logger.debug(f"Skipping undecodable {event.type.value} frame: {e}")

    def _on_text(self, event: StreamEvent) -> None:
        if isinstance(event.data, str):
            self._set("streaming_content", self.streaming_content + event.data)

    def _on_tool_use(self, event: StreamEvent) -> None:
        record = event.payload(ToolUseRecord)
        if any(t.id == record.id for t in self.tool_uses):
            return
        self._set("streaming_tool_output", "")
        self._set("tool_uses", [*self.tool_uses, record])

    def _on_tool_result(self, event: StreamEvent) -> None:
        record = event.payload(ToolResultRecord)
        self._set("streaming_tool_output", "")
        self._set("tool_results", [*self.tool_results, record])

    def _on_tool_output(self, event: StreamEvent) -> None:
        text = event.data if isinstance(event.data, str) else json.dumps(event.data)

        try:
            parsed = json.loads(text)
        except (ValueError, RecursionError):
            parsed = None
        if isinstance(parsed, dict) and parsed.get("_progress"):
            progress = ToolProgress.model_validate(parsed)
            self._set_status(
                f"Running {progress.tool_name}... "
                f"({round(progress.elapsed_time_seconds)}s)"
            )
            return

        previous = self.streaming_tool_output
        combined = previous + ("\n" if previous else "") + text
        self._set("streaming_tool_output", combined[-self.tool_output_limit:])

    def _on_status(self, event: StreamEvent) -> None:
        try:
            payload = event.json_payload()
        except (ValueError, RecursionError):
            self._set_status(event.data or None)
            return

        if isinstance(payload, dict) and payload.get("session_id"):
            text = f"Connected ({payload.get('model') or 'ai'})"
            self._set_status(text)
            self._schedule_status_clear(text)
        elif isinstance(payload, dict) and payload.get("notification"):
            self._set_status(payload.get("message") or payload.get("title") or None)
        else:
            self._set_status(event.data if isinstance(event.data, str) else None)

    def _on_result(self, event: StreamEvent) -> None:
        try:
            payload = event.json_payload()
            if isinstance(payload, dict) and payload.get("usage"):
                self._token_usage = TokenUsage.model_validate(payload["usage"])
        except ValueError as e:
            self.logger.debug(f"Ignoring unreadable usage summary: {e}")
        self._set_status(None)

    def _on_permission_request(self, event: StreamEvent) -> None:
        request = event.payload(PermissionRequest)
        self._set("permission_resolved", None)
        self._set("pending_permission", request)

    def _on_error(self, event: StreamEvent) -> None:
        self._set(
            "streaming_content",
            self.streaming_content + "\n\n" + ERROR_PREFIX + str(event.data),
        )

    def _finalize(
        self, outcome: TurnState, error: Optional[BaseException]
    ) -> Optional[ChatMessage]:
        text = self.streaming_content.strip()
        message: Optional[ChatMessage] = None

        if outcome == TurnState.CANCELLED:
            if text:
                message = self._assistant_message(text + GENERATION_STOPPED_MARKER)
        elif outcome == TurnState.FAILED:
            message = self._assistant_message(
                ERROR_PREFIX + _error_text(error or Exception("Unknown error"))
            )
        elif text:
            message = self._assistant_message(text, self._token_usage)

        self.last_turn = TurnSnapshot(
            outcome=outcome,
            content=self.streaming_content,
            tool_uses=list(self.tool_uses),
            tool_results=list(self.tool_results),
            token_usage=self._token_usage,
            message=message,
        )
        self._set("state", outcome)
        if message is not None:
            self._add_message(message)

        self._reset_turn_state()
        self._token = None
        self._set("state", TurnState.IDLE)
        return message

    def _assistant_message(
        self, content: str, token_usage: Optional[TokenUsage] = None
    ) -> ChatMessage:
        return ChatMessage(
            id=f"temp-assistant-{uuid.uuid4().hex}",
            session_id=self.session_id,
            role=MessageRole.ASSISTANT,
            content=content,
            token_usage=token_usage,
        )

    def _add_message(self, message: ChatMessage) -> None:
        self.messages.append(message)
        self._notify("message", message)

    def _reset_turn_state(self) -> None:
        self._cancel_status_clear()
        self._set("streaming_content", "")
        self._set("tool_uses", [])
        self._set("tool_results", [])
        self._set("streaming_tool_output", "")
        self._set("status_text", None)
        self._set("pending_permission", None)
        self._set("permission_resolved", None)
        self._token_usage = None

    def _set_status(self, text: Optional[str]) -> None:
        self._cancel_status_clear()
        self._set("status_text", text)

    def _schedule_status_clear(self, text: str) -> None:
        def clear() -> None:
            self._status_clear_handle = None
            if self.status_text == text:
                self._set("status_text", None)

        self._status_clear_handle = asyncio.get_running_loop().call_later(
            self.connected_status_ttl, clear
        )

    def _cancel_status_clear(self) -> None:
        if self._status_clear_handle is not None:
            self._status_clear_handle.cancel()
            self._status_clear_handle = None

    def _set(self, name: str, value: Any) -> None:
        setattr(self, name, value)
        self._notify(name, value)

    def _notify(self, name: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(name, value)
            except Exception as e:
                self.logger.error(f"Listener failed on {name}: {e}")
