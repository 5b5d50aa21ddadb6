import asyncio
import logging
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Union

import logfire

from .cancellation import CancellationToken
from .errors import OperationCancelled, TurnValidationError
from .events import EventType, StreamEvent, iter_frame_events
from .models import ChatMessage, FileAttachment, MessageRole, StreamOptions, TurnRequest
from .session import SessionStore

if TYPE_CHECKING:
    from engine.base import AgentStreamSource

DEFAULT_PERMISSION_MODE = "acceptEdits"

_EXHAUSTED = object()


async def _next_item(upstream: AsyncIterator[Union[bytes, str]]):
    try:
        return await upstream.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class StreamRelay:
    """
    Server-side forwarder between a turn-start request and the agent.

    Opens the upstream agent stream, forwards every frame unchanged and taps
    the first ``status`` frame that carries the agent's session id so the
    conversation can be resumed on the next turn.
    """

    def __init__(
        self,
        source: "AgentStreamSource",
        session_store: SessionStore,
        permission_mode: str = DEFAULT_PERMISSION_MODE,
        default_model: Optional[str] = None,
        default_working_directory: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.source = source
        self.session_store = session_store
        self.permission_mode = permission_mode
        self.default_model = default_model
        self.default_working_directory = default_working_directory
        self.logger = logger or logging.getLogger("StreamRelay")

    async def handle(
        self, request: TurnRequest, cancellation_signal: CancellationToken
    ) -> AsyncIterator[bytes]:
        """
        Validate a turn-start request and return the outbound frame stream.

        Args:
            request: Turn-start request body
            cancellation_signal: Token fired when the caller goes away

        Returns:
            Async iterator of encoded frames

        Raises:
            TurnValidationError: session_id or content is missing. Nothing
                has been stored and no stream has been opened.
        """
        if not request.session_id or not request.content:
            raise TurnValidationError()

        session_id = request.session_id
        await self.session_store.append(session_id, MessageRole.USER, request.content)
        history = await self.session_store.history(session_id)
        session = await self.session_store.get_session(session_id)

        options = StreamOptions(
            model=request.model or self.default_model,
            system_prompt=request.system_context,
            working_directory=request.working_directory or self.default_working_directory,
            resume_session_id=session.sdk_session_id if session else None,
            extra=dict(request.model_extra or {}),
        )

        self.logger.info(
            f"Starting turn for session {session_id} (model={options.model}, "
            f"history={len(history)}, files={len(request.files)})"
        )
        return self._relay(
            session_id,
            request.content,
            history,
            request.files,
            options,
            cancellation_signal,
        )

    async def _relay(
        self,
        session_id: str,
        prompt: str,
        history: List[ChatMessage],
        attachments: List[FileAttachment],
        options: StreamOptions,
        cancellation_signal: CancellationToken,
    ) -> AsyncIterator[bytes]:
        with logfire.span(
            "chat_relay.turn", session_id=session_id, model=options.model
        ):
            upstream = self.source.open(
                prompt,
                history,
                attachments,
                self.permission_mode,
                cancellation_signal,
                options,
            )
            correlation_captured = False
            forwarded = 0

            try:
                while True:
                    item = await cancellation_signal.race(_next_item(upstream))
                    if item is _EXHAUSTED:
                        break

                    if isinstance(item, str):
                        item = item.encode("utf-8")

                    if not correlation_captured:
                        correlation_captured = await self._capture_correlation_id(
                            session_id, item
                        )

                    forwarded += 1
                    yield item

                self.logger.info(
                    f"Turn completed for session {session_id} ({forwarded} frames)"
                )
            except OperationCancelled:
                self.logger.info(f"Turn cancelled for session {session_id}")
            except (GeneratorExit, asyncio.CancelledError):
                # Client went away mid-stream
                self.logger.info(f"Client disconnected from session {session_id}")
                cancellation_signal.cancel()
                raise
            except Exception as e:
                self.logger.error(f"Upstream stream failed for session {session_id}: {e}")
                yield StreamEvent.error(str(e)).encode()
            finally:
                aclose = getattr(upstream, "aclose", None)
                if aclose is not None:
                    try:
                        await aclose()
                    except Exception as e:
                        self.logger.debug(
                            f"Discarding upstream error on close for session {session_id}: {e}"
                        )

    async def _capture_correlation_id(self, session_id: str, item: bytes) -> bool:
        """
        Persist the agent session id if ``item`` is a status frame carrying one.

        Returns:
            True once the id has been stored; False to keep looking
        """
        try:
            for event in iter_frame_events(item):
                if event.type != EventType.STATUS:
                    continue

                payload = event.json_payload()
                if isinstance(payload, dict) and payload.get("session_id"):
                    await self.session_store.set_correlation_id(
                        session_id, str(payload["session_id"])
                    )
                    return True
        except Exception as e:
            self.logger.debug(f"Could not read status frame for session {session_id}: {e}")

        return False
