"""
Outbound event stream framing.

Each frame is one line ``data: {"type": ..., "data": ...}`` followed by a
blank line. ``data`` holds the raw delta for ``text`` and ``error`` frames and
a JSON-encoded string for the structured kinds, so every frame can be decoded
on its own.
"""

import json
import logging
from enum import Enum
from typing import Any, Iterator, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel

DATA_PREFIX = "data: "

M = TypeVar("M", bound=BaseModel)

logger = logging.getLogger("chat.events")


class EventType(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    TOOL_OUTPUT = "tool_output"
    STATUS = "status"
    RESULT = "result"
    PERMISSION_REQUEST = "permission_request"
    ERROR = "error"
    DONE = "done"


class StreamEvent(BaseModel):
    """One decoded frame of the outbound event stream."""

    type: EventType
    data: Any = None

    @classmethod
    def text(cls, delta: str) -> "StreamEvent":
        return cls(type=EventType.TEXT, data=delta)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(type=EventType.ERROR, data=message)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(type=EventType.DONE, data=None)

    @classmethod
    def structured(
        cls, event_type: EventType, payload: Union[BaseModel, dict]
    ) -> "StreamEvent":
        """Build a frame whose payload is carried as a JSON string."""
        if isinstance(payload, BaseModel):
            raw = payload.model_dump_json(by_alias=True, exclude_none=True)
        else:
            raw = json.dumps(payload, default=str)
        return cls(type=event_type, data=raw)

    def payload(self, model: Type[M]) -> M:
        """
        Decode the payload into ``model``.

        Raises:
            ValueError: the payload is not valid JSON for ``model``.
        """
        if isinstance(self.data, str):
            return model.model_validate_json(self.data)
        return model.model_validate(self.data)

    def json_payload(self) -> Any:
        """Decode a JSON-string payload into plain Python values."""
        if isinstance(self.data, str):
            return json.loads(self.data)
        return self.data

    def encode(self) -> bytes:
        return encode_frame(self)


def encode_frame(event: StreamEvent) -> bytes:
    body = json.dumps(
        {"type": event.type.value, "data": event.data}, ensure_ascii=False
    )
    return f"{DATA_PREFIX}{body}\n\n".encode("utf-8")


def decode_line(line: str) -> Optional[StreamEvent]:
    """
    Decode one complete line. Non-data lines (comments, keep-alive pings,
    blank separators) and malformed payloads return None.
    """
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return None

    try:
        return StreamEvent.model_validate_json(line[len(DATA_PREFIX):])
    except (ValueError, RecursionError) as e:
        logger.debug(f"Skipping malformed frame: {e}")
        return None


def iter_frame_events(chunk: Union[bytes, str]) -> Iterator[StreamEvent]:
    """Decode every complete frame inside one self-contained chunk."""
    if isinstance(chunk, bytes):
        chunk = chunk.decode("utf-8", errors="replace")

    for line in chunk.split("\n"):
        event = decode_line(line)
        if event is not None:
            yield event


class FrameDecoder:
    """
    Incremental decoder for a chunked event stream.

    Input is split only at complete line boundaries; a trailing partial line
    is held back and prefixed onto the next chunk.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> List[StreamEvent]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events = []
        for line in lines:
            event = decode_line(line)
            if event is not None:
                events.append(event)
        return events
