"""
Exception types shared by the relay, consumer and permission layers.
"""


class ChatRelayError(Exception):
    """Base class for chat relay errors."""


class TurnValidationError(ChatRelayError):
    """A turn-start request is missing a required field."""

    def __init__(self, message: str = "Missing session_id or content"):
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {"error": self.message}


class OperationCancelled(ChatRelayError):
    """Raised when a CancellationToken fires while an operation is awaited."""


class ChatRequestError(ChatRelayError):
    """The relay rejected a turn-start request before opening a stream."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
