from .base import AgentStreamSource
from .factory import EngineFactory

__all__ = ["AgentStreamSource", "EngineFactory"]
