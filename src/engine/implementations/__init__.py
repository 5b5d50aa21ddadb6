from .anthropic_engine import AnthropicStreamSource
from .openai_engine import OpenAIStreamSource


__all__ = ["AnthropicStreamSource", "OpenAIStreamSource"]
