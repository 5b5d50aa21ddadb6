from typing import Any, Dict, Optional

from chat.permissions import PermissionCoordinator
from engine.base import AgentStreamSource
from engine.tools import ToolRegistry


class EngineFactory:
    @staticmethod
    def create_source(
        engine_type: str,
        config: Dict[str, Any],
        permissions: PermissionCoordinator,
        tools: Optional[ToolRegistry] = None,
    ) -> AgentStreamSource:
        if engine_type.lower() == "anthropic":
            from engine.implementations import AnthropicStreamSource
            return AnthropicStreamSource(config, permissions, tools=tools)
        elif engine_type.lower() == "openai":
            from engine.implementations import OpenAIStreamSource
            return OpenAIStreamSource(config)
        else:
            raise ValueError(f"Unknown Engine type: {engine_type}")
