from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Load environment variables from .env and system environment
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server settings
    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=8000, validation_alias="PORT")

    # Debug mode
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # Agent settings
    engine_type: str = Field(default="anthropic", validation_alias="ENGINE_TYPE")
    max_tokens: int = Field(default=4000, validation_alias="MAX_TOKENS")
    max_turns: int = Field(default=10, validation_alias="MAX_TURNS")
    working_directory: Optional[str] = Field(
        default=None, validation_alias="WORKING_DIRECTORY"
    )

    # Anthropic settings
    anthropic_api_key: Optional[str] = Field(
        default=None, validation_alias="ANTHROPIC_API_KEY"
    )
    anthropic_llm_model: str = Field(
        default="claude-3-7-sonnet-20250219",
        validation_alias="ANTHROPIC_LLM_MODEL",
    )

    # OpenAI settings
    openai_api_key: Optional[str] = Field(
        default=None, validation_alias="OPENAI_API_KEY"
    )
    openai_llm_model: str = Field(
        default="gpt-4o",
        validation_alias="OPENAI_LLM_MODEL",
    )

    # Permission settings
    permission_mode: str = Field(default="acceptEdits", validation_alias="PERMISSION_MODE")
    permission_timeout_seconds: float = Field(
        default=300.0, validation_alias="PERMISSION_TIMEOUT_SECONDS"
    )
    permission_sweep_interval_seconds: float = Field(
        default=30.0, validation_alias="PERMISSION_SWEEP_INTERVAL_SECONDS"
    )

    # Client settings
    chat_api_url: str = Field(
        default="http://localhost:8000", validation_alias="CHAT_API_URL"
    )
    connected_status_ttl_seconds: float = Field(
        default=2.0, validation_alias="CONNECTED_STATUS_TTL_SECONDS"
    )
    tool_output_limit: int = Field(default=5000, validation_alias="TOOL_OUTPUT_LIMIT")

    # Logfire settings
    logfire_enabled: bool = Field(default=False, validation_alias="LOGFIRE_ENABLED")
    logfire_token: Optional[str] = Field(default=None, validation_alias="LOGFIRE_TOKEN")
    logfire_service_name: str = Field(
        default="chat-relay", validation_alias="LOGFIRE_SERVICE_NAME"
    )

    @property
    def default_model(self) -> str:
        if self.engine_type.lower() == "openai":
            return self.openai_llm_model
        return self.anthropic_llm_model

    def get_engine_config(self) -> Dict[str, Any]:
        """Return the engine-specific configuration dictionary."""
        engine = self.engine_type.lower()
        if engine == "anthropic":
            if not self.anthropic_api_key:
                raise ValueError(
                    "ANTHROPIC_API_KEY is required when ENGINE_TYPE is 'anthropic'"
                )
            return {
                "api_key": self.anthropic_api_key,
                "llm_model": self.anthropic_llm_model,
                "max_tokens": self.max_tokens,
                "max_turns": self.max_turns,
            }
        elif engine == "openai":
            if not self.openai_api_key:
                raise ValueError(
                    "OPENAI_API_KEY is required when ENGINE_TYPE is 'openai'"
                )
            return {
                "api_key": self.openai_api_key,
                "llm_model": self.openai_llm_model,
                "max_tokens": self.max_tokens,
            }
        else:
            raise ValueError(f"Unsupported ENGINE_TYPE: {self.engine_type}")


def get_settings() -> Settings:
    """Instantiate and return the Settings object."""
    return Settings()
