import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from chat.cancellation import CancellationToken
from chat.events import EventType, StreamEvent
from chat.models import ChatMessage, FileAttachment, StreamOptions, TokenUsage
from engine import AgentStreamSource
from engine.base import ConversationMemory, describe_attachment

# USD per token
INPUT_TOKEN_COST = 0.0000025
OUTPUT_TOKEN_COST = 0.00001


class OpenAIStreamSource(AgentStreamSource):
    """Text-only agent on the OpenAI chat completions API. Runs no tools."""

    def __init__(
        self,
        config: Dict[str, Any],
        client: Optional[AsyncOpenAI] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_key = config.get("api_key")
        self.llm_model = config.get("llm_model", "gpt-4o")
        self.max_tokens = config.get("max_tokens", 4000)

        self.client = client or AsyncOpenAI(api_key=self.api_key)
        self.memory = ConversationMemory()
        self.logger = logger or logging.getLogger("OpenAIStreamSource")

    def open(
        self,
        prompt: str,
        history: List[ChatMessage],
        attachments: List[FileAttachment],
        permission_mode: str,
        cancellation_signal: CancellationToken,
        options: StreamOptions,
    ) -> AsyncIterator[bytes]:
        return self._stream(prompt, history, attachments, options)

    async def _stream(
        self,
        prompt: str,
        history: List[ChatMessage],
        attachments: List[FileAttachment],
        options: StreamOptions,
    ) -> AsyncIterator[bytes]:
        model = options.model or self.llm_model
        agent_session_id, messages = self.memory.resume(
            options.resume_session_id, history, prompt
        )

        content = prompt
        if attachments:
            content = "\n\n".join([describe_attachment(f) for f in attachments] + [prompt])
        messages.append({"role": "user", "content": content})

        request_messages = list(messages)
        if options.system_prompt:
            request_messages.insert(0, {"role": "system", "content": options.system_prompt})

        yield StreamEvent.structured(
            EventType.STATUS, {"session_id": agent_session_id, "model": model}
        ).encode()

        self.logger.debug(f"API request: model={model}, messages={len(request_messages)}")
        response = await self.client.chat.completions.create(
            model=model,
            messages=request_messages,
            max_tokens=self.max_tokens,
            stream=True,
            stream_options={"include_usage": True},
        )

        reply = ""
        usage: Optional[TokenUsage] = None
        async for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                delta = chunk.choices[0].delta.content
                reply += delta
                yield StreamEvent.text(delta).encode()

            if chunk.usage:
                usage = TokenUsage(
                    input_tokens=chunk.usage.prompt_tokens,
                    output_tokens=chunk.usage.completion_tokens,
                )
                usage.cost_usd = (
                    usage.input_tokens * INPUT_TOKEN_COST
                    + usage.output_tokens * OUTPUT_TOKEN_COST
                )

        messages.append({"role": "assistant", "content": reply})
        self.memory.remember(agent_session_id, messages)

        if usage is not None:
            yield StreamEvent.structured(
                EventType.RESULT, {"usage": usage.model_dump(exclude_none=True)}
            ).encode()
        yield StreamEvent.done().encode()
