import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from anthropic import AsyncAnthropic

from chat.cancellation import CancellationToken
from chat.events import EventType, StreamEvent
from chat.models import (
    ChatMessage,
    FileAttachment,
    PermissionRequest,
    StreamOptions,
    TokenUsage,
    ToolProgress,
    ToolResultRecord,
    ToolUseRecord,
)
from chat.permissions import PermissionCoordinator
from engine import AgentStreamSource
from engine.base import ConversationMemory, describe_attachment
from engine.tools import ToolRegistry, default_tools

# USD per token
INPUT_TOKEN_COST = 0.000003
OUTPUT_TOKEN_COST = 0.000015
CACHE_READ_TOKEN_COST = 0.0000003


class AnthropicStreamSource(AgentStreamSource):
    """
    Agent loop on the Anthropic Messages API.

    Streams text deltas as they arrive, runs requested tools (asking the
    human first for tools that need approval) and feeds the results back
    until the model stops calling tools.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        permissions: PermissionCoordinator,
        tools: Optional[ToolRegistry] = None,
        client: Optional[AsyncAnthropic] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_key = config.get("api_key")
        self.llm_model = config.get("llm_model", "claude-3-7-sonnet-20250219")
        self.max_tokens = config.get("max_tokens", 4000)
        self.max_turns = config.get("max_turns", 10)
        self.progress_interval = config.get("progress_interval_seconds", 1.0)

        self.permissions = permissions
        self.tools = tools if tools is not None else default_tools()
        self.client = client or AsyncAnthropic(api_key=self.api_key)
        self.memory = ConversationMemory()
        self.logger = logger or logging.getLogger("AnthropicStreamSource")

    def open(
        self,
        prompt: str,
        history: List[ChatMessage],
        attachments: List[FileAttachment],
        permission_mode: str,
        cancellation_signal: CancellationToken,
        options: StreamOptions,
    ) -> AsyncIterator[bytes]:
        return self._stream(
            prompt, history, attachments, permission_mode, cancellation_signal, options
        )

    async def _stream(
        self,
        prompt: str,
        history: List[ChatMessage],
        attachments: List[FileAttachment],
        permission_mode: str,
        cancellation_signal: CancellationToken,
        options: StreamOptions,
    ) -> AsyncIterator[bytes]:
        model = options.model or self.llm_model
        agent_session_id, messages = self.memory.resume(
            options.resume_session_id, history, prompt
        )
        prompt_index = len(messages)
        messages.append({"role": "user", "content": self._user_content(prompt, attachments)})

        usage = TokenUsage()
        completed = False
        try:
            yield StreamEvent.structured(
                EventType.STATUS, {"session_id": agent_session_id, "model": model}
            ).encode()

            for _ in range(self.max_turns):
                if cancellation_signal.cancelled:
                    return

                request: Dict[str, Any] = {
                    "model": model,
                    "max_tokens": self.max_tokens,
                    "messages": messages,
                }
                if options.system_prompt:
                    request["system"] = options.system_prompt
                if len(self.tools):
                    request["tools"] = self.tools.definitions()

                self.logger.debug(
                    f"API request: model={model}, messages={len(messages)}, tools={len(self.tools)}"
                )
                async with self.client.messages.stream(**request) as stream:
                    async for event in stream:
                        if event.type == "content_block_delta" and event.delta.type == "text_delta":
                            yield StreamEvent.text(event.delta.text).encode()
                    response = await stream.get_final_message()

                self._add_usage(usage, response.usage)

                assistant_content: List[Dict[str, Any]] = []
                tool_uses: List[ToolUseRecord] = []
                for block in response.content:
                    if block.type == "text":
                        assistant_content.append({"type": "text", "text": block.text})
                    elif block.type == "tool_use":
                        record = ToolUseRecord(id=block.id, name=block.name, input=dict(block.input or {}))
                        assistant_content.append({"type": "tool_use", **record.model_dump()})
                        tool_uses.append(record)
                        yield StreamEvent.structured(EventType.TOOL_USE, record).encode()
                messages.append({"role": "assistant", "content": assistant_content})

                if response.stop_reason != "tool_use" or not tool_uses:
                    break

                result_blocks: List[Dict[str, Any]] = []
                for record in tool_uses:
                    tool_input = record.input

                    if self.tools.needs_approval(record.name, permission_mode):
                        request_id = f"perm-{uuid.uuid4().hex}"
                        yield StreamEvent.structured(
                            EventType.PERMISSION_REQUEST,
                            PermissionRequest(
                                permission_request_id=request_id,
                                tool_name=record.name,
                                tool_input=record.input,
                                tool_use_id=record.id,
                                description=f"Allow {record.name} to run?",
                            ),
                        ).encode()

                        decision = await self.permissions.register(
                            request_id, record.input, cancellation_signal
                        )
                        if decision.behavior == "deny":
                            result = ToolResultRecord(
                                tool_use_id=record.id,
                                content=decision.message or "Permission denied",
                                is_error=True,
                            )
                            yield StreamEvent.structured(EventType.TOOL_RESULT, result).encode()
                            result_blocks.append(self._result_block(result))
                            continue
                        tool_input = decision.updated_input or record.input

                    task = asyncio.ensure_future(
                        self._execute(record.name, tool_input, options.working_directory)
                    )
                    started = time.monotonic()
                    try:
                        while not task.done():
                            await asyncio.wait({task}, timeout=self.progress_interval)
                            if not task.done():
                                progress = ToolProgress(
                                    progress=True,
                                    tool_name=record.name,
                                    elapsed_time_seconds=time.monotonic() - started,
                                )
                                yield StreamEvent.structured(EventType.TOOL_OUTPUT, progress).encode()
                    finally:
                        if not task.done():
                            task.cancel()

                    content, is_error = task.result()
                    result = ToolResultRecord(
                        tool_use_id=record.id, content=content, is_error=is_error or None
                    )
                    yield StreamEvent.structured(EventType.TOOL_RESULT, result).encode()
                    result_blocks.append(self._result_block(result))

                messages.append({"role": "user", "content": result_blocks})
            else:
                self.logger.warning(f"Stopped after {self.max_turns} tool rounds")
            completed = True
        finally:
            # An interrupted round can leave tool calls without results
            kept = messages if completed else messages[: prompt_index + 1]
            self.memory.remember(agent_session_id, kept)

        usage.cost_usd = (
            usage.input_tokens * INPUT_TOKEN_COST
            + usage.output_tokens * OUTPUT_TOKEN_COST
            + (usage.cache_read_input_tokens or 0) * CACHE_READ_TOKEN_COST
        )
        yield StreamEvent.structured(
            EventType.RESULT, {"usage": usage.model_dump(exclude_none=True)}
        ).encode()
        yield StreamEvent.done().encode()

    async def _execute(
        self, name: str, tool_input: Dict[str, Any], working_directory: Optional[str]
    ) -> Tuple[str, bool]:
        tool = self.tools.get(name)
        if tool is None:
            return f"Unknown tool: {name}", True

        try:
            return await tool.execute(tool_input, working_directory), False
        except Exception as e:
            self.logger.error(f"Tool {name} failed: {e}")
            return f"Error executing {name}: {e}", True

    def _user_content(self, prompt: str, attachments: List[FileAttachment]) -> Any:
        if not attachments:
            return prompt

        blocks: List[Dict[str, Any]] = []
        for attachment in attachments:
            if attachment.is_image:
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": attachment.type,
                            "data": attachment.data,
                        },
                    }
                )
            else:
                blocks.append({"type": "text", "text": describe_attachment(attachment)})
        blocks.append({"type": "text", "text": prompt})
        return blocks

    @staticmethod
    def _result_block(result: ToolResultRecord) -> Dict[str, Any]:
        block = {
            "type": "tool_result",
            "tool_use_id": result.tool_use_id,
            "content": result.content,
        }
        if result.is_error:
            block["is_error"] = True
        return block

    @staticmethod
    def _add_usage(total: TokenUsage, usage: Any) -> None:
        if usage is None:
            return
        total.input_tokens += usage.input_tokens or 0
        total.output_tokens += usage.output_tokens or 0

        cache_read = getattr(usage, "cache_read_input_tokens", None)
        if cache_read:
            total.cache_read_input_tokens = (total.cache_read_input_tokens or 0) + cache_read
        cache_creation = getattr(usage, "cache_creation_input_tokens", None)
        if cache_creation:
            total.cache_creation_input_tokens = (
                total.cache_creation_input_tokens or 0
            ) + cache_creation
