"""Minimal terminal client for the chat relay server.

Streams each turn's text as it arrives, shows tool activity and asks for
permission decisions inline.

Usage:
    # Start the server in one terminal:
    python src/main.py

    # Chat from another terminal:
    python src/cli.py --url http://localhost:8000

    # Or send a single message:
    python src/cli.py --message "What time is it in Tokyo?"
"""

import argparse
import asyncio
import json
import logging
import uuid
from typing import Any, Optional

import httpx

from chat.consumer import StreamConsumer
from chat.models import PermissionRequest, ToolResultRecord, ToolUseRecord
from config import get_settings


class Colors:
    RESET = "\033[0m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    MAGENTA = "\033[35m"


def colorize(text: str, color: str) -> str:
    return f"{color}{text}{Colors.RESET}"


class TerminalView:
    """Prints consumer state changes as they happen."""

    def __init__(self, consumer: StreamConsumer, auto_approve: bool = False):
        self.consumer = consumer
        self.auto_approve = auto_approve
        self._printed = 0
        self._prompt: Optional[asyncio.Task] = None

    def __call__(self, name: str, value: Any) -> None:
        if name == "streaming_content":
            if len(value) < self._printed:
                self._printed = 0
            print(value[self._printed:], end="", flush=True)
            self._printed = len(value)
        elif name == "tool_uses" and value:
            tool: ToolUseRecord = value[-1]
            print(colorize(f"\n-> {tool.name} {json.dumps(tool.input)}", Colors.MAGENTA))
        elif name == "tool_results" and value:
            result: ToolResultRecord = value[-1]
            color = Colors.RED if result.is_error else Colors.DIM
            print(colorize(str(result.content)[:500], color))
        elif name == "status_text" and value:
            print(colorize(f"[{value}]", Colors.DIM))
        elif name == "pending_permission" and value is not None:
            self._prompt = asyncio.get_running_loop().create_task(self._ask(value))

    async def _ask(self, request: PermissionRequest) -> None:
        print(colorize(f"\nPermission required: {request.tool_name}", Colors.YELLOW))
        print(f"    {json.dumps(request.tool_input)}")

        if self.auto_approve:
            self.consumer.respond_to_permission("allow")
            return

        loop = asyncio.get_running_loop()
        answer = await loop.run_in_executor(None, lambda: input("Allow? [y/N] "))
        self.consumer.respond_to_permission(
            "allow" if answer.strip().lower() in ("y", "yes") else "deny"
        )

    def end_turn(self) -> None:
        self._printed = 0
        print()


async def run_turn(consumer: StreamConsumer, view: TerminalView, content: str) -> None:
    message = await consumer.send(content)
    view.end_turn()
    if message is not None and message.token_usage is not None:
        usage = message.token_usage
        print(
            colorize(
                f"[{usage.input_tokens} in / {usage.output_tokens} out]", Colors.DIM
            )
        )
    await consumer.drain()


async def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Chat relay terminal client")
    parser.add_argument("--url", default=settings.chat_api_url, help="Server base URL")
    parser.add_argument("--session", default=None, help="Session id to resume")
    parser.add_argument("--model", default=None, help="Model override")
    parser.add_argument("--message", default=None, help="Send one message and exit")
    parser.add_argument(
        "--yes", action="store_true", help="Approve every permission request"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)

    session_id = args.session or str(uuid.uuid4())
    async with httpx.AsyncClient(base_url=args.url, timeout=None) as client:
        consumer = StreamConsumer(
            session_id,
            client,
            model=args.model,
            working_directory=settings.working_directory,
            connected_status_ttl=settings.connected_status_ttl_seconds,
            tool_output_limit=settings.tool_output_limit,
        )
        view = TerminalView(consumer, auto_approve=args.yes)
        consumer.subscribe(view)

        if args.message:
            await run_turn(consumer, view, args.message)
            return

        print(colorize(f"Session {session_id}. Type 'quit' to exit.\n", Colors.DIM))
        loop = asyncio.get_running_loop()
        while True:
            user_input = await loop.run_in_executor(
                None, lambda: input(colorize("> ", Colors.GREEN))
            )
            if user_input.lower() in ("quit", "exit", "q"):
                break
            if not user_input.strip():
                continue

            await run_turn(consumer, view, user_input)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, EOFError):
        pass
