import asyncio
import subprocess
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

BASH_TIMEOUT_SECONDS = 30


class AgentTool:
    """A tool the agent may call. Subclasses implement ``execute``."""

    name: str = ""
    description: str = ""
    input_schema: Dict[str, Any] = {"type": "object", "properties": {}}
    requires_approval: bool = False

    async def execute(
        self, tool_input: Dict[str, Any], working_directory: Optional[str] = None
    ) -> str:
        raise NotImplementedError

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class CurrentTimeTool(AgentTool):
    name = "get_current_time"
    description = "Get the current date and time"
    input_schema = {
        "type": "object",
        "properties": {
            "timezone": {
                "type": "string",
                "description": "IANA timezone, e.g. Europe/London",
                "default": "UTC",
            },
        },
    }

    async def execute(self, tool_input, working_directory=None):
        tz_name = tool_input.get("timezone") or "UTC"
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            return f"Unknown timezone: {tz_name}"
        return datetime.now(tz).isoformat()


class BashTool(AgentTool):
    name = "bash"
    description = "Execute a bash command and return its output (stdout + stderr)."
    input_schema = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to execute",
            },
        },
        "required": ["command"],
    }
    requires_approval = True

    def __init__(self, timeout_seconds: float = BASH_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    async def execute(self, tool_input, working_directory=None):
        command = tool_input.get("command")
        if not command:
            return "Error: missing command"

        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=working_directory,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return f"[timed out after {self.timeout_seconds:g}s]"
        except asyncio.CancelledError:
            proc.kill()
            raise

        output = stdout.decode(errors="replace") + stderr.decode(errors="replace")
        if proc.returncode != 0:
            return f"{output}\n[exit code {proc.returncode}]"
        return output.rstrip()


class ToolRegistry:
    def __init__(self, tools: Optional[List[AgentTool]] = None):
        self._tools: Dict[str, AgentTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: AgentTool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[AgentTool]:
        return self._tools.get(name)

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def needs_approval(self, name: str, permission_mode: str) -> bool:
        if permission_mode == "bypassPermissions":
            return False
        tool = self._tools.get(name)
        return tool is not None and tool.requires_approval

    def __len__(self) -> int:
        return len(self._tools)


def default_tools() -> ToolRegistry:
    return ToolRegistry([CurrentTimeTool(), BashTool()])
