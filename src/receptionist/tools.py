from __future__ import annotations

import asyncio
import inspect
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_ACK = "Let me check that for you."

ToolHandler = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolError(Exception):
    """Raised when a tool is unknown or its implementation fails."""
    pass


@dataclass
class Tool:
    """
    A callable the language model may invoke by name.

    `say` is the short phrase spoken to the caller while the tool runs.
    """

    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler
    say: Optional[str] = None
    returns: Optional[dict[str, Any]] = None

    def declaration(self) -> dict[str, Any]:
        """OpenAI `tools` entry for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolCall:
    """One resolved tool invocation, folded into the transcript then discarded."""

    name: str
    arguments: dict[str, Any]
    call_id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:24]}")
    result: Any = None


class ToolRegistry:
    """Declared tool set for one dialogue engine."""

    def __init__(self, tools: Optional[list[Tool]] = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def declarations(self) -> list[dict[str, Any]]:
        return [tool.declaration() for tool in self._tools.values()]

    def ack_text(self, name: str) -> str:
        tool = self._tools.get(name)
        if tool and tool.say:
            return tool.say
        return DEFAULT_ACK

    async def invoke(self, call: ToolCall) -> Any:
        """
        Run a tool and store its result on the call.

        Raises:
            ToolError: unknown tool, or the implementation raised
        """
        tool = self._tools.get(call.name)
        if tool is None:
            raise ToolError(f"Unknown tool: {call.name}")

        logger.info("Invoking tool", tool=call.name, call_id=call.call_id)
        try:
            result = tool.handler(call.arguments)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Tool failed", tool=call.name, error=str(e))
            raise ToolError(f"{call.name} failed: {e}") from e

        call.result = result
        return result

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def result_to_content(result: Any) -> str:
    """Serialize a tool result for the transcript."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
