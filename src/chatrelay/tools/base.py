"""Tool base class and registry — functions exposed to AI providers."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger()

TOOL_NOT_FOUND = "Tool not found."


class Tool(ABC):
    """Base class for all relay tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description for the model."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """Execute the tool and return a string result."""
        ...

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Static catalog of tools, filled at startup and read-only afterwards."""

    def __init__(self) -> None:
        self.tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self.tools:
            logger.warning("tool.duplicate", name=tool.name, action="replacing")
        self.tools[tool.name] = tool
        logger.info("tool.registered", name=tool.name)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self.tools.get(name)

    def __len__(self) -> int:
        return len(self.tools)

    async def execute(self, name: str, arguments: Any) -> str:
        """Execute a tool by name. Never raises; failures come back as text."""
        tool = self.get(name) if isinstance(name, str) else None
        if not tool:
            logger.warning("tool.not_found", name=name)
            return TOOL_NOT_FOUND

        if arguments is None:
            kwargs: Any = {}
        elif isinstance(arguments, str):
            try:
                kwargs = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                return f"Error: Invalid JSON arguments: {arguments[:200]}"
        else:
            kwargs = arguments

        if not isinstance(kwargs, dict):
            return f"Error: Arguments for '{name}' must be an object."

        try:
            result = await tool.execute(**{str(k): v for k, v in kwargs.items()})
        except Exception as e:
            logger.error("tool.error", name=name, error=str(e))
            return f"Error: {e}"

        result = result if isinstance(result, str) else str(result)
        logger.info("tool.executed", name=name, result_length=len(result))
        return result

    def to_openai_tools(self) -> list[dict[str, Any]]:
        """Get all tools in OpenAI function calling format."""
        return [tool.to_openai_tool() for tool in self.tools.values()]

    def function_declarations(self) -> list[dict[str, Any]]:
        """Bare name/description/parameters triples for vendors that want them."""
        return [
            {"name": t.name, "description": t.description, "parameters": t.parameters}
            for t in self.tools.values()
        ]

    def list_tools(self) -> list[dict[str, str]]:
        """List all tools with names and descriptions."""
        return [
            {"name": t.name, "description": t.description}
            for t in self.tools.values()
        ]
