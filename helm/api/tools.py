"""Tool dispatcher -- registry of tool handlers the model may call.

Each handler is an async callable that accepts **kwargs and returns an
MCP-format response: {"content": [{"type": "text", "text": "..."}]}.
The dispatcher extracts plain text for the tool_result block.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


def mcp_response(text: str) -> dict[str, Any]:
    """Build MCP-format response."""
    return {"content": [{"type": "text", "text": text}]}


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the model."""

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)
        self._schemas.pop(name, None)

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error).

        Handler exceptions never propagate; they become error results.
        """
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True
        try:
            result = await handler(**args)
            return result["content"][0]["text"], bool(result.get("isError", False))
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True

    def tool_names(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": schema,
            }
            for name, schema in self._schemas.items()
        ]
