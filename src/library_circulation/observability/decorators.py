"""Decorators for tracing MCP tool handlers."""

import functools
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import logfire

from .metrics import record_tool_error

ToolHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def trace_tool(tool_name: str) -> Callable[[ToolHandler], ToolHandler]:
    """Trace a tool handler and count the errors it reports."""

    def decorator(func: ToolHandler) -> ToolHandler:
        @functools.wraps(func)
        async def wrapper(arguments: dict[str, Any]) -> dict[str, Any]:
            with logfire.span(
                "tool.execution.{tool_name}",
                tool_name=tool_name,
                tool_category=_categorize_tool(tool_name),
            ) as span:
                start_time = datetime.now()
                _add_attributes(span, "input", arguments)

                result = await func(arguments)

                is_error = bool(result.get("isError"))
                span.set_attribute("tool.success", not is_error)
                span.set_attribute(
                    "tool.duration_ms", (datetime.now() - start_time).total_seconds() * 1000
                )
                if is_error:
                    category = result.get("error", {}).get("category", "unknown")
                    span.set_attribute("tool.error_category", category)
                    record_tool_error(tool_name, category)
                return result

        return wrapper

    return decorator


def _categorize_tool(tool_name: str) -> str:
    if "fine" in tool_name:
        return "fines"
    if "reservation" in tool_name:
        return "holds"
    if "configuration" in tool_name:
        return "policy"
    return "loans"


def _add_attributes(span, prefix: str, data: dict[str, Any]) -> None:
    for key, value in data.items():
        if isinstance(value, str | int | float | bool):
            span.set_attribute(f"{prefix}.{key}", value)
