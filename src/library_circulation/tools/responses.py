"""
Response shapes shared by the circulation tools.

Successful calls return a human-readable text block plus structured ``data``.
Failures set ``isError`` and carry an ``error`` object whose ``category``
tells the client which kind of problem occurred, so a policy violation is
never confused with a missing record or a transient conflict.
"""

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from ..database.session import get_db_manager
from ..exceptions import CirculationError, ConflictError, PolicyViolationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def success_response(message: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "content": [{"type": "text", "text": message}],
        "data": data,
    }


def error_response(
    category: str, message: str, reasons: list[str] | None = None, **extra: Any
) -> dict[str, Any]:
    text = message
    if reasons:
        text = f"{message}:\n" + "\n".join(f"- {reason}" for reason in reasons)
    return {
        "isError": True,
        "content": [{"type": "text", "text": text}],
        "error": {"category": category, "reasons": reasons or [], **extra},
    }


def circulation_error_response(error: CirculationError) -> dict[str, Any]:
    """Translate an engine error into a tool error, keeping its category."""
    if isinstance(error, PolicyViolationError):
        return error_response(error.category, error.message, error.reasons)
    if isinstance(error, ConflictError):
        return error_response(error.category, error.message, transient=error.transient)
    return error_response(error.category, error.message)


def invalid_request_response(tool_name: str, error: ValidationError) -> dict[str, Any]:
    logger.warning("Invalid %s parameters: %s", tool_name, error)
    reasons = [
        f"{'.'.join(str(part) for part in item['loc']) or 'input'}: {item['msg']}"
        for item in error.errors()
    ]
    return error_response("invalid_request", f"Invalid {tool_name} parameters", reasons)


def unexpected_error_response(tool_name: str, error: Exception) -> dict[str, Any]:
    logger.exception("Unexpected error in %s tool", tool_name)
    return error_response("internal_error", f"An unexpected error occurred: {error!s}")


def run_unit_of_work(description: str, operation: Callable[[Session], T]) -> T:
    """Run one engine operation in its own retried transaction."""
    return get_db_manager().run_in_transaction(operation, description=description)


def dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")
