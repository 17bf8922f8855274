"""
Fine tools for the Library Circulation server.

Late-return fines are created by the return path; these tools cover the
staff side of fines (manual fines, payments, waivers) and fine listings.
"""

import logging
from typing import Any

from pydantic import Field, ValidationError

from ..authz import Actor, member_scope, require_staff
from ..database.circulation_repository import CirculationOrchestrator
from ..database.fine_repository import (
    CreateFineCommand,
    FineLedger,
    FineQuery,
    UpdateFineCommand,
)
from ..database.session import get_db_manager
from ..exceptions import CirculationError
from ..observability.decorators import trace_tool
from ..observability.metrics import record_circulation_event
from .responses import (
    circulation_error_response,
    dump,
    invalid_request_response,
    run_unit_of_work,
    success_response,
    unexpected_error_response,
)

logger = logging.getLogger(__name__)


class CreateFineInput(CreateFineCommand):
    actor: Actor


class UpdateFineInput(UpdateFineCommand):
    actor: Actor
    fine_id: str = Field(..., min_length=1)


class ListFinesInput(FineQuery):
    actor: Actor


@trace_tool("create_fine")
async def create_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = CreateFineInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("create_fine", e)

    try:
        require_staff(params.actor, "issue fines")
        fine = run_unit_of_work(
            "Create fine",
            lambda session: CirculationOrchestrator(session).create_fine(params, params.actor.id),
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("create_fine", e)

    record_circulation_event("fine_issued")
    return success_response(
        f"Fine '{fine.id}' of ${fine.amount:.2f} issued on loan '{fine.loan_id}'",
        {"fine": dump(fine)},
    )


@trace_tool("update_fine")
async def update_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the update_fine tool.

    ``paid_amount`` is the cumulative amount paid; once it covers the fine
    the fine becomes PAID. Only PENDING fines can change.
    """
    try:
        params = UpdateFineInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("update_fine", e)

    command = UpdateFineCommand.model_validate(params.model_dump(exclude={"actor", "fine_id"}))
    try:
        require_staff(params.actor, "update fines")
        fine = run_unit_of_work(
            "Update fine",
            lambda session: CirculationOrchestrator(session).update_fine(params.fine_id, command),
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("update_fine", e)

    return success_response(
        f"Fine '{fine.id}' is {fine.status.value}: "
        f"${fine.paid_amount:.2f} of ${fine.amount:.2f} paid",
        {"fine": dump(fine)},
    )


@trace_tool("list_fines")
async def list_fines_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ListFinesInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("list_fines", e)

    try:
        query = FineQuery.model_validate(
            params.model_dump(exclude={"actor"})
            | {"member_id": member_scope(params.actor, params.member_id)}
        )
        with get_db_manager().session_scope() as session:
            page = FineLedger(session).list(query)
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("list_fines", e)

    return success_response(f"Found {page.total} fine(s)", dump(page))


create_fine = {
    "name": "create_fine",
    "description": "Issue a fine against a loan (staff only).",
    "inputSchema": CreateFineInput.model_json_schema(),
    "handler": create_fine_handler,
}

update_fine = {
    "name": "update_fine",
    "description": (
        "Record a payment on a pending fine or waive it (staff only). paid_amount is the "
        "total paid so far; the fine becomes PAID once it covers the amount."
    ),
    "inputSchema": UpdateFineInput.model_json_schema(),
    "handler": update_fine_handler,
}

list_fines = {
    "name": "list_fines",
    "description": "List fines filtered by member, loan or status, with pagination.",
    "inputSchema": ListFinesInput.model_json_schema(),
    "handler": list_fines_handler,
}

fine_tools = [create_fine, update_fine, list_fines]
