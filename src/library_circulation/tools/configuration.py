"""Loan configuration tools: read and administer the circulation policy."""

import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from ..authz import Actor, require_staff
from ..database.configuration_repository import (
    LoanConfigurationStore,
    UpdateLoanConfigurationCommand,
)
from ..exceptions import CirculationError
from ..observability.decorators import trace_tool
from .responses import (
    circulation_error_response,
    dump,
    error_response,
    invalid_request_response,
    run_unit_of_work,
    success_response,
    unexpected_error_response,
)

logger = logging.getLogger(__name__)


class GetLoanConfigurationInput(BaseModel):
    actor: Actor


class UpdateLoanConfigurationInput(UpdateLoanConfigurationCommand):
    actor: Actor


@trace_tool("get_loan_configuration")
async def get_loan_configuration_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        GetLoanConfigurationInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("get_loan_configuration", e)

    try:
        # Runs as a unit of work because the first read creates the row
        config = run_unit_of_work(
            "Read loan configuration", lambda session: LoanConfigurationStore(session).get()
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("get_loan_configuration", e)

    return success_response(
        f"Loans run {config.default_loan_days} days, up to {config.max_active_loans} at a "
        f"time, {config.max_renewals} renewal(s), ${config.daily_fine_amount:.2f}/day late",
        {"configuration": dump(config)},
    )


@trace_tool("update_loan_configuration")
async def update_loan_configuration_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = UpdateLoanConfigurationInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("update_loan_configuration", e)

    command = UpdateLoanConfigurationCommand.model_validate(params.model_dump(exclude={"actor"}))
    if not command.model_dump(exclude_none=True):
        return error_response("invalid_request", "No configuration fields to update")

    try:
        require_staff(params.actor, "change the loan configuration")
        config = run_unit_of_work(
            "Update loan configuration",
            lambda session: LoanConfigurationStore(session).update(command),
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("update_loan_configuration", e)

    logger.info("Loan configuration changed by %s", params.actor.id)
    return success_response("Loan configuration updated", {"configuration": dump(config)})


get_loan_configuration = {
    "name": "get_loan_configuration",
    "description": "Read the current circulation policy.",
    "inputSchema": GetLoanConfigurationInput.model_json_schema(),
    "handler": get_loan_configuration_handler,
}

update_loan_configuration = {
    "name": "update_loan_configuration",
    "description": (
        "Change circulation policy values such as loan period, loan limit, renewal limit, "
        "grace period, daily fine or hold period (staff only). Unset fields are kept."
    ),
    "inputSchema": UpdateLoanConfigurationInput.model_json_schema(),
    "handler": update_loan_configuration_handler,
}

configuration_tools = [get_loan_configuration, update_loan_configuration]
