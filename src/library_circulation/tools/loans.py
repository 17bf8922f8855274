"""
Loan tools for the Library Circulation server.

1. checkout_loan: lend a copy to a member (staff)
2. return_loan: close a loan, assess late fines, feed the hold queue (staff)
3. renew_loan: extend a loan (staff or the borrower)
4. list_loans: filtered, paginated loans (staff; members see their own)
5. member_loan_stats: counts, fines and borrowing eligibility (staff or self)
6. update_overdue_loans: overdue sweep (staff)

Every handler validates its input, checks the caller's capability and runs
the engine operation as a single retried transaction.
"""

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..authz import Actor, member_scope, require_self_or_staff, require_staff
from ..database import sweeps
from ..database.circulation_repository import CirculationOrchestrator
from ..database.loan_repository import CheckoutCommand, LoanLedger, LoanQuery, ReturnCommand
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


# =============================================================================
# INPUT SCHEMAS
# =============================================================================


class CheckoutLoanInput(CheckoutCommand):
    """Input schema for the checkout_loan tool."""

    actor: Actor


class ReturnLoanInput(ReturnCommand):
    """Input schema for the return_loan tool."""

    actor: Actor
    loan_id: str = Field(..., min_length=1, description="Loan to close")


class RenewLoanInput(BaseModel):
    actor: Actor
    loan_id: str = Field(..., min_length=1, description="Loan to renew")


class ListLoansInput(LoanQuery):
    actor: Actor


class MemberLoanStatsInput(BaseModel):
    actor: Actor
    member_id: str = Field(..., min_length=1)


class UpdateOverdueLoansInput(BaseModel):
    actor: Actor
    as_of: datetime | None = Field(
        default=None, description="Evaluate due dates at this time instead of now"
    )


# =============================================================================
# HANDLERS
# =============================================================================


@trace_tool("checkout_loan")
async def checkout_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the checkout_loan tool.

    The due date comes from the material's own loan period when it has one,
    otherwise from the configured default.
    """
    try:
        params = CheckoutLoanInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("checkout_loan", e)

    try:
        require_staff(params.actor, "check out copies")
        loan = run_unit_of_work(
            "Checkout",
            lambda session: CirculationOrchestrator(session).checkout(params, params.actor.id),
        )
    except CirculationError as e:
        logger.info("Checkout refused: %s", e)
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("checkout_loan", e)

    record_circulation_event("checkout")
    return success_response(
        f"Checked out copy '{loan.copy_id}' to member '{loan.member_id}'. "
        f"Due date: {loan.due_date.strftime('%B %d, %Y')}",
        {"loan": dump(loan)},
    )


@trace_tool("return_loan")
async def return_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the return_loan tool."""
    try:
        params = ReturnLoanInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("return_loan", e)

    try:
        require_staff(params.actor, "process returns")
        outcome = run_unit_of_work(
            "Return",
            lambda session: CirculationOrchestrator(session).return_loan(params.loan_id, params),
        )
    except CirculationError as e:
        logger.info("Return refused: %s", e)
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("return_loan", e)

    record_circulation_event("return")
    message = f"Loan '{outcome.loan.id}' returned."
    if outcome.fine is not None:
        record_circulation_event("fine_issued")
        message += f" Late return fine: ${outcome.fine.amount:.2f}."
    if outcome.fulfilled_reservation is not None:
        record_circulation_event("hold_ready")
        message += (
            f" Copy is now held for reservation '{outcome.fulfilled_reservation.id}'."
        )

    return success_response(message, dump(outcome))


@trace_tool("renew_loan")
async def renew_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the renew_loan tool. Members may only renew their own loans."""
    try:
        params = RenewLoanInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("renew_loan", e)

    owner_id = None if params.actor.is_staff else params.actor.id
    try:
        loan = run_unit_of_work(
            "Renewal",
            lambda session: CirculationOrchestrator(session).renew_loan(
                params.loan_id, member_id=owner_id
            ),
        )
    except CirculationError as e:
        logger.info("Renewal refused: %s", e)
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("renew_loan", e)

    record_circulation_event("renew")
    return success_response(
        f"Loan '{loan.id}' renewed ({loan.renewal_count}). "
        f"New due date: {loan.due_date.strftime('%B %d, %Y')}",
        {"loan": dump(loan)},
    )


@trace_tool("list_loans")
async def list_loans_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ListLoansInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("list_loans", e)

    try:
        query = LoanQuery.model_validate(
            params.model_dump(exclude={"actor"})
            | {"member_id": member_scope(params.actor, params.member_id)}
        )
        with get_db_manager().session_scope() as session:
            page = LoanLedger(session).list(query)
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("list_loans", e)

    return success_response(
        f"Found {page.total} loan(s); showing page {page.page} of {max(page.total_pages, 1)}",
        dump(page),
    )


@trace_tool("member_loan_stats")
async def member_loan_stats_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = MemberLoanStatsInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("member_loan_stats", e)

    try:
        require_self_or_staff(params.actor, params.member_id, "view loan statistics")
        with get_db_manager().session_scope() as session:
            stats = CirculationOrchestrator(session).member_loan_stats(params.member_id)
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("member_loan_stats", e)

    message = (
        f"Member '{params.member_id}': {stats.active_loans} active, "
        f"{stats.overdue_loans} overdue, ${stats.unpaid_fines:.2f} unpaid. "
    )
    message += "Can borrow." if stats.can_borrow else "Cannot borrow: " + "; ".join(stats.reasons)
    return success_response(message, {"stats": dump(stats)})


@trace_tool("update_overdue_loans")
async def update_overdue_loans_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = UpdateOverdueLoansInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("update_overdue_loans", e)

    try:
        require_staff(params.actor, "run the overdue sweep")
        result = sweeps.update_overdue_loans(get_db_manager(), params.as_of)
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("update_overdue_loans", e)

    return success_response(
        f"Marked {result.updated} loan(s) overdue",
        {"updated": result.updated, "loan_ids": result.ids, "failures": result.failures},
    )


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

checkout_loan = {
    "name": "checkout_loan",
    "description": (
        "Lend a material copy to a member (staff only). Checks the member's account and "
        "borrowing eligibility, claims the copy and sets the due date. A copy held for "
        "the same member's ready reservation counts as that reservation's pickup."
    ),
    "inputSchema": CheckoutLoanInput.model_json_schema(),
    "handler": checkout_loan_handler,
}

return_loan = {
    "name": "return_loan",
    "description": (
        "Return a loaned copy (staff only). Issues a late-return fine when the loan is past "
        "its due date beyond the grace period and hands the copy to the next reservation in "
        "the queue. A DAMAGED or LOST condition takes the copy out of circulation."
    ),
    "inputSchema": ReturnLoanInput.model_json_schema(),
    "handler": return_loan_handler,
}

renew_loan = {
    "name": "renew_loan",
    "description": (
        "Renew an active loan, extending its due date by the loan period. Refused for "
        "overdue loans, loans at the renewal limit and members with unpaid fines."
    ),
    "inputSchema": RenewLoanInput.model_json_schema(),
    "handler": renew_loan_handler,
}

list_loans = {
    "name": "list_loans",
    "description": "List loans filtered by member, status or overdue state, with pagination.",
    "inputSchema": ListLoansInput.model_json_schema(),
    "handler": list_loans_handler,
}

member_loan_stats = {
    "name": "member_loan_stats",
    "description": (
        "Summarize a member's active and overdue loans and fines, and whether they can "
        "borrow, with every reason they cannot."
    ),
    "inputSchema": MemberLoanStatsInput.model_json_schema(),
    "handler": member_loan_stats_handler,
}

update_overdue_loans = {
    "name": "update_overdue_loans",
    "description": "Mark every active loan past its due date as overdue (staff only).",
    "inputSchema": UpdateOverdueLoansInput.model_json_schema(),
    "handler": update_overdue_loans_handler,
}

loan_tools = [
    checkout_loan,
    return_loan,
    renew_loan,
    list_loans,
    member_loan_stats,
    update_overdue_loans,
]
