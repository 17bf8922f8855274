"""
Reservation (hold) tools for the Library Circulation server.

Members place, confirm and cancel their own holds; staff move holds through
the READY and PICKED_UP states and run the expiry sweep. Queue positions are
maintained by the hold queue itself and are never set by callers.
"""

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..authz import Actor, member_scope, require_member, require_self_or_staff, require_staff
from ..database import sweeps
from ..database.circulation_repository import CirculationOrchestrator
from ..database.reservation_repository import (
    CreateReservationCommand,
    HoldQueue,
    ReservationQuery,
    UpdateReservationCommand,
)
from ..database.session import get_db_manager
from ..exceptions import CirculationError
from ..models.circulation import ReservationStatus
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


class CreateReservationInput(CreateReservationCommand):
    actor: Actor


class UpdateReservationStatusInput(UpdateReservationCommand):
    actor: Actor
    reservation_id: str = Field(..., min_length=1)


class ReservationActionInput(BaseModel):
    """Input for the member-side actions on a single reservation."""

    actor: Actor
    reservation_id: str = Field(..., min_length=1)


class ListReservationsInput(ReservationQuery):
    actor: Actor


class UpdateExpiredReservationsInput(BaseModel):
    actor: Actor
    as_of: datetime | None = Field(
        default=None, description="Evaluate pickup deadlines at this time instead of now"
    )


# =============================================================================
# HANDLERS
# =============================================================================


@trace_tool("create_reservation")
async def create_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the create_reservation tool.

    The hold becomes READY at once when a copy is on the shelf and nobody is
    ahead in the queue; otherwise it is queued with its position.
    """
    try:
        params = CreateReservationInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("create_reservation", e)

    try:
        require_self_or_staff(params.actor, params.member_id, "place reservations")
        reservation = run_unit_of_work(
            "Create reservation",
            lambda session: CirculationOrchestrator(session).create_hold(params),
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("create_reservation", e)

    if reservation.status == ReservationStatus.READY:
        record_circulation_event("hold_ready")
        message = (
            f"Reservation '{reservation.id}' is ready for pickup with copy "
            f"'{reservation.copy_id}' until "
            f"{reservation.expiration_date.strftime('%B %d, %Y')}"
        )
    else:
        message = (
            f"Reservation '{reservation.id}' placed at queue position "
            f"{reservation.queue_position}"
        )
    return success_response(message, {"reservation": dump(reservation)})


@trace_tool("update_reservation_status")
async def update_reservation_status_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = UpdateReservationStatusInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("update_reservation_status", e)

    command = UpdateReservationCommand.model_validate(
        params.model_dump(exclude={"actor", "reservation_id"})
    )
    try:
        require_staff(params.actor, "change reservation status")
        reservation = run_unit_of_work(
            "Update reservation",
            lambda session: CirculationOrchestrator(session).update_hold_status(
                params.reservation_id, command
            ),
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("update_reservation_status", e)

    if reservation.status == ReservationStatus.READY:
        record_circulation_event("hold_ready")
    return success_response(
        f"Reservation '{reservation.id}' is now {reservation.status.value}",
        {"reservation": dump(reservation)},
    )


@trace_tool("confirm_reservation_pickup")
async def confirm_reservation_pickup_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ReservationActionInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("confirm_reservation_pickup", e)

    try:
        require_member(params.actor, "confirm pickup")
        reservation = run_unit_of_work(
            "Confirm pickup",
            lambda session: CirculationOrchestrator(session).confirm_pickup(
                params.reservation_id, params.actor.id
            ),
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("confirm_reservation_pickup", e)

    return success_response(
        f"Pickup confirmed for reservation '{reservation.id}'",
        {"reservation": dump(reservation)},
    )


@trace_tool("cancel_reservation")
async def cancel_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = ReservationActionInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("cancel_reservation", e)

    try:
        require_member(params.actor, "cancel it")
        reservation = run_unit_of_work(
            "Cancel reservation",
            lambda session: CirculationOrchestrator(session).cancel_hold(
                params.reservation_id, params.actor.id
            ),
        )
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("cancel_reservation", e)

    return success_response(
        f"Reservation '{reservation.id}' cancelled", {"reservation": dump(reservation)}
    )


@trace_tool("update_expired_reservations")
async def update_expired_reservations_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    try:
        params = UpdateExpiredReservationsInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("update_expired_reservations", e)

    try:
        require_staff(params.actor, "run the reservation expiry sweep")
        result = sweeps.expire_reservations(get_db_manager(), params.as_of)
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("update_expired_reservations", e)

    return success_response(
        f"Expired {result.updated} reservation(s)",
        {
            "updated": result.updated,
            "reservation_ids": result.ids,
            "failures": result.failures,
        },
    )


@trace_tool("list_reservations")
async def list_reservations_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """List holds; when scoped to one member the member's hold summary is included."""
    try:
        params = ListReservationsInput.model_validate(arguments)
    except ValidationError as e:
        return invalid_request_response("list_reservations", e)

    try:
        query = ReservationQuery.model_validate(
            params.model_dump(exclude={"actor"})
            | {"member_id": member_scope(params.actor, params.member_id)}
        )
        with get_db_manager().session_scope() as session:
            queue = HoldQueue(session)
            page = queue.list(query)
            stats = queue.member_stats(query.member_id) if query.member_id else None
    except CirculationError as e:
        return circulation_error_response(e)
    except Exception as e:
        return unexpected_error_response("list_reservations", e)

    data = dump(page)
    if stats is not None:
        data["stats"] = dump(stats)
    return success_response(f"Found {page.total} reservation(s)", data)


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

create_reservation = {
    "name": "create_reservation",
    "description": (
        "Place a hold on a material for a member. Ready immediately when a copy is on "
        "the shelf, otherwise queued first come, first served."
    ),
    "inputSchema": CreateReservationInput.model_json_schema(),
    "handler": create_reservation_handler,
}

update_reservation_status = {
    "name": "update_reservation_status",
    "description": (
        "Move a reservation to READY (binding a copy), PICKED_UP, EXPIRED or CANCELLED "
        "(staff only). Queue positions are recomputed automatically."
    ),
    "inputSchema": UpdateReservationStatusInput.model_json_schema(),
    "handler": update_reservation_status_handler,
}

confirm_reservation_pickup = {
    "name": "confirm_reservation_pickup",
    "description": "Acknowledge a READY reservation (its member only).",
    "inputSchema": ReservationActionInput.model_json_schema(),
    "handler": confirm_reservation_pickup_handler,
}

cancel_reservation = {
    "name": "cancel_reservation",
    "description": (
        "Cancel a pending or ready reservation (its member only). A held copy passes to "
        "the next reservation in the queue."
    ),
    "inputSchema": ReservationActionInput.model_json_schema(),
    "handler": cancel_reservation_handler,
}

update_expired_reservations = {
    "name": "update_expired_reservations",
    "description": "Expire READY reservations past their pickup deadline (staff only).",
    "inputSchema": UpdateExpiredReservationsInput.model_json_schema(),
    "handler": update_expired_reservations_handler,
}

list_reservations = {
    "name": "list_reservations",
    "description": "List reservations filtered by member, material or status, with pagination.",
    "inputSchema": ListReservationsInput.model_json_schema(),
    "handler": list_reservations_handler,
}

reservation_tools = [
    create_reservation,
    update_reservation_status,
    confirm_reservation_pickup,
    cancel_reservation,
    update_expired_reservations,
    list_reservations,
]
