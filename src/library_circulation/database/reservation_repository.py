"""
Hold queue for the Library Circulation server.

Each material has a FIFO queue of PENDING reservations ordered by
``(reservation_date, sequence)``. Queue positions are a contiguous 1..n over
the PENDING entries and are recomputed inside whichever transaction changed
the queue. The material row is locked before the queue is read or changed,
which serializes all queue changes for that material.

    PENDING --copy bound--> READY --picked up--> PICKED_UP
    PENDING | READY --cancel--> CANCELLED
    READY --pickup deadline passed--> EXPIRED

When a READY hold is cancelled or expires its copy is released and one
fulfillment attempt is made for the head of the queue, in the same
transaction.
"""

import logging
from datetime import datetime, timedelta

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import func, select

from ..exceptions import AuthorizationError, ConflictError, InvalidStateError
from ..models.circulation import (
    ACTIVE_RESERVATION_STATUSES,
    TERMINAL_RESERVATION_STATUSES,
    CopyStatus,
    EventType,
    LoanConfiguration,
    ReservationStats,
    ReservationStatus,
)
from ..models.circulation import Reservation as ReservationModel
from .copy_repository import CopyInventory
from .event_repository import EventOutbox
from .repository import LedgerBase, PaginatedResponse, PaginationParams, new_id
from .schema import Material as MaterialDB
from .schema import Reservation as ReservationDB
from .session import safe_query

logger = logging.getLogger(__name__)


class CreateReservationCommand(BaseModel):
    """Place a hold on a material."""

    member_id: str = Field(..., min_length=1)
    material_id: str = Field(..., min_length=1)
    notes: str | None = Field(default=None, max_length=1000)


class UpdateReservationCommand(BaseModel):
    """Staff-driven status change of a reservation."""

    status: ReservationStatus
    copy_id: str | None = Field(default=None, description="Copy to bind; required for READY")
    expiration_date: datetime | None = Field(
        default=None, description="Pickup deadline for READY; defaults to the hold period"
    )
    notes: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def validate_transition_target(self) -> "UpdateReservationCommand":
        if self.status == ReservationStatus.PENDING:
            raise ValueError("A reservation cannot be moved back to PENDING")
        if self.status == ReservationStatus.READY and not self.copy_id:
            raise ValueError("copy_id is required to mark a reservation READY")
        return self


class ReservationQuery(PaginationParams):
    member_id: str | None = None
    material_id: str | None = None
    status: ReservationStatus | None = None


class HoldQueue(LedgerBase):
    """Reservation rows and the per-material FIFO queue."""

    def __init__(self, session, inventory: CopyInventory | None = None):
        super().__init__(session)
        self.inventory = inventory or CopyInventory(session)
        self.outbox = EventOutbox(session)

    # -- reads --------------------------------------------------------------

    def get(self, reservation_id: str) -> ReservationModel:
        return ReservationModel.model_validate(
            self._get_row(ReservationDB, reservation_id, "Reservation")
        )

    def lock(self, reservation_id: str) -> ReservationDB:
        return self._get_row(ReservationDB, reservation_id, "Reservation", for_update=True)

    def lock_material(self, material_id: str) -> MaterialDB:
        return self._get_row(MaterialDB, material_id, "Material", for_update=True)

    def queue(self, material_id: str) -> list[ReservationDB]:
        """PENDING reservations for a material in FIFO order."""
        query = (
            select(ReservationDB)
            .where(
                ReservationDB.material_id == material_id,
                ReservationDB.status == ReservationStatus.PENDING,
            )
            .order_by(ReservationDB.reservation_date, ReservationDB.sequence)
            .with_for_update()
        )
        return list(
            safe_query(
                self.session,
                lambda s: s.execute(query).scalars().all(),
                "Failed to read hold queue",
            )
        )

    def member_stats(self, member_id: str) -> ReservationStats:
        query = select(ReservationDB.status, ReservationDB.confirmed_at).where(
            ReservationDB.member_id == member_id
        )
        rows = safe_query(
            self.session,
            lambda s: s.execute(query).all(),
            "Failed to get member reservations",
        )
        ready = [confirmed for status, confirmed in rows if status == ReservationStatus.READY]
        return ReservationStats(
            active_reservations=sum(
                1 for status, _ in rows if status in ACTIVE_RESERVATION_STATUSES
            ),
            ready_for_pickup=len(ready),
            confirmed_pickup=sum(1 for confirmed in ready if confirmed is not None),
            total_reservations=len(rows),
        )

    def expiry_candidates(self, now: datetime) -> list[str]:
        """Ids of READY reservations whose pickup deadline has passed."""
        query = (
            select(ReservationDB.id)
            .where(
                ReservationDB.status == ReservationStatus.READY,
                ReservationDB.expiration_date < now,
            )
            .order_by(ReservationDB.expiration_date, ReservationDB.id)
        )
        return list(
            safe_query(
                self.session,
                lambda s: s.execute(query).scalars().all(),
                "Failed to find expired reservations",
            )
        )

    # -- writes -------------------------------------------------------------

    def create(
        self, command: CreateReservationCommand, config: LoanConfiguration, now: datetime
    ) -> ReservationModel:
        """
        Place a hold. READY immediately when a copy is on the shelf, else queued.

        Raises:
            NotFoundError: Unknown material
            ConflictError: Member already has an active hold on the material
        """
        self.lock_material(command.material_id)

        existing_query = select(ReservationDB.id).where(
            ReservationDB.member_id == command.member_id,
            ReservationDB.material_id == command.material_id,
            ReservationDB.status.in_(list(ACTIVE_RESERVATION_STATUSES)),
        )
        existing = safe_query(
            self.session,
            lambda s: s.execute(existing_query).first(),
            "Failed to check existing reservation",
        )
        if existing:
            raise ConflictError("Member already has an active reservation for this material")

        reservation = ReservationDB(
            id=new_id("reservation"),
            member_id=command.member_id,
            material_id=command.material_id,
            status=ReservationStatus.PENDING,
            reservation_date=now,
            sequence=self._next_sequence(command.material_id),
            notes=command.notes,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reservation)
        self.session.flush()

        # The head of the queue gets a shelved copy first; normally that is this hold
        if self.fulfill_next(command.material_id, config, now) is None:
            self.recompute_positions(command.material_id)
        if reservation.status == ReservationStatus.PENDING:
            logger.info(
                "Reservation %s queued at position %d for material %s",
                reservation.id,
                reservation.queue_position,
                command.material_id,
            )

        return ReservationModel.model_validate(reservation)

    def update_status(
        self,
        reservation_id: str,
        command: UpdateReservationCommand,
        config: LoanConfiguration,
        now: datetime,
    ) -> ReservationModel:
        """
        Apply a staff status change.

        Raises:
            InvalidStateError: Reservation already terminal, copy belongs to
                another material, or pickup without a READY hold
            ConflictError: Copy to bind is not available
        """
        reservation = self._lock_with_queue(reservation_id)
        self._ensure_not_terminal(reservation)

        if command.notes is not None:
            reservation.notes = command.notes

        if command.status == ReservationStatus.READY:
            self._bind_copy(reservation, command, config, now)
        elif command.status == ReservationStatus.PICKED_UP:
            self.pick_up(reservation, now)
        else:
            self._close(reservation, command.status, config, now)

        reservation.updated_at = now
        self.session.flush()
        return ReservationModel.model_validate(reservation)

    def pick_up(self, reservation: ReservationDB, now: datetime) -> ReservationDB:
        """Hand the bound copy of a READY hold to its member."""
        if reservation.status != ReservationStatus.READY or reservation.copy_id is None:
            raise InvalidStateError(
                f"Reservation {reservation.id} is not ready for pickup "
                f"(current status: {reservation.status.value})"
            )
        self.inventory.hand_off(reservation.copy_id)
        reservation.status = ReservationStatus.PICKED_UP
        reservation.picked_up_at = now
        reservation.updated_at = now
        self.session.flush()
        logger.info("Reservation %s picked up", reservation.id)
        return reservation

    def ready_hold_for_copy(self, copy_id: str) -> ReservationDB | None:
        """The READY reservation a RESERVED copy is being held for, if any."""
        query = (
            select(ReservationDB)
            .where(
                ReservationDB.copy_id == copy_id,
                ReservationDB.status == ReservationStatus.READY,
            )
            .with_for_update()
        )
        return safe_query(
            self.session,
            lambda s: s.execute(query).scalars().first(),
            "Failed to find hold for copy",
        )

    def confirm_pickup(self, reservation_id: str, member_id: str, now: datetime) -> ReservationModel:
        """Record that the member acknowledged a READY hold. Status is unchanged."""
        reservation = self.lock(reservation_id)
        if reservation.member_id != member_id:
            raise AuthorizationError("You can only confirm pickup for your own reservations")
        if reservation.status != ReservationStatus.READY:
            raise InvalidStateError(
                "Only reservations in READY status can be confirmed for pickup"
            )
        if reservation.confirmed_at is not None:
            raise InvalidStateError("Pickup has already been confirmed")

        reservation.confirmed_at = now
        reservation.updated_at = now
        self.session.flush()
        return ReservationModel.model_validate(reservation)

    def cancel(
        self, reservation_id: str, member_id: str, config: LoanConfiguration, now: datetime
    ) -> ReservationModel:
        """Member cancels their own PENDING or READY hold."""
        reservation = self._lock_with_queue(reservation_id)
        if reservation.member_id != member_id:
            raise AuthorizationError("You can only cancel your own reservations")
        self._ensure_not_terminal(reservation)

        self._close(reservation, ReservationStatus.CANCELLED, config, now)
        return ReservationModel.model_validate(reservation)

    def expire(self, reservation_id: str, config: LoanConfiguration, now: datetime) -> bool:
        """
        Expire one READY hold whose deadline has passed.

        Re-checks the row under lock, so a hold picked up or cancelled since
        it was selected is left alone. Returns True when the hold changed.
        """
        reservation = self._lock_with_queue(reservation_id)
        if (
            reservation.status != ReservationStatus.READY
            or reservation.expiration_date is None
            or reservation.expiration_date >= now
        ):
            return False
        self._close(reservation, ReservationStatus.EXPIRED, config, now)
        return True

    def fulfill_next(
        self,
        material_id: str,
        config: LoanConfiguration,
        now: datetime,
        copy_id: str | None = None,
    ) -> ReservationDB | None:
        """
        Make the head of the queue READY.

        Binds ``copy_id`` when given, otherwise the first AVAILABLE copy of
        the material. Returns the fulfilled reservation, or None when the
        queue is empty or no copy is available.
        """
        pending = self.queue(material_id)
        if not pending:
            return None

        if copy_id is None:
            copy = self.inventory.find_available(material_id)
            if copy is None:
                return None
            copy_id = copy.id

        head = pending[0]
        self._make_ready(head, copy_id, config, now)
        self.recompute_positions(material_id)
        return head

    def recompute_positions(self, material_id: str) -> None:
        """Renumber PENDING holds 1..n in FIFO order."""
        for position, reservation in enumerate(self.queue(material_id), start=1):
            if reservation.queue_position != position:
                reservation.queue_position = position
        self.session.flush()

    def list(self, query: ReservationQuery) -> PaginatedResponse[ReservationModel]:
        stmt = select(ReservationDB).order_by(
            ReservationDB.reservation_date.desc(), ReservationDB.sequence.desc()
        )
        if query.member_id:
            stmt = stmt.where(ReservationDB.member_id == query.member_id)
        if query.material_id:
            stmt = stmt.where(ReservationDB.material_id == query.material_id)
        if query.status:
            stmt = stmt.where(ReservationDB.status == query.status)
        return self._paginate(stmt, query, ReservationModel)

    # -- internals ------------------------------------------------------------

    def _lock_with_queue(self, reservation_id: str) -> ReservationDB:
        """Lock a reservation's material (the queue) and then the reservation."""
        material_id = self._get_row(ReservationDB, reservation_id, "Reservation").material_id
        self.lock_material(material_id)
        return self.lock(reservation_id)

    def _next_sequence(self, material_id: str) -> int:
        query = select(func.max(ReservationDB.sequence)).where(
            ReservationDB.material_id == material_id
        )
        current = safe_query(
            self.session,
            lambda s: s.execute(query).scalar(),
            "Failed to get reservation sequence",
        )
        return (current or 0) + 1

    def _make_ready(
        self,
        reservation: ReservationDB,
        copy_id: str,
        config: LoanConfiguration,
        now: datetime,
        expiration_date: datetime | None = None,
    ) -> None:
        self.inventory.claim(copy_id, CopyStatus.RESERVED)
        reservation.status = ReservationStatus.READY
        reservation.copy_id = copy_id
        reservation.queue_position = None
        reservation.expiration_date = expiration_date or now + timedelta(
            days=config.reservation_hold_days
        )
        reservation.updated_at = now
        self.session.flush()
        self.outbox.record(EventType.HOLD_READY, reservation.member_id, reservation.id)
        logger.info(
            "Reservation %s ready with copy %s until %s",
            reservation.id,
            copy_id,
            reservation.expiration_date.isoformat(),
        )

    def _bind_copy(
        self,
        reservation: ReservationDB,
        command: UpdateReservationCommand,
        config: LoanConfiguration,
        now: datetime,
    ) -> None:
        copy_id = command.copy_id
        if reservation.status == ReservationStatus.READY and reservation.copy_id == copy_id:
            # Same copy: only the deadline can move
            if command.expiration_date is not None:
                reservation.expiration_date = command.expiration_date
            return

        copy = self.inventory.lock(copy_id)
        if copy.material_id != reservation.material_id:
            raise InvalidStateError(
                f"Material copy {copy_id} does not belong to material {reservation.material_id}"
            )

        was_pending = reservation.status == ReservationStatus.PENDING
        previous_copy_id = reservation.copy_id
        if previous_copy_id is not None:
            self._release_held_copy(previous_copy_id)

        self._make_ready(reservation, copy_id, config, now, command.expiration_date)
        if was_pending:
            self.recompute_positions(reservation.material_id)
        if previous_copy_id is not None:
            self.fulfill_next(reservation.material_id, config, now)

    def _close(
        self,
        reservation: ReservationDB,
        target: ReservationStatus,
        config: LoanConfiguration,
        now: datetime,
    ) -> None:
        held_copy_id = (
            reservation.copy_id if reservation.status == ReservationStatus.READY else None
        )

        reservation.status = target
        reservation.queue_position = None
        if target == ReservationStatus.CANCELLED:
            reservation.cancelled_at = now
        reservation.updated_at = now
        self.session.flush()

        if held_copy_id is not None:
            self._release_held_copy(held_copy_id)

        self.recompute_positions(reservation.material_id)
        fulfilled = self.fulfill_next(reservation.material_id, config, now)
        logger.info(
            "Reservation %s %s%s",
            reservation.id,
            target.value.lower(),
            f"; reservation {fulfilled.id} now ready" if fulfilled else "",
        )

    def _release_held_copy(self, copy_id: str) -> None:
        copy = self.inventory.lock(copy_id)
        if copy.status == CopyStatus.RESERVED:
            self.inventory.release(copy_id)

    @staticmethod
    def _ensure_not_terminal(reservation: ReservationDB) -> None:
        if reservation.status in TERMINAL_RESERVATION_STATUSES:
            raise InvalidStateError(
                f"Cannot update a reservation that is already {reservation.status.value}"
            )
