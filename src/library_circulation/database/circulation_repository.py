"""
Circulation orchestrator for the Library Circulation server.

This is the entry point for every circulation operation that touches more
than one ledger:

1. **Checkout**: eligibility, copy claim and loan creation
2. **Return**: loan closure, fine assessment and hold fulfillment
3. **Renewal**: renewal rules and due date extension
4. **Holds**: placing, updating, confirming and cancelling reservations
5. **Stats**: a member's loan, fine and eligibility summary

Each method runs inside the caller's unit of work (see
``DatabaseManager.run_in_transaction``) and locks the rows it decides on, so
all of its effects commit together or not at all.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..eligibility import EligibilityPolicy
from ..exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
)
from ..models.circulation import (
    UNLOANABLE_CONDITIONS,
    AccountState,
    BorrowerState,
    CopyStatus,
    FineStatus,
    LoanConfiguration,
    LoanStatus,
    MemberLoanStats,
    ReturnOutcome,
)
from ..models.circulation import Fine as FineModel
from ..models.circulation import Loan as LoanModel
from ..models.circulation import Reservation as ReservationModel
from ..observability.context import trace_repository_operation
from .configuration_repository import LoanConfigurationStore
from .copy_repository import CopyInventory
from .fine_repository import CreateFineCommand, FineLedger, UpdateFineCommand
from .loan_repository import CheckoutCommand, LoanLedger, ReturnCommand
from .repository import current_time, naive_local
from .reservation_repository import (
    CreateReservationCommand,
    HoldQueue,
    UpdateReservationCommand,
)
from .schema import Material as MaterialDB
from .schema import Member as MemberDB
from .session import safe_query

logger = logging.getLogger(__name__)


class CirculationOrchestrator:
    """
    Coordinates copies, loans, holds and fines within one unit of work.

    The ledgers it composes share its session; none of them commits.
    """

    def __init__(self, session: Session):
        self.session = session
        self.inventory = CopyInventory(session)
        self.loans = LoanLedger(session)
        self.fines = FineLedger(session)
        self.holds = HoldQueue(session, self.inventory)
        self.configuration = LoanConfigurationStore(session)

    # =========================================================================
    # LOANS
    # =========================================================================

    def checkout(
        self, command: CheckoutCommand, processed_by_id: str, now: datetime | None = None
    ) -> LoanModel:
        """
        Lend a copy to a member.

        A copy RESERVED for this member's READY hold is also accepted; the
        hold is picked up as part of the checkout.

        Raises:
            NotFoundError: Unknown member or copy
            InvalidStateError: Member account is not ACTIVE
            ConflictError: Copy is not available to this member
            PolicyViolationError: Member is not eligible to borrow (all reasons)
        """
        with trace_repository_operation("circulation", "checkout", "loans"):
            now = now or current_time()
            loan_date = naive_local(command.loan_date) or now

            member = self._get_member(command.member_id, for_update=True)
            if member.account_state != AccountState.ACTIVE:
                raise InvalidStateError(
                    f"Member account is not active. Current state: {member.account_state.value}"
                )

            copy = self.inventory.lock(command.copy_id)
            if copy.condition in UNLOANABLE_CONDITIONS:
                raise ConflictError(
                    f"Material copy {copy.id} cannot circulate "
                    f"(condition: {copy.condition.value})"
                )

            pickup_hold = None
            if copy.status == CopyStatus.RESERVED:
                pickup_hold = self.holds.ready_hold_for_copy(copy.id)
                if pickup_hold is None or pickup_hold.member_id != member.id:
                    raise ConflictError(
                        f"Material copy {copy.id} is reserved for another member"
                    )
            elif copy.status != CopyStatus.AVAILABLE:
                raise ConflictError(
                    f"Material copy {copy.id} is not available "
                    f"(current status: {copy.status.value})"
                )

            config = self.configuration.get()
            decision = EligibilityPolicy(config).can_borrow(self._borrower_state(member))
            if not decision.allowed:
                raise PolicyViolationError(
                    f"Member {member.id} is not eligible to borrow", decision.reasons
                )

            loan_days = self._loan_days(copy.material_id, config)
            if pickup_hold is not None:
                self.holds.pick_up(pickup_hold, now)
            else:
                self.inventory.claim(copy.id, CopyStatus.BORROWED)

            loan = self.loans.create(
                member_id=member.id,
                copy_id=copy.id,
                processed_by_id=processed_by_id,
                loan_date=loan_date,
                due_date=loan_date + timedelta(days=loan_days),
                notes=command.notes,
            )
            logger.info(
                "Copy %s checked out to member %s as loan %s, due %s",
                copy.id,
                member.id,
                loan.id,
                loan.due_date.isoformat(),
            )
            return LoanModel.model_validate(loan)

    def return_loan(
        self, loan_id: str, command: ReturnCommand, now: datetime | None = None
    ) -> ReturnOutcome:
        """
        Close a loan, assess any late fine and pass the copy to the next hold.

        Raises:
            NotFoundError: Unknown loan
            InvalidStateError: Loan is not ACTIVE or OVERDUE
        """
        with trace_repository_operation("circulation", "return", "loans"):
            now = now or current_time()
            return_date = naive_local(command.return_date) or now

            loan = self.loans.lock(loan_id)
            self.loans.close(loan, return_date, command.notes)

            config = self.configuration.get()
            copy = self.inventory.lock(loan.copy_id)
            fulfilled = None

            if command.condition is not None:
                self.inventory.retire(copy.id, command.condition)
            else:
                self.inventory.release(copy.id)

            fine = self.fines.assess_overdue(loan, return_date, config)

            if command.condition is None:
                self.holds.lock_material(copy.material_id)
                fulfilled = self.holds.fulfill_next(copy.material_id, config, now, copy.id)

            logger.info(
                "Loan %s returned%s%s",
                loan.id,
                f" with fine {fine.amount:.2f}" if fine else "",
                f"; copy held for reservation {fulfilled.id}" if fulfilled else "",
            )
            return ReturnOutcome(
                loan=LoanModel.model_validate(loan),
                fine=fine,
                fulfilled_reservation=(
                    ReservationModel.model_validate(fulfilled) if fulfilled else None
                ),
            )

    def renew_loan(
        self,
        loan_id: str,
        now: datetime | None = None,
        *,
        member_id: str | None = None,
    ) -> LoanModel:
        """
        Extend a loan by its loan period, counted from the current due date.

        ``member_id`` restricts the renewal to the loan's owner.

        Raises:
            NotFoundError: Unknown loan
            AuthorizationError: ``member_id`` given and not the borrower
            InvalidStateError: Loan is RETURNED or CANCELLED
            PolicyViolationError: Renewal rules not met (all reasons)
        """
        with trace_repository_operation("circulation", "renew", "loans"):
            now = now or current_time()
            loan = self.loans.lock(loan_id)

            if member_id is not None and loan.member_id != member_id:
                raise AuthorizationError("You can only renew your own loans")
            if loan.status in (LoanStatus.RETURNED, LoanStatus.CANCELLED):
                raise InvalidStateError(
                    f"Loan is not active. Current status: {loan.status.value}"
                )

            config = self.configuration.get()
            unpaid = self.fines.member_stats(loan.member_id).unpaid_fines
            decision = EligibilityPolicy(config).can_renew(
                LoanModel.model_validate(loan), unpaid, now
            )
            if not decision.allowed:
                raise PolicyViolationError(f"Loan {loan.id} cannot be renewed", decision.reasons)

            copy = self.inventory.get(loan.copy_id)
            self.loans.extend(loan, self._loan_days(copy.material_id, config))
            logger.info(
                "Loan %s renewed (%d), now due %s",
                loan.id,
                loan.renewal_count,
                loan.due_date.isoformat(),
            )
            return LoanModel.model_validate(loan)

    def member_loan_stats(self, member_id: str) -> MemberLoanStats:
        """Loan counts, fine totals and current borrowing eligibility of a member."""
        with trace_repository_operation("circulation", "member_stats", "loans"):
            member = self._get_member(member_id)
            state = self._borrower_state(member)
            fine_stats = self.fines.member_stats(member.id)
            decision = EligibilityPolicy(self.configuration.get()).can_borrow(state)
            return MemberLoanStats(
                active_loans=state.active_loans,
                overdue_loans=state.overdue_loans,
                total_fines=fine_stats.total_fines,
                unpaid_fines=fine_stats.unpaid_fines,
                can_borrow=decision.allowed,
                reasons=decision.reasons,
            )

    # =========================================================================
    # FINES
    # =========================================================================

    def create_fine(self, command: CreateFineCommand, issued_by_id: str) -> FineModel:
        with trace_repository_operation("circulation", "create_fine", "fines"):
            fine = self.fines.create(command, issued_by_id)
            logger.info("Fine %s of %.2f issued on loan %s", fine.id, fine.amount, fine.loan_id)
            return fine

    def update_fine(self, fine_id: str, command: UpdateFineCommand) -> FineModel:
        with trace_repository_operation("circulation", "update_fine", "fines"):
            fine = self.fines.update(
                fine_id,
                command.model_copy(update={"paid_date": naive_local(command.paid_date)}),
            )
            if fine.status != FineStatus.PENDING:
                logger.info("Fine %s is now %s", fine.id, fine.status.value)
            return fine

    # =========================================================================
    # HOLDS
    # =========================================================================

    def create_hold(
        self, command: CreateReservationCommand, now: datetime | None = None
    ) -> ReservationModel:
        """
        Place a hold for a member.

        Raises:
            NotFoundError: Unknown member or material
            ConflictError: Member already holds this material
        """
        with trace_repository_operation("circulation", "create_hold", "reservations"):
            self._get_member(command.member_id)
            return self.holds.create(command, self.configuration.get(), now or current_time())

    def update_hold_status(
        self,
        reservation_id: str,
        command: UpdateReservationCommand,
        now: datetime | None = None,
    ) -> ReservationModel:
        with trace_repository_operation("circulation", "update_hold", "reservations"):
            return self.holds.update_status(
                reservation_id,
                command.model_copy(
                    update={"expiration_date": naive_local(command.expiration_date)}
                ),
                self.configuration.get(),
                now or current_time(),
            )

    def confirm_pickup(
        self, reservation_id: str, member_id: str, now: datetime | None = None
    ) -> ReservationModel:
        with trace_repository_operation("circulation", "confirm_pickup", "reservations"):
            return self.holds.confirm_pickup(reservation_id, member_id, now or current_time())

    def cancel_hold(
        self, reservation_id: str, member_id: str, now: datetime | None = None
    ) -> ReservationModel:
        """
        Cancel a member's own PENDING or READY hold.

        A held copy goes back to the shelf or straight to the next hold.
        """
        with trace_repository_operation("circulation", "cancel_hold", "reservations"):
            return self.holds.cancel(
                reservation_id, member_id, self.configuration.get(), now or current_time()
            )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _get_member(self, member_id: str, *, for_update: bool = False) -> MemberDB:
        query = select(MemberDB).where(MemberDB.id == member_id)
        if for_update:
            query = query.with_for_update()
        member = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to get member",
        )
        if member is None:
            raise NotFoundError(f"Member {member_id} not found")
        return member

    def _borrower_state(self, member: MemberDB) -> BorrowerState:
        counts = self.loans.count_by_status(member.id)
        return BorrowerState(
            account_state=member.account_state,
            conditions=member.conditions or [],
            active_loans=counts[LoanStatus.ACTIVE],
            overdue_loans=counts[LoanStatus.OVERDUE],
            unpaid_fines=self.fines.member_stats(member.id).unpaid_fines,
        )

    def _loan_days(self, material_id: str, config: LoanConfiguration) -> int:
        material = self.session.get(MaterialDB, material_id)
        if material is not None and material.max_loan_days:
            return material.max_loan_days
        return config.default_loan_days
