"""
Fine ledger for the Library Circulation server.

Fines are created by the return path when a loan comes back past its due
date (beyond the grace period), or manually by staff. A PENDING fine becomes
PAID automatically once its paid amount covers it; WAIVED is an explicit
staff decision. PAID and WAIVED are terminal.
"""

import logging
import math
from datetime import datetime, timedelta

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select

from ..exceptions import InvalidStateError
from ..models.circulation import EventType, FineStats, FineStatus, LoanConfiguration
from ..models.circulation import Fine as FineModel
from .event_repository import EventOutbox
from .repository import LedgerBase, PaginatedResponse, PaginationParams, current_time, new_id
from .schema import Fine as FineDB
from .schema import Loan as LoanDB
from .session import safe_query

logger = logging.getLogger(__name__)

LATE_RETURN_REASON = "Late return"


def calculate_overdue_fine(
    due_date: datetime,
    return_date: datetime,
    daily_fine_amount: float,
    grace_period_days: int,
) -> float:
    """
    Fine owed for a loan returned at ``return_date``.

    Any part of a day late counts as a whole day; the grace period is
    subtracted from the days late before the daily amount is applied.

    >>> calculate_overdue_fine(datetime(2024, 1, 1), datetime(2024, 1, 11), 1.5, 2)
    12.0
    """
    if return_date <= due_date:
        return 0.0
    days_overdue = math.ceil((return_date - due_date) / timedelta(days=1))
    billable_days = max(0, days_overdue - grace_period_days)
    return round(billable_days * daily_fine_amount, 2)


class CreateFineCommand(BaseModel):
    """Staff-issued fine against a loan."""

    loan_id: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0.0)
    reason: str = Field(..., min_length=1, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)


class UpdateFineCommand(BaseModel):
    """
    Payment or status change for a fine.

    ``paid_amount`` is the total paid so far, not an increment.
    """

    paid_amount: float | None = Field(default=None, ge=0.0)
    status: FineStatus | None = None
    paid_date: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def validate_has_changes(self) -> "UpdateFineCommand":
        if self.paid_amount is None and self.status is None and self.notes is None:
            raise ValueError("At least one of paid_amount, status or notes must be provided")
        if self.status == FineStatus.WAIVED and self.paid_amount is not None:
            raise ValueError("A waived fine cannot also record a payment")
        return self


class FineQuery(PaginationParams):
    member_id: str | None = None
    loan_id: str | None = None
    status: FineStatus | None = None


class FineLedger(LedgerBase):
    """Fine rows, the overdue formula and payments."""

    def get(self, fine_id: str) -> FineModel:
        return FineModel.model_validate(self._get_row(FineDB, fine_id, "Fine"))

    def create(self, command: CreateFineCommand, issued_by_id: str) -> FineModel:
        loan = self._get_row(LoanDB, command.loan_id, "Loan")
        fine = self._insert(
            loan,
            amount=round(command.amount, 2),
            reason=command.reason,
            issued_by_id=issued_by_id,
            notes=command.notes,
        )
        return FineModel.model_validate(fine)

    def assess_overdue(
        self, loan: LoanDB, return_date: datetime, config: LoanConfiguration
    ) -> FineModel | None:
        """Issue a late-return fine for ``loan`` if one is owed; None otherwise."""
        amount = calculate_overdue_fine(
            loan.due_date, return_date, config.daily_fine_amount, config.grace_period_days
        )
        if amount <= 0:
            return None

        fine = self._insert(
            loan,
            amount=amount,
            reason=LATE_RETURN_REASON,
            issued_by_id=loan.processed_by_id,
        )
        logger.info("Late return fine %.2f issued for loan %s", amount, loan.id)
        return FineModel.model_validate(fine)

    def update(self, fine_id: str, command: UpdateFineCommand) -> FineModel:
        fine = self._lock_pending(fine_id)

        if command.notes is not None:
            fine.notes = command.notes

        if command.status == FineStatus.WAIVED:
            return self._waive(fine)

        if command.paid_amount is not None:
            self._apply_payment(fine, command.paid_amount, command.paid_date)

        if command.status == FineStatus.PAID and fine.status != FineStatus.PAID:
            raise InvalidStateError(
                f"Fine {fine_id} cannot be marked PAID: "
                f"{fine.paid_amount:.2f} of {fine.amount:.2f} paid"
            )

        fine.updated_at = current_time()
        self.session.flush()
        return FineModel.model_validate(fine)

    def record_payment(
        self,
        fine_id: str,
        paid_amount: float,
        paid_date: datetime | None = None,
        notes: str | None = None,
    ) -> FineModel:
        return self.update(
            fine_id, UpdateFineCommand(paid_amount=paid_amount, paid_date=paid_date, notes=notes)
        )

    def waive(self, fine_id: str, notes: str | None = None) -> FineModel:
        return self.update(fine_id, UpdateFineCommand(status=FineStatus.WAIVED, notes=notes))

    def member_stats(self, member_id: str) -> FineStats:
        """Totals over all of a member's fines; unpaid counts PENDING balances only."""
        query = select(FineDB).join(LoanDB, FineDB.loan_id == LoanDB.id).where(
            LoanDB.member_id == member_id
        )
        fines = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to get member fines",
        )
        total = sum(fine.amount for fine in fines)
        unpaid = sum(
            fine.amount - fine.paid_amount for fine in fines if fine.status == FineStatus.PENDING
        )
        return FineStats(
            total_fines=round(total, 2), unpaid_fines=round(unpaid, 2), fine_count=len(fines)
        )

    def list(self, query: FineQuery) -> PaginatedResponse[FineModel]:
        stmt = select(FineDB).order_by(FineDB.created_at.desc(), FineDB.id)
        if query.member_id:
            stmt = stmt.join(LoanDB, FineDB.loan_id == LoanDB.id).where(
                LoanDB.member_id == query.member_id
            )
        if query.loan_id:
            stmt = stmt.where(FineDB.loan_id == query.loan_id)
        if query.status:
            stmt = stmt.where(FineDB.status == query.status)
        return self._paginate(stmt, query, FineModel)

    # -- internals ---------------------------------------------------------

    def _insert(
        self,
        loan: LoanDB,
        *,
        amount: float,
        reason: str,
        issued_by_id: str,
        notes: str | None = None,
    ) -> FineDB:
        now = current_time()
        fine = FineDB(
            id=new_id("fine"),
            loan_id=loan.id,
            issued_by_id=issued_by_id,
            amount=amount,
            paid_amount=0.0,
            status=FineStatus.PENDING,
            reason=reason,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        self.session.add(fine)
        self.session.flush()
        EventOutbox(self.session).record(EventType.FINE_ISSUED, loan.member_id, fine.id)
        return fine

    def _lock_pending(self, fine_id: str) -> FineDB:
        fine = self._get_row(FineDB, fine_id, "Fine", for_update=True)
        if fine.status != FineStatus.PENDING:
            raise InvalidStateError(
                f"Fine {fine_id} is already {fine.status.value} and cannot be changed"
            )
        return fine

    def _apply_payment(self, fine: FineDB, paid_amount: float, paid_date: datetime | None) -> None:
        if paid_amount < fine.paid_amount:
            raise InvalidStateError(
                f"Fine {fine.id} already has {fine.paid_amount:.2f} paid; "
                f"paid_amount is a running total and cannot drop to {paid_amount:.2f}"
            )
        fine.paid_amount = round(min(paid_amount, fine.amount), 2)
        if paid_amount >= fine.amount:
            fine.status = FineStatus.PAID
            fine.paid_date = paid_date or current_time()
            logger.info("Fine %s paid in full", fine.id)

    def _waive(self, fine: FineDB) -> FineModel:
        fine.status = FineStatus.WAIVED
        fine.updated_at = current_time()
        self.session.flush()
        logger.info("Fine %s waived", fine.id)
        return FineModel.model_validate(fine)
