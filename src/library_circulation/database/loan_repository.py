"""
Loan ledger for the Library Circulation server.

LoanLedger owns loan rows and their transitions:

    ACTIVE --overdue sweep--> OVERDUE
    ACTIVE | OVERDUE --return--> RETURNED
    ACTIVE --renew--> ACTIVE (due date extended, renewal_count + 1)

RETURNED and CANCELLED loans are never modified again. The ledger does not
decide *whether* a transition is allowed by policy; that is the orchestrator's
job with the help of EligibilityPolicy.
"""

import logging
from datetime import datetime, timedelta

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, select

from ..exceptions import InvalidStateError
from ..models.circulation import (
    OPEN_LOAN_STATUSES,
    UNLOANABLE_CONDITIONS,
    CopyCondition,
    LoanStatus,
)
from ..models.circulation import Loan as LoanModel
from .repository import LedgerBase, PaginatedResponse, PaginationParams, current_time, new_id
from .schema import Loan as LoanDB
from .session import safe_query

logger = logging.getLogger(__name__)


class CheckoutCommand(BaseModel):
    """Lend a copy to a member."""

    member_id: str = Field(..., min_length=1, description="Member borrowing the copy")
    copy_id: str = Field(..., min_length=1, description="Copy being lent")
    loan_date: datetime | None = Field(
        default=None, description="When the loan starts; defaults to now"
    )
    notes: str | None = Field(default=None, max_length=1000)


class ReturnCommand(BaseModel):
    """Close a loan. A DAMAGED or LOST condition takes the copy out of circulation."""

    return_date: datetime | None = Field(
        default=None, description="When the copy came back; defaults to now"
    )
    condition: CopyCondition | None = Field(
        default=None, description="Only DAMAGED or LOST are recorded at return"
    )
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v: CopyCondition | None) -> CopyCondition | None:
        if v is not None and v not in UNLOANABLE_CONDITIONS:
            raise ValueError("Return condition must be DAMAGED or LOST when provided")
        return v


class LoanQuery(PaginationParams):
    member_id: str | None = None
    status: LoanStatus | None = None
    overdue: bool | None = Field(
        default=None, description="True: ACTIVE loans already past their due date"
    )


class LoanLedger(LedgerBase):
    """Loan rows and their lifecycle transitions."""

    def lock(self, loan_id: str) -> LoanDB:
        return self._get_row(LoanDB, loan_id, "Loan", for_update=True)

    def get(self, loan_id: str) -> LoanModel:
        return LoanModel.model_validate(self._get_row(LoanDB, loan_id, "Loan"))

    def create(
        self,
        *,
        member_id: str,
        copy_id: str,
        processed_by_id: str,
        loan_date: datetime,
        due_date: datetime,
        notes: str | None = None,
    ) -> LoanDB:
        loan = LoanDB(
            id=new_id("loan"),
            member_id=member_id,
            copy_id=copy_id,
            processed_by_id=processed_by_id,
            loan_date=loan_date,
            due_date=due_date,
            renewal_count=0,
            status=LoanStatus.ACTIVE,
            notes=notes,
            created_at=loan_date,
            updated_at=loan_date,
        )
        self.session.add(loan)
        self.session.flush()
        logger.debug("Loan %s created for copy %s", loan.id, copy_id)
        return loan

    def close(self, loan: LoanDB, return_date: datetime, notes: str | None = None) -> LoanDB:
        """
        Mark an open loan RETURNED.

        Raises:
            InvalidStateError: Loan is not ACTIVE or OVERDUE, or the return
                date is before the loan date
        """
        self._ensure_open(loan, "returned")
        if return_date < loan.loan_date:
            raise InvalidStateError(
                f"Return date {return_date.isoformat()} is before loan date "
                f"{loan.loan_date.isoformat()}"
            )

        loan.status = LoanStatus.RETURNED
        loan.return_date = return_date
        if notes:
            loan.notes = f"{loan.notes}\n{notes}" if loan.notes else notes
        loan.updated_at = current_time()
        self.session.flush()
        return loan

    def extend(self, loan: LoanDB, loan_days: int) -> LoanDB:
        """Push the due date out by ``loan_days`` from the current due date."""
        loan.due_date = loan.due_date + timedelta(days=loan_days)
        loan.renewal_count += 1
        loan.updated_at = current_time()
        self.session.flush()
        return loan

    def mark_overdue(self, loan_id: str, now: datetime) -> bool:
        """
        Flip one ACTIVE, past-due loan to OVERDUE.

        Re-reads the row under lock, so a loan returned or renewed since it
        was selected is left alone. Returns True when the loan changed.
        """
        loan = self.lock(loan_id)
        if loan.status != LoanStatus.ACTIVE or loan.due_date >= now:
            return False
        loan.status = LoanStatus.OVERDUE
        loan.updated_at = now
        self.session.flush()
        return True

    def overdue_candidates(self, now: datetime) -> list[str]:
        """Ids of ACTIVE loans whose due date has passed, oldest due first."""
        query = (
            select(LoanDB.id)
            .where(LoanDB.status == LoanStatus.ACTIVE, LoanDB.due_date < now)
            .order_by(LoanDB.due_date, LoanDB.id)
        )
        return list(
            safe_query(
                self.session,
                lambda s: s.execute(query).scalars().all(),
                "Failed to find overdue loans",
            )
        )

    def count_by_status(self, member_id: str) -> dict[LoanStatus, int]:
        query = (
            select(LoanDB.status, func.count())
            .where(LoanDB.member_id == member_id, LoanDB.status.in_(list(OPEN_LOAN_STATUSES)))
            .group_by(LoanDB.status)
        )
        rows = safe_query(
            self.session,
            lambda s: s.execute(query).all(),
            "Failed to count member loans",
        )
        counts = dict.fromkeys(OPEN_LOAN_STATUSES, 0)
        counts.update({status: count for status, count in rows})
        return counts

    def list(self, query: LoanQuery) -> PaginatedResponse[LoanModel]:
        stmt = select(LoanDB).order_by(LoanDB.loan_date.desc(), LoanDB.id)
        if query.member_id:
            stmt = stmt.where(LoanDB.member_id == query.member_id)
        if query.status:
            stmt = stmt.where(LoanDB.status == query.status)
        if query.overdue is True:
            stmt = stmt.where(LoanDB.status == LoanStatus.ACTIVE, LoanDB.due_date < current_time())
        elif query.overdue is False:
            stmt = stmt.where(
                ~(LoanDB.status == LoanStatus.ACTIVE) | (LoanDB.due_date >= current_time())
            )
        return self._paginate(stmt, query, LoanModel)

    @staticmethod
    def _ensure_open(loan: LoanDB, action: str) -> None:
        if loan.status not in OPEN_LOAN_STATUSES:
            raise InvalidStateError(
                f"Loan {loan.id} cannot be {action}. Current status: {loan.status.value}"
            )
