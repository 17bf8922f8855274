"""
Borrowing and renewal eligibility.

EligibilityPolicy is pure: it is handed snapshots of the member's loan and
fine state plus the current LoanConfiguration and returns a decision. Every
check runs and every failing reason is reported, so a member can be told all
of their blockers at once.
"""

from datetime import datetime

from .models.circulation import (
    AccountState,
    BorrowerState,
    EligibilityDecision,
    Loan,
    LoanConfiguration,
    LoanStatus,
    MemberCondition,
)

OVERDUE_RENEWAL_REASON = "Cannot renew an overdue loan. Please return the item first."


def format_amount(amount: float) -> str:
    return f"${amount:.2f}"


class EligibilityPolicy:
    """Evaluates borrowing and renewal rules against a LoanConfiguration."""

    def __init__(self, config: LoanConfiguration):
        self.config = config

    def can_borrow(self, state: BorrowerState) -> EligibilityDecision:
        """
        Decide whether a member may take out another loan.

        Checks, in order:
        1. Account suspended
        2. Active loans at or above ``max_active_loans``
        3. Any overdue loan
        4. Unpaid fines, unless ``allow_loans_with_fines``
        5. An unresolved lost copy on the member's record
        """
        reasons: list[str] = []

        if state.account_state == AccountState.SUSPENDED:
            reasons.append("Member account is suspended")

        if state.active_loans >= self.config.max_active_loans:
            reasons.append(f"Maximum active loans reached ({self.config.max_active_loans})")

        if state.overdue_loans > 0:
            reasons.append(f"Has {state.overdue_loans} overdue loan(s)")

        if not self.config.allow_loans_with_fines and state.unpaid_fines > 0:
            reasons.append(f"Has unpaid fines ({format_amount(state.unpaid_fines)})")

        if MemberCondition.LOST_COPY in state.conditions:
            reasons.append("Member has an unresolved lost copy")

        return EligibilityDecision(allowed=not reasons, reasons=reasons)

    def can_renew(self, loan: Loan, unpaid_fines: float, now: datetime) -> EligibilityDecision:
        """
        Decide whether a loan may be renewed at ``now``.

        Only an ACTIVE loan that is not past due, has renewals left and whose
        member has no blocking fines can be renewed.
        """
        reasons: list[str] = []

        if loan.status == LoanStatus.OVERDUE or (
            loan.status == LoanStatus.ACTIVE and now > loan.due_date
        ):
            reasons.append(OVERDUE_RENEWAL_REASON)
        elif loan.status != LoanStatus.ACTIVE:
            reasons.append(f"Loan is not active. Current status: {loan.status.value}")

        if loan.renewal_count >= self.config.max_renewals:
            reasons.append(
                f"Loan has reached maximum number of renewals ({self.config.max_renewals})"
            )

        if not self.config.allow_loans_with_fines and unpaid_fines > 0:
            reasons.append(
                f"Member has unpaid fines totaling {format_amount(unpaid_fines)}. "
                "Please pay fines before renewing."
            )

        return EligibilityDecision(allowed=not reasons, reasons=reasons)
