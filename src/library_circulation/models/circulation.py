"""
Circulation models for the Library Circulation server.

These models represent the state the circulation engine reads and writes:
- MaterialCopy: a physical, lendable copy of a catalog material
- Loan: a copy lent to a member
- Reservation: a member's place in a material's hold queue
- Fine: the monetary consequence of a late return
- LoanConfiguration: the singleton circulation policy

They are the read models returned by the ledgers and serialized by the MCP
tools. The SQLAlchemy tables in ``database.schema`` share the enums defined
here so that the database and the wire format use the same status values.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CopyStatus(str, Enum):
    """Availability of a material copy."""

    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    RESERVED = "RESERVED"
    UNDER_REPAIR = "UNDER_REPAIR"
    REMOVED = "REMOVED"


class CopyCondition(str, Enum):
    """Physical condition of a material copy."""

    NEW = "NEW"
    GOOD = "GOOD"
    FAIR = "FAIR"
    DAMAGED = "DAMAGED"
    LOST = "LOST"


UNLOANABLE_CONDITIONS = frozenset({CopyCondition.DAMAGED, CopyCondition.LOST})


class LoanStatus(str, Enum):
    """Lifecycle state of a loan."""

    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"


OPEN_LOAN_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})


class ReservationStatus(str, Enum):
    """Lifecycle state of a reservation (hold)."""

    PENDING = "PENDING"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


ACTIVE_RESERVATION_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.READY})
TERMINAL_RESERVATION_STATUSES = frozenset(
    {ReservationStatus.PICKED_UP, ReservationStatus.EXPIRED, ReservationStatus.CANCELLED}
)


class FineStatus(str, Enum):
    """Payment state of a fine."""

    PENDING = "PENDING"
    PAID = "PAID"
    WAIVED = "WAIVED"


class AccountState(str, Enum):
    """Account state of a member, owned by the membership system."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class MemberCondition(str, Enum):
    """Flags on a member account that may independently block borrowing."""

    HAS_LATE_RETURN = "HAS_LATE_RETURN"
    HAS_FINE = "HAS_FINE"
    LOST_COPY = "LOST_COPY"


class EventType(str, Enum):
    """Notification events written to the circulation outbox."""

    HOLD_READY = "HOLD_READY"
    FINE_ISSUED = "FINE_ISSUED"


# =============================================================================
# READ MODELS
# =============================================================================


class MaterialCopy(BaseModel):
    """A physical copy of a catalog material."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    material_id: str
    status: CopyStatus = CopyStatus.AVAILABLE
    condition: CopyCondition = CopyCondition.GOOD

    @property
    def is_loanable(self) -> bool:
        return self.condition not in UNLOANABLE_CONDITIONS


class Loan(BaseModel):
    """
    A copy lent to a member.

    A loan is immutable once it reaches RETURNED or CANCELLED.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    member_id: str
    copy_id: str
    processed_by_id: str
    loan_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    renewal_count: int = Field(default=0, ge=0)
    status: LoanStatus = LoanStatus.ACTIVE
    notes: str | None = None

    @model_validator(mode="after")
    def validate_dates(self) -> "Loan":
        if self.due_date < self.loan_date:
            raise ValueError("Due date cannot be before loan date")
        if self.return_date is not None and self.return_date < self.loan_date:
            raise ValueError("Return date cannot be before loan date")
        return self

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES

    def is_past_due(self, now: datetime) -> bool:
        """Whether the due date has passed at ``now``, regardless of status."""
        return self.is_open and self.due_date < now


class Reservation(BaseModel):
    """
    A member's hold on a material.

    Only PENDING reservations carry a queue position; READY reservations
    carry the bound copy and the pickup deadline instead.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    member_id: str
    material_id: str
    copy_id: str | None = None
    status: ReservationStatus = ReservationStatus.PENDING
    reservation_date: datetime
    sequence: int
    queue_position: int | None = Field(default=None, ge=1)
    expiration_date: datetime | None = None
    confirmed_at: datetime | None = None
    picked_up_at: datetime | None = None
    cancelled_at: datetime | None = None
    notes: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RESERVATION_STATUSES


class Fine(BaseModel):
    """A fine issued against a loan."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    loan_id: str
    issued_by_id: str
    amount: float = Field(ge=0.0)
    paid_amount: float = Field(default=0.0, ge=0.0)
    status: FineStatus = FineStatus.PENDING
    reason: str
    paid_date: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None

    @property
    def outstanding(self) -> float:
        """Amount still owed; zero unless the fine is PENDING."""
        if self.status != FineStatus.PENDING:
            return 0.0
        return max(0.0, self.amount - self.paid_amount)


class LoanConfiguration(BaseModel):
    """The singleton circulation policy."""

    model_config = ConfigDict(from_attributes=True)

    default_loan_days: int = Field(default=14, ge=1)
    max_active_loans: int = Field(default=5, ge=0)
    max_renewals: int = Field(default=2, ge=0)
    grace_period_days: int = Field(default=0, ge=0)
    daily_fine_amount: float = Field(default=1.0, ge=0.0)
    allow_loans_with_fines: bool = False
    reservation_hold_days: int = Field(default=7, ge=1)
    updated_at: datetime | None = None


class MemberSnapshot(BaseModel):
    """Read-only view of a member, owned by the membership system."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str | None = None
    account_state: AccountState = AccountState.ACTIVE
    conditions: list[MemberCondition] = Field(default_factory=list)


class CirculationEvent(BaseModel):
    """A notification waiting in the outbox for an external delivery service."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: EventType
    member_id: str
    subject_id: str
    created_at: datetime
    delivered_at: datetime | None = None


# =============================================================================
# DERIVED VIEWS
# =============================================================================


class BorrowerState(BaseModel):
    """Everything the eligibility policy needs to know about a borrower."""

    account_state: AccountState
    conditions: list[MemberCondition] = Field(default_factory=list)
    active_loans: int = 0
    overdue_loans: int = 0
    unpaid_fines: float = 0.0


class EligibilityDecision(BaseModel):
    """Outcome of an eligibility check. Lists every failing reason."""

    allowed: bool
    reasons: list[str] = Field(default_factory=list)


class FineStats(BaseModel):
    total_fines: float = 0.0
    unpaid_fines: float = 0.0
    fine_count: int = 0


class MemberLoanStats(BaseModel):
    active_loans: int
    overdue_loans: int
    total_fines: float
    unpaid_fines: float
    can_borrow: bool
    reasons: list[str] = Field(default_factory=list)


class ReservationStats(BaseModel):
    active_reservations: int = 0
    ready_for_pickup: int = 0
    confirmed_pickup: int = 0
    total_reservations: int = 0


class ReturnOutcome(BaseModel):
    """Everything that changed when a loan was returned."""

    loan: Loan
    fine: Fine | None = None
    fulfilled_reservation: Reservation | None = None


class SweepResult(BaseModel):
    """Result of a batch sweep. Failed rows do not abort the sweep."""

    updated: int = 0
    ids: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)
