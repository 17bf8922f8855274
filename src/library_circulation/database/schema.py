"""
SQLAlchemy database schema for the Library Circulation server.

This module defines the tables that mirror the Pydantic models in
``models.circulation``. The circulation engine owns the copy, loan,
reservation, fine, configuration and event tables; the material and member
tables are rows maintained by the catalog and membership systems and are only
read here (the material row doubles as the hold-queue lock).

Integrity constraints that concurrent transactions must not be able to break
are enforced by the database as well as by the ledgers:
1. At most one open (ACTIVE/OVERDUE) loan per copy
2. At most one active (PENDING/READY) reservation per member and material
3. Non-negative counters and amounts
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.sql import func

from ..models.circulation import (
    AccountState,
    CopyCondition,
    CopyStatus,
    EventType,
    FineStatus,
    LoanStatus,
    ReservationStatus,
)

# Base class for all SQLAlchemy models
Base = declarative_base()

CONFIGURATION_ROW_ID = 1

_OPEN_LOAN_CLAUSE = "status IN ('ACTIVE', 'OVERDUE')"
_ACTIVE_RESERVATION_CLAUSE = "status IN ('PENDING', 'READY')"


class Material(Base):
    """
    Materials table - catalog titles owned by the catalog system.

    Circulation reads ``max_loan_days`` for due date calculation and locks the
    row to serialize changes to the material's hold queue.
    """

    __tablename__ = "materials"

    id = Column(String(50), primary_key=True)
    title = Column(String(500), nullable=False)
    max_loan_days = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    copies = relationship("MaterialCopy", back_populates="material")
    reservations = relationship("Reservation", back_populates="material")

    __table_args__ = (
        CheckConstraint(
            "max_loan_days IS NULL OR max_loan_days > 0", name="check_max_loan_days_positive"
        ),
    )


class Member(Base):
    """Members table - read-only snapshot of accounts owned by the membership system."""

    __tablename__ = "members"

    id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=True)
    account_state = Column(Enum(AccountState), nullable=False, default=AccountState.ACTIVE)
    # List of MemberCondition values
    conditions = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    loans = relationship("Loan", back_populates="member")
    reservations = relationship("Reservation", back_populates="member")

    __table_args__ = (Index("idx_member_account_state", "account_state"),)


class MaterialCopy(Base):
    """
    Material copies table - the physical, lendable items.

    Status transitions are owned by CopyInventory; nothing else writes them.
    """

    __tablename__ = "material_copies"

    id = Column(String(50), primary_key=True)
    material_id = Column(String(50), ForeignKey("materials.id"), nullable=False)
    status = Column(Enum(CopyStatus), nullable=False, default=CopyStatus.AVAILABLE)
    condition = Column(Enum(CopyCondition), nullable=False, default=CopyCondition.GOOD)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    material = relationship("Material", back_populates="copies")
    loans = relationship("Loan", back_populates="copy")

    __table_args__ = (
        Index("idx_copy_material_status", "material_id", "status"),
    )


class Loan(Base):
    """
    Loans table - a copy lent to a member.

    The partial unique index on ``copy_id`` guarantees copy exclusivity even
    if two transactions race past the application-level checks.
    """

    __tablename__ = "loans"

    id = Column(String(50), primary_key=True)
    member_id = Column(String(50), ForeignKey("members.id"), nullable=False)
    copy_id = Column(String(50), ForeignKey("material_copies.id"), nullable=False)
    processed_by_id = Column(String(50), nullable=False)
    loan_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)
    status = Column(Enum(LoanStatus), nullable=False, default=LoanStatus.ACTIVE)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    member = relationship("Member", back_populates="loans")
    copy = relationship("MaterialCopy", back_populates="loans")
    fines = relationship("Fine", back_populates="loan")

    __table_args__ = (
        Index("idx_loan_member_status", "member_id", "status"),
        Index("idx_loan_status_due_date", "status", "due_date"),
        Index(
            "uq_loan_open_copy",
            "copy_id",
            unique=True,
            sqlite_where=text(_OPEN_LOAN_CLAUSE),
            postgresql_where=text(_OPEN_LOAN_CLAUSE),
        ),
        CheckConstraint("renewal_count >= 0", name="check_renewal_count_non_negative"),
        CheckConstraint("due_date >= loan_date", name="check_due_after_loan"),
    )


class Reservation(Base):
    """
    Reservations table - a member's place in a material's hold queue.

    ``queue_position`` is only set while PENDING and is always a contiguous
    1..n sequence ordered by ``(reservation_date, sequence)``.
    """

    __tablename__ = "reservations"

    id = Column(String(50), primary_key=True)
    member_id = Column(String(50), ForeignKey("members.id"), nullable=False)
    material_id = Column(String(50), ForeignKey("materials.id"), nullable=False)
    copy_id = Column(String(50), ForeignKey("material_copies.id"), nullable=True)
    status = Column(Enum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING)
    reservation_date = Column(DateTime, nullable=False)
    sequence = Column(Integer, nullable=False)
    queue_position = Column(Integer, nullable=True)
    expiration_date = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    member = relationship("Member", back_populates="reservations")
    material = relationship("Material", back_populates="reservations")
    copy = relationship("MaterialCopy")

    __table_args__ = (
        Index("idx_reservation_member", "member_id"),
        Index("idx_reservation_queue", "material_id", "status", "reservation_date", "sequence"),
        Index(
            "uq_reservation_active_member_material",
            "member_id",
            "material_id",
            unique=True,
            sqlite_where=text(_ACTIVE_RESERVATION_CLAUSE),
            postgresql_where=text(_ACTIVE_RESERVATION_CLAUSE),
        ),
        CheckConstraint(
            "queue_position IS NULL OR queue_position > 0", name="check_queue_position_positive"
        ),
    )


class Fine(Base):
    """Fines table - monetary consequences of late returns or manual staff charges."""

    __tablename__ = "fines"

    id = Column(String(50), primary_key=True)
    loan_id = Column(String(50), ForeignKey("loans.id"), nullable=False)
    issued_by_id = Column(String(50), nullable=False)
    amount = Column(Float, nullable=False)
    paid_amount = Column(Float, nullable=False, default=0.0)
    status = Column(Enum(FineStatus), nullable=False, default=FineStatus.PENDING)
    reason = Column(String(500), nullable=False)
    paid_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    loan = relationship("Loan", back_populates="fines")

    __table_args__ = (
        Index("idx_fine_loan", "loan_id"),
        Index("idx_fine_status", "status"),
        CheckConstraint("amount >= 0", name="check_fine_amount_non_negative"),
        CheckConstraint("paid_amount >= 0", name="check_paid_amount_non_negative"),
        CheckConstraint("paid_amount <= amount", name="check_paid_not_exceed_amount"),
    )

    @validates("amount", "paid_amount")
    def validate_non_negative(self, key, value):
        if value is not None and value < 0:
            raise ValueError(f"{key} cannot be negative")
        return value


class LoanConfiguration(Base):
    """Loan configuration table - a single row holding the circulation policy."""

    __tablename__ = "loan_configuration"

    id = Column(Integer, primary_key=True, default=CONFIGURATION_ROW_ID)
    default_loan_days = Column(Integer, nullable=False)
    max_active_loans = Column(Integer, nullable=False)
    max_renewals = Column(Integer, nullable=False)
    grace_period_days = Column(Integer, nullable=False)
    daily_fine_amount = Column(Float, nullable=False)
    allow_loans_with_fines = Column(Boolean, nullable=False, default=False)
    reservation_hold_days = Column(Integer, nullable=False, default=7)

    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(f"id = {CONFIGURATION_ROW_ID}", name="check_configuration_singleton"),
        CheckConstraint("default_loan_days >= 1", name="check_default_loan_days"),
        CheckConstraint("max_active_loans >= 0", name="check_max_active_loans"),
        CheckConstraint("max_renewals >= 0", name="check_max_renewals"),
        CheckConstraint("grace_period_days >= 0", name="check_grace_period_days"),
        CheckConstraint("daily_fine_amount >= 0", name="check_daily_fine_amount"),
        CheckConstraint("reservation_hold_days >= 1", name="check_reservation_hold_days"),
    )


class CirculationEvent(Base):
    """
    Circulation events table - notification outbox.

    Rows are written in the same transaction as the state change they
    describe; an external notifier delivers them and stamps ``delivered_at``.
    """

    __tablename__ = "circulation_events"

    id = Column(String(50), primary_key=True)
    event_type = Column(Enum(EventType), nullable=False)
    member_id = Column(String(50), nullable=False)
    subject_id = Column(String(50), nullable=False)
    created_at = Column(DateTime, nullable=False, default=func.now())
    delivered_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_event_undelivered", "delivered_at", "created_at"),)
