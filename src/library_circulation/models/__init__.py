"""
Pydantic models for the Library Circulation server.

These models define the data structures returned by the circulation engine
and serialized by the MCP tools.
"""

from .circulation import (
    AccountState,
    BorrowerState,
    CirculationEvent,
    CopyCondition,
    CopyStatus,
    EligibilityDecision,
    EventType,
    Fine,
    FineStats,
    FineStatus,
    Loan,
    LoanConfiguration,
    LoanStatus,
    MaterialCopy,
    MemberCondition,
    MemberLoanStats,
    MemberSnapshot,
    Reservation,
    ReservationStats,
    ReservationStatus,
    ReturnOutcome,
    SweepResult,
)

__all__ = [
    "AccountState",
    "BorrowerState",
    "CirculationEvent",
    "CopyCondition",
    "CopyStatus",
    "EligibilityDecision",
    "EventType",
    "Fine",
    "FineStats",
    "FineStatus",
    "Loan",
    "LoanConfiguration",
    "LoanStatus",
    "MaterialCopy",
    "MemberCondition",
    "MemberLoanStats",
    "MemberSnapshot",
    "Reservation",
    "ReservationStats",
    "ReservationStatus",
    "ReturnOutcome",
    "SweepResult",
]
