"""
Database package for the Library Circulation server.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management, transactions and retries (session.py)
- The ledgers, one per circulation entity (*_repository.py)
- The orchestrator that keeps them consistent (circulation_repository.py)
- Batch sweeps with per-row transactions (sweeps.py)
"""

from .circulation_repository import CirculationOrchestrator
from .configuration_repository import LoanConfigurationStore, UpdateLoanConfigurationCommand
from .copy_repository import CopyInventory
from .event_repository import EventOutbox
from .fine_repository import (
    CreateFineCommand,
    FineLedger,
    FineQuery,
    UpdateFineCommand,
    calculate_overdue_fine,
)
from .loan_repository import CheckoutCommand, LoanLedger, LoanQuery, ReturnCommand
from .repository import PaginatedResponse, PaginationParams
from .reservation_repository import (
    CreateReservationCommand,
    HoldQueue,
    ReservationQuery,
    UpdateReservationCommand,
)
from .schema import (
    Base,
    CirculationEvent,
    Fine,
    Loan,
    LoanConfiguration,
    Material,
    MaterialCopy,
    Member,
    Reservation,
)
from .session import DatabaseManager, get_db_manager, safe_query, session_scope
from .sweeps import expire_reservations, update_overdue_loans

__all__ = [
    "Base",
    "CheckoutCommand",
    "CirculationEvent",
    "CirculationOrchestrator",
    "CopyInventory",
    "CreateFineCommand",
    "CreateReservationCommand",
    "DatabaseManager",
    "EventOutbox",
    "Fine",
    "FineLedger",
    "FineQuery",
    "HoldQueue",
    "Loan",
    "LoanConfiguration",
    "LoanConfigurationStore",
    "LoanLedger",
    "LoanQuery",
    "Material",
    "MaterialCopy",
    "Member",
    "PaginatedResponse",
    "PaginationParams",
    "Reservation",
    "ReservationQuery",
    "ReturnCommand",
    "UpdateFineCommand",
    "UpdateLoanConfigurationCommand",
    "UpdateReservationCommand",
    "calculate_overdue_fine",
    "expire_reservations",
    "get_db_manager",
    "safe_query",
    "session_scope",
    "update_overdue_loans",
]
