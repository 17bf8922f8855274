"""Test configuration and fixtures for the Library Circulation server.

1. Isolated databases - each test gets its own SQLite file under tmp_path
2. Configuration isolation - no LIBRARY_CIRCULATION_* variables leak in
3. Seeded catalog - materials, copies and members owned by other systems
4. A driver that runs each engine call as its own unit of work

Tests must not hold a session open while another unit of work runs: every
SQLite transaction starts with BEGIN IMMEDIATE and would wait for the lock.
"""

import os
from collections.abc import Generator
from datetime import datetime
from pathlib import Path

import logfire
import pytest

from library_circulation.config import reset_config
from library_circulation.database import session as session_module
from library_circulation.database.circulation_repository import CirculationOrchestrator
from library_circulation.database.configuration_repository import (
    LoanConfigurationStore,
    UpdateLoanConfigurationCommand,
)
from library_circulation.database.copy_repository import CopyInventory
from library_circulation.database.event_repository import EventOutbox
from library_circulation.database.fine_repository import CreateFineCommand, FineLedger
from library_circulation.database.loan_repository import (
    CheckoutCommand,
    LoanLedger,
    ReturnCommand,
)
from library_circulation.database.reservation_repository import (
    CreateReservationCommand,
    HoldQueue,
    UpdateReservationCommand,
)
from library_circulation.database.schema import Material, MaterialCopy, Member
from library_circulation.database.session import DatabaseManager
from library_circulation.models import AccountState, CopyCondition, MemberCondition

STAFF_ID = "staff_librarian"

GATSBY = "material_gatsby"
MOCKINGBIRD = "material_mockingbird"
ATLAS = "material_atlas"

GATSBY_COPY_1 = "copy_gatsby_1"
GATSBY_COPY_2 = "copy_gatsby_2"
GATSBY_DAMAGED = "copy_gatsby_damaged"
MOCKINGBIRD_COPY = "copy_mockingbird_1"
ATLAS_COPY = "copy_atlas_1"

ALICE = "member_alice"
BOB = "member_bob"
CAROL = "member_carol"
DAVE = "member_dave"
SUSPENDED = "member_suspended"
INACTIVE = "member_inactive"
LOST = "member_lost"

T0 = datetime(2024, 1, 1, 10, 0)


def pytest_configure(config):
    """Keep spans local; tests never export telemetry."""
    logfire.configure(send_to_logfire=False, console=False)


# === Configuration Fixtures ===


@pytest.fixture(autouse=True)
def clean_config(monkeypatch) -> Generator[None, None, None]:
    """Start every test from default configuration."""
    for key in list(os.environ):
        if key.startswith("LIBRARY_CIRCULATION_"):
            monkeypatch.delenv(key)
    reset_config()
    yield
    reset_config()


# === Database Fixtures ===


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    return tmp_path / "circulation.db"


@pytest.fixture
def db_manager(test_db_path: Path, monkeypatch) -> Generator[DatabaseManager, None, None]:
    """A migrated database, installed as the manager the tools use."""
    manager = DatabaseManager(
        f"sqlite:///{test_db_path}", transaction_retries=0, retry_backoff_seconds=0
    )
    manager.init_database()
    monkeypatch.setattr(session_module, "_db_manager", manager)
    yield manager
    manager.close()


@pytest.fixture
def library(db_manager: DatabaseManager) -> DatabaseManager:
    """Seed the rows the catalog and membership systems would own."""
    with db_manager.session_scope() as session:
        session.add_all(
            [
                Material(id=GATSBY, title="The Great Gatsby"),
                Material(id=MOCKINGBIRD, title="To Kill a Mockingbird"),
                Material(id=ATLAS, title="World Atlas", max_loan_days=7),
            ]
        )
        session.flush()
        session.add_all(
            [
                MaterialCopy(id=GATSBY_COPY_1, material_id=GATSBY),
                MaterialCopy(id=GATSBY_COPY_2, material_id=GATSBY),
                MaterialCopy(
                    id=GATSBY_DAMAGED, material_id=GATSBY, condition=CopyCondition.DAMAGED
                ),
                MaterialCopy(id=MOCKINGBIRD_COPY, material_id=MOCKINGBIRD),
                MaterialCopy(id=ATLAS_COPY, material_id=ATLAS),
                Member(id=ALICE, name="Alice"),
                Member(id=BOB, name="Bob"),
                Member(id=CAROL, name="Carol"),
                Member(id=DAVE, name="Dave"),
                Member(id=SUSPENDED, name="Sam", account_state=AccountState.SUSPENDED),
                Member(id=INACTIVE, name="Ira", account_state=AccountState.INACTIVE),
                Member(id=LOST, name="Lou", conditions=[MemberCondition.LOST_COPY.value]),
            ]
        )
    return db_manager


class CirculationDriver:
    """Runs engine operations against a test database, one unit of work each."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def run(self, operation):
        return self.db.run_in_transaction(operation, description="test operation")

    # -- operations --

    def checkout(self, member_id, copy_id, *, now=T0, loan_date=None):
        command = CheckoutCommand(member_id=member_id, copy_id=copy_id, loan_date=loan_date)
        return self.run(lambda s: CirculationOrchestrator(s).checkout(command, STAFF_ID, now))

    def return_loan(self, loan_id, *, return_date, condition=None, now=None):
        command = ReturnCommand(return_date=return_date, condition=condition)
        return self.run(
            lambda s: CirculationOrchestrator(s).return_loan(loan_id, command, now or return_date)
        )

    def renew(self, loan_id, *, now, member_id=None):
        return self.run(
            lambda s: CirculationOrchestrator(s).renew_loan(loan_id, now, member_id=member_id)
        )

    def fine(self, loan_id, amount, reason="Damaged cover"):
        command = CreateFineCommand(loan_id=loan_id, amount=amount, reason=reason)
        return self.run(lambda s: CirculationOrchestrator(s).create_fine(command, STAFF_ID))

    def reserve(self, member_id, material_id, *, now=T0):
        command = CreateReservationCommand(member_id=member_id, material_id=material_id)
        return self.run(lambda s: CirculationOrchestrator(s).create_hold(command, now))

    def update_hold(self, reservation_id, *, now=T0, **fields):
        command = UpdateReservationCommand(**fields)
        return self.run(
            lambda s: CirculationOrchestrator(s).update_hold_status(reservation_id, command, now)
        )

    def cancel_hold(self, reservation_id, member_id, *, now=T0):
        return self.run(
            lambda s: CirculationOrchestrator(s).cancel_hold(reservation_id, member_id, now)
        )

    def confirm_pickup(self, reservation_id, member_id, *, now=T0):
        return self.run(
            lambda s: CirculationOrchestrator(s).confirm_pickup(reservation_id, member_id, now)
        )

    def set_policy(self, **changes):
        command = UpdateLoanConfigurationCommand(**changes)
        return self.run(lambda s: LoanConfigurationStore(s).update(command))

    # -- reads --

    def policy(self):
        return self.run(lambda s: LoanConfigurationStore(s).get())

    def copy_status(self, copy_id):
        return self.run(lambda s: CopyInventory(s).get(copy_id).status)

    def loan(self, loan_id):
        return self.run(lambda s: LoanLedger(s).get(loan_id))

    def reservation(self, reservation_id):
        return self.run(lambda s: HoldQueue(s).get(reservation_id))

    def stats(self, member_id):
        return self.run(lambda s: CirculationOrchestrator(s).member_loan_stats(member_id))

    def fine_stats(self, member_id):
        return self.run(lambda s: FineLedger(s).member_stats(member_id))

    def pending_events(self):
        return self.run(lambda s: EventOutbox(s).pending())


@pytest.fixture
def circulation(library: DatabaseManager) -> CirculationDriver:
    return CirculationDriver(library)


# === Actor Fixtures ===


@pytest.fixture
def staff() -> dict[str, str]:
    return {"id": STAFF_ID, "role": "STAFF"}


@pytest.fixture
def as_member():
    """Build the actor payload of a member."""

    def _actor(member_id: str) -> dict[str, str]:
        return {"id": member_id, "role": "MEMBER"}

    return _actor
