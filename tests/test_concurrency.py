"""Concurrent units of work against the file-backed test database."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from conftest import ALICE, BOB, CAROL, DAVE, GATSBY_COPY_1, LOST, MOCKINGBIRD, SUSPENDED, T0

from library_circulation.database.loan_repository import LoanLedger, LoanQuery
from library_circulation.database.reservation_repository import HoldQueue, ReservationQuery
from library_circulation.exceptions import ConflictError
from library_circulation.models import CopyStatus, LoanStatus, ReservationStatus


def run_together(actions):
    """Start every action at the same moment; return results or raised errors."""
    barrier = threading.Barrier(len(actions))

    def attempt(action):
        barrier.wait()
        try:
            return action()
        except ConflictError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(actions)) as pool:
        return list(pool.map(attempt, actions))


class TestConcurrentCheckout:
    def test_copy_is_claimed_by_exactly_one_checkout(self, circulation):
        circulation.db.transaction_retries = 3
        members = [ALICE, BOB, CAROL, DAVE]

        results = run_together(
            [lambda m=member: circulation.checkout(m, GATSBY_COPY_1) for member in members]
        )

        loans = [r for r in results if not isinstance(r, ConflictError)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(loans) == 1
        assert len(conflicts) == len(members) - 1
        assert all(not e.transient for e in conflicts)

        active = circulation.run(
            lambda s: LoanLedger(s).list(LoanQuery(status=LoanStatus.ACTIVE))
        )
        assert active.total == 1
        assert active.items[0].id == loans[0].id
        assert circulation.copy_status(GATSBY_COPY_1) == CopyStatus.BORROWED


class TestConcurrentHoldChanges:
    def test_racing_cancellations_keep_positions_contiguous(self, circulation):
        circulation.db.transaction_retries = 3
        holders = [ALICE, BOB, CAROL, DAVE, LOST, SUSPENDED]
        holds = [
            circulation.reserve(member, MOCKINGBIRD, now=T0 + timedelta(hours=i))
            for i, member in enumerate(holders)
        ]
        _, bob, carol, dave, lost, suspended = holds

        results = run_together(
            [
                lambda: circulation.cancel_hold(bob.id, BOB),
                lambda: circulation.cancel_hold(dave.id, DAVE),
            ]
        )

        assert [r.status for r in results] == [ReservationStatus.CANCELLED] * 2
        pending = circulation.run(
            lambda s: HoldQueue(s).list(
                ReservationQuery(material_id=MOCKINGBIRD, status=ReservationStatus.PENDING)
            )
        )
        positions = {hold.id: hold.queue_position for hold in pending.items}
        assert positions == {carol.id: 1, lost.id: 2, suspended.id: 3}
