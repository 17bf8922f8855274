"""Tests for the circulation read models and derived views."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from library_circulation.models import (
    CopyCondition,
    CopyStatus,
    Fine,
    FineStatus,
    Loan,
    LoanStatus,
    MaterialCopy,
    MemberCondition,
    MemberSnapshot,
    Reservation,
    ReservationStatus,
)

LOAN_DATE = datetime(2024, 2, 1, 9, 30)


def make_loan(**overrides) -> Loan:
    values = {
        "id": "loan_1",
        "member_id": "member_1",
        "copy_id": "copy_1",
        "processed_by_id": "staff_1",
        "loan_date": LOAN_DATE,
        "due_date": LOAN_DATE + timedelta(days=14),
    }
    values.update(overrides)
    return Loan(**values)


class TestLoanModel:
    def test_due_date_cannot_precede_loan_date(self):
        with pytest.raises(ValidationError, match="Due date cannot be before loan date"):
            make_loan(due_date=LOAN_DATE - timedelta(days=1))

    def test_return_date_cannot_precede_loan_date(self):
        with pytest.raises(ValidationError, match="Return date cannot be before loan date"):
            make_loan(return_date=LOAN_DATE - timedelta(minutes=5))

    def test_past_due_only_while_open(self):
        later = LOAN_DATE + timedelta(days=20)

        assert make_loan().is_past_due(later) is True
        assert make_loan().is_past_due(LOAN_DATE) is False
        returned = make_loan(status=LoanStatus.RETURNED, return_date=later)
        assert returned.is_open is False
        assert returned.is_past_due(later) is False

    def test_renewal_count_is_non_negative(self):
        with pytest.raises(ValidationError):
            make_loan(renewal_count=-1)


class TestMaterialCopyModel:
    @pytest.mark.parametrize(
        ("condition", "loanable"),
        [
            (CopyCondition.NEW, True),
            (CopyCondition.FAIR, True),
            (CopyCondition.DAMAGED, False),
            (CopyCondition.LOST, False),
        ],
    )
    def test_loanable_conditions(self, condition, loanable):
        copy = MaterialCopy(id="copy_1", material_id="material_1", condition=condition)

        assert copy.is_loanable is loanable
        assert copy.status == CopyStatus.AVAILABLE


class TestReservationModel:
    def test_queue_position_starts_at_one(self):
        with pytest.raises(ValidationError):
            Reservation(
                id="reservation_1",
                member_id="member_1",
                material_id="material_1",
                reservation_date=LOAN_DATE,
                sequence=1,
                queue_position=0,
            )

    def test_active_statuses(self):
        base = {
            "id": "reservation_1",
            "member_id": "member_1",
            "material_id": "material_1",
            "reservation_date": LOAN_DATE,
            "sequence": 1,
        }

        assert Reservation(**base).is_active is True
        assert Reservation(**base, status=ReservationStatus.READY).is_active is True
        assert Reservation(**base, status=ReservationStatus.EXPIRED).is_active is False


class TestFineModel:
    def test_outstanding_balance(self):
        fine = Fine(
            id="fine_1", loan_id="loan_1", issued_by_id="staff_1", amount=5.0,
            paid_amount=1.5, reason="Late return",
        )

        assert fine.outstanding == 3.5
        assert fine.model_copy(update={"status": FineStatus.WAIVED}).outstanding == 0.0

    def test_amount_cannot_be_negative(self):
        with pytest.raises(ValidationError):
            Fine(id="fine_1", loan_id="loan_1", issued_by_id="staff_1", amount=-1.0, reason="x")


def test_member_snapshot_parses_condition_values():
    snapshot = MemberSnapshot(id="member_1", conditions=["LOST_COPY", "HAS_FINE"])

    assert snapshot.conditions == [MemberCondition.LOST_COPY, MemberCondition.HAS_FINE]


def test_json_dump_uses_status_values():
    data = make_loan().model_dump(mode="json")

    assert data["status"] == "ACTIVE"
    assert data["due_date"] == "2024-02-15T09:30:00"
