"""Tests for checkout, return and renewal through the circulation orchestrator."""

from datetime import timedelta

import pytest
from conftest import (
    ALICE,
    ATLAS_COPY,
    BOB,
    GATSBY_COPY_1,
    GATSBY_COPY_2,
    GATSBY_DAMAGED,
    INACTIVE,
    LOST,
    STAFF_ID,
    SUSPENDED,
    T0,
)

from library_circulation.database.loan_repository import LoanLedger, LoanQuery
from library_circulation.eligibility import OVERDUE_RENEWAL_REASON
from library_circulation.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
)
from library_circulation.models import CopyCondition, CopyStatus, LoanStatus


class TestCheckout:
    def test_checkout_claims_copy_and_sets_due_date(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.member_id == ALICE
        assert loan.processed_by_id == STAFF_ID
        assert loan.loan_date == T0
        assert loan.due_date == T0 + timedelta(days=14)
        assert loan.renewal_count == 0
        assert circulation.copy_status(GATSBY_COPY_1) == CopyStatus.BORROWED

    def test_material_loan_period_overrides_default(self, circulation):
        loan = circulation.checkout(ALICE, ATLAS_COPY)

        assert loan.due_date == T0 + timedelta(days=7)

    def test_copy_is_lent_to_one_member_at_a_time(self, circulation):
        circulation.checkout(ALICE, GATSBY_COPY_1)

        with pytest.raises(ConflictError, match="not available"):
            circulation.checkout(BOB, GATSBY_COPY_1)

        open_loans = circulation.run(
            lambda s: LoanLedger(s).list(LoanQuery(status=LoanStatus.ACTIVE))
        )
        assert open_loans.total == 1
        assert open_loans.items[0].member_id == ALICE

    def test_database_rejects_second_open_loan_for_copy(self, circulation):
        circulation.checkout(ALICE, GATSBY_COPY_1)

        with pytest.raises(ConflictError, match="conflicts with an existing record"):
            circulation.run(
                lambda s: LoanLedger(s).create(
                    member_id=BOB,
                    copy_id=GATSBY_COPY_1,
                    processed_by_id=STAFF_ID,
                    loan_date=T0,
                    due_date=T0 + timedelta(days=14),
                )
            )

    def test_max_active_loans_of_one(self, circulation):
        circulation.set_policy(max_active_loans=1)
        circulation.checkout(ALICE, GATSBY_COPY_1)

        with pytest.raises(PolicyViolationError) as exc_info:
            circulation.checkout(ALICE, GATSBY_COPY_2)

        assert exc_info.value.reasons == ["Maximum active loans reached (1)"]
        assert circulation.copy_status(GATSBY_COPY_2) == CopyStatus.AVAILABLE

    def test_member_with_lost_copy_is_refused(self, circulation):
        with pytest.raises(PolicyViolationError) as exc_info:
            circulation.checkout(LOST, GATSBY_COPY_1)

        assert exc_info.value.reasons == ["Member has an unresolved lost copy"]

    @pytest.mark.parametrize("member_id", [SUSPENDED, INACTIVE])
    def test_member_account_must_be_active(self, circulation, member_id):
        with pytest.raises(InvalidStateError, match="Member account is not active"):
            circulation.checkout(member_id, GATSBY_COPY_1)

        assert circulation.copy_status(GATSBY_COPY_1) == CopyStatus.AVAILABLE

    def test_damaged_copy_cannot_circulate(self, circulation):
        with pytest.raises(ConflictError, match="DAMAGED"):
            circulation.checkout(ALICE, GATSBY_DAMAGED)

    def test_unknown_member_and_copy(self, circulation):
        with pytest.raises(NotFoundError, match="Member member_nobody not found"):
            circulation.checkout("member_nobody", GATSBY_COPY_1)

        with pytest.raises(NotFoundError, match="Material copy copy_nothing not found"):
            circulation.checkout(ALICE, "copy_nothing")


class TestReturn:
    def test_on_time_return_releases_copy_without_fine(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        outcome = circulation.return_loan(loan.id, return_date=loan.due_date)

        assert outcome.loan.status == LoanStatus.RETURNED
        assert outcome.loan.return_date == loan.due_date
        assert outcome.fine is None
        assert outcome.fulfilled_reservation is None
        assert circulation.copy_status(GATSBY_COPY_1) == CopyStatus.AVAILABLE

    def test_round_trip_leaves_configuration_untouched(self, circulation):
        before = circulation.policy()

        loan = circulation.checkout(ALICE, GATSBY_COPY_1)
        circulation.return_loan(loan.id, return_date=T0 + timedelta(days=30))

        assert circulation.policy() == before

    def test_return_damaged_takes_copy_out_of_circulation(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        circulation.return_loan(
            loan.id, return_date=T0 + timedelta(days=2), condition=CopyCondition.DAMAGED
        )

        assert circulation.copy_status(GATSBY_COPY_1) == CopyStatus.UNDER_REPAIR

    def test_return_lost_removes_copy(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        circulation.return_loan(
            loan.id, return_date=T0 + timedelta(days=2), condition=CopyCondition.LOST
        )

        assert circulation.copy_status(GATSBY_COPY_1) == CopyStatus.REMOVED

    def test_loan_can_only_be_returned_once(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)
        circulation.return_loan(loan.id, return_date=T0 + timedelta(days=1))

        with pytest.raises(InvalidStateError, match="Current status: RETURNED"):
            circulation.return_loan(loan.id, return_date=T0 + timedelta(days=2))

    def test_return_before_loan_date_is_rejected(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        with pytest.raises(InvalidStateError, match="before loan date"):
            circulation.return_loan(loan.id, return_date=T0 - timedelta(days=1))

        assert circulation.loan(loan.id).status == LoanStatus.ACTIVE
        assert circulation.copy_status(GATSBY_COPY_1) == CopyStatus.BORROWED

    def test_unknown_loan(self, circulation):
        with pytest.raises(NotFoundError, match="Loan loan_missing not found"):
            circulation.return_loan("loan_missing", return_date=T0)


class TestRenewal:
    def test_renewal_extends_from_current_due_date(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        renewed = circulation.renew(loan.id, now=T0 + timedelta(days=5))

        assert renewed.renewal_count == 1
        assert renewed.due_date == loan.due_date + timedelta(days=14)

    def test_renewal_cap(self, circulation):
        circulation.set_policy(max_renewals=2)
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)
        circulation.renew(loan.id, now=T0 + timedelta(days=1))
        circulation.renew(loan.id, now=T0 + timedelta(days=2))

        with pytest.raises(PolicyViolationError) as exc_info:
            circulation.renew(loan.id, now=T0 + timedelta(days=3))

        assert exc_info.value.reasons == ["Loan has reached maximum number of renewals (2)"]
        assert circulation.loan(loan.id).renewal_count == 2

    def test_overdue_loan_cannot_be_renewed(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        with pytest.raises(PolicyViolationError) as exc_info:
            circulation.renew(loan.id, now=loan.due_date + timedelta(minutes=1))

        assert exc_info.value.reasons == [OVERDUE_RENEWAL_REASON]

    def test_unpaid_fines_block_renewal(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)
        circulation.fine(loan.id, 3.0)

        with pytest.raises(PolicyViolationError) as exc_info:
            circulation.renew(loan.id, now=T0 + timedelta(days=1))

        assert exc_info.value.reasons == [
            "Member has unpaid fines totaling $3.00. Please pay fines before renewing."
        ]

    def test_only_the_borrower_may_renew(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)

        with pytest.raises(AuthorizationError):
            circulation.renew(loan.id, now=T0 + timedelta(days=1), member_id=BOB)

        renewed = circulation.renew(loan.id, now=T0 + timedelta(days=1), member_id=ALICE)
        assert renewed.renewal_count == 1

    def test_returned_loan_cannot_be_renewed(self, circulation):
        loan = circulation.checkout(ALICE, GATSBY_COPY_1)
        circulation.return_loan(loan.id, return_date=T0 + timedelta(days=1))

        with pytest.raises(InvalidStateError, match="Current status: RETURNED"):
            circulation.renew(loan.id, now=T0 + timedelta(days=2))


class TestMemberLoanStats:
    def test_stats_for_member_in_good_standing(self, circulation):
        circulation.checkout(ALICE, GATSBY_COPY_1)

        stats = circulation.stats(ALICE)

        assert stats.active_loans == 1
        assert stats.overdue_loans == 0
        assert stats.unpaid_fines == 0.0
        assert stats.can_borrow is True

    def test_stats_report_suspension(self, circulation):
        stats = circulation.stats(SUSPENDED)

        assert stats.can_borrow is False
        assert stats.reasons == ["Member account is suspended"]

    def test_unknown_member(self, circulation):
        with pytest.raises(NotFoundError):
            circulation.stats("member_nobody")


class TestLoanListing:
    def test_filters_by_member_and_overdue(self, circulation):
        circulation.checkout(ALICE, GATSBY_COPY_1)
        circulation.checkout(BOB, GATSBY_COPY_2)

        alice_loans = circulation.run(lambda s: LoanLedger(s).list(LoanQuery(member_id=ALICE)))
        # T0 is in the past, so every ACTIVE loan is already past due
        overdue = circulation.run(lambda s: LoanLedger(s).list(LoanQuery(overdue=True)))
        not_overdue = circulation.run(lambda s: LoanLedger(s).list(LoanQuery(overdue=False)))

        assert [loan.member_id for loan in alice_loans.items] == [ALICE]
        assert overdue.total == 2
        assert not_overdue.total == 0

    def test_pagination(self, circulation):
        circulation.checkout(ALICE, GATSBY_COPY_1)
        circulation.checkout(BOB, GATSBY_COPY_2)

        page = circulation.run(lambda s: LoanLedger(s).list(LoanQuery(page=2, page_size=1)))

        assert page.total == 2
        assert len(page.items) == 1
        assert page.total_pages == 2
        assert page.has_previous is True
        assert page.has_next is False
