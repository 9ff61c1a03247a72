"""
Test suite for loans module

Tests loan applications, the allowed status transitions, disbursement with
schedule generation and completion through repayment.
"""

import pytest
from decimal import Decimal
from datetime import date
from unittest.mock import patch

from ngnasoro.currency import Money, Currency
from ngnasoro.storage import InMemoryStorage
from ngnasoro.audit import AuditTrail, AuditAction
from ngnasoro.schedules import PaymentScheduleStore
from ngnasoro.notifications import NotificationCenter
from ngnasoro.loans import LoanManager, LoanStatus
from ngnasoro.exceptions import (
    InvalidLoanTermsError, InvalidLoanStateError, LoanNotFoundError,
    DuplicateScheduleError, NotificationDeliveryError, InvalidPaymentError
)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def schedule_store(storage, audit_trail):
    return PaymentScheduleStore(storage, audit_trail)


@pytest.fixture
def notifications(storage):
    return NotificationCenter(storage)


@pytest.fixture
def loan_manager(storage, schedule_store, audit_trail, notifications):
    return LoanManager(storage, schedule_store, audit_trail, notifications)


@pytest.fixture
def loan(loan_manager):
    return loan_manager.create_loan(
        client_id="client-1",
        sfd_id="sfd-bamako",
        principal=100000,
        annual_interest_rate=5,
        duration_months=12,
        purpose="Commerce de tissus"
    )


def fcfa(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.XOF)


class TestCreateLoan:
    """Test loan applications"""

    def test_create_loan(self, loan):
        assert loan.status == LoanStatus.PENDING
        assert loan.principal == fcfa(100000)
        assert loan.monthly_payment == fcfa(8750)
        assert loan.total_repayable == fcfa(105000)
        assert loan.remaining_amount == fcfa(105000)
        assert loan.next_payment_date is None

    def test_loan_persisted(self, loan_manager, loan):
        stored = loan_manager.get_loan(loan.id)
        assert stored.client_id == "client-1"
        assert stored.annual_interest_rate == Decimal('5')
        assert stored.purpose == "Commerce de tissus"

    def test_invalid_terms_rejected(self, loan_manager, storage):
        with pytest.raises(InvalidLoanTermsError):
            loan_manager.create_loan("client-1", "sfd-bamako", 100000, 5, 0)
        assert storage.count("loans") == 0

    def test_creation_audited(self, loan, audit_trail):
        events = audit_trail.get_events_for_resource(loan.id)
        assert events[0].action == AuditAction.LOAN_CREATED
        assert events[0].user_id == "client-1"
        assert events[0].details["monthly_payment"] == "8 750 FCFA"

    def test_unknown_loan(self, loan_manager):
        assert loan_manager.get_loan("nope") is None


class TestTransitions:
    """Test the loan status machine"""

    def test_approve(self, loan_manager, loan):
        approved = loan_manager.approve(loan.id, approved_by="agent-7")

        assert approved.status == LoanStatus.APPROVED
        assert approved.approved_by == "agent-7"
        assert approved.approved_at is not None

    def test_withdraw_pending(self, loan_manager, loan):
        assert loan_manager.withdraw(loan.id, reason="client request").status == LoanStatus.WITHDRAWN

    def test_withdraw_approved(self, loan_manager, loan):
        loan_manager.approve(loan.id)
        assert loan_manager.withdraw(loan.id).status == LoanStatus.WITHDRAWN

    def test_cannot_disburse_pending(self, loan_manager, loan):
        with pytest.raises(InvalidLoanStateError):
            loan_manager.disburse(loan.id)

    def test_cannot_approve_twice(self, loan_manager, loan):
        loan_manager.approve(loan.id)
        with pytest.raises(InvalidLoanStateError):
            loan_manager.approve(loan.id)

    def test_cannot_withdraw_active(self, loan_manager, loan):
        loan_manager.approve(loan.id)
        loan_manager.disburse(loan.id, date(2024, 1, 15))
        with pytest.raises(InvalidLoanStateError):
            loan_manager.withdraw(loan.id)

    def test_default_only_when_active(self, loan_manager, loan):
        with pytest.raises(InvalidLoanStateError):
            loan_manager.mark_defaulted(loan.id)

        loan_manager.approve(loan.id)
        loan_manager.disburse(loan.id, date(2024, 1, 15))
        defaulted = loan_manager.mark_defaulted(loan.id, reason="90 days overdue")
        assert defaulted.status == LoanStatus.DEFAULTED

    def test_terminal_states(self, loan_manager, loan):
        loan_manager.withdraw(loan.id)
        with pytest.raises(InvalidLoanStateError):
            loan_manager.approve(loan.id)

    def test_missing_loan(self, loan_manager):
        with pytest.raises(LoanNotFoundError):
            loan_manager.approve("missing")


class TestDisbursement:
    """Test disbursement and schedule generation"""

    def test_disburse_generates_schedule(self, loan_manager, loan, schedule_store):
        loan_manager.approve(loan.id)
        active = loan_manager.disburse(loan.id, date(2024, 1, 15), disbursed_by="agent-7")

        assert active.status == LoanStatus.ACTIVE
        assert active.disbursement_date == date(2024, 1, 15)
        assert active.next_payment_date == date(2024, 2, 15)

        schedule = schedule_store.get_schedule(loan.id)
        assert len(schedule) == 12
        assert schedule[-1].due_date == date(2025, 1, 15)

    def test_disbursement_notifies_client(self, loan_manager, loan, notifications):
        loan_manager.approve(loan.id)
        loan_manager.disburse(loan.id, date(2024, 1, 15))

        titles = [n.title for n in notifications.get_notifications("client-1")]
        assert "Prêt décaissé" in titles
        assert "Prêt approuvé" in titles

    def test_disbursement_audited(self, loan_manager, loan, audit_trail):
        loan_manager.approve(loan.id)
        loan_manager.disburse(loan.id, date(2024, 1, 15))

        actions = [e.action for e in audit_trail.get_events_for_resource(loan.id)]
        assert AuditAction.LOAN_SCHEDULE_GENERATED in actions
        assert actions[-1] == AuditAction.LOAN_DISBURSED

    def test_schedule_failure_keeps_loan_approved(self, loan_manager, loan, schedule_store):
        loan_manager.approve(loan.id)

        with patch.object(schedule_store, "create_schedule",
                          side_effect=DuplicateScheduleError("exists")):
            with pytest.raises(DuplicateScheduleError):
                loan_manager.disburse(loan.id, date(2024, 1, 15))

        assert loan_manager.get_loan(loan.id).status == LoanStatus.APPROVED

    def test_notification_failure_does_not_block(self, loan_manager, loan, notifications):
        loan_manager.approve(loan.id)

        with patch.object(notifications, "write",
                          side_effect=NotificationDeliveryError("down")):
            active = loan_manager.disburse(loan.id, date(2024, 1, 15))

        assert active.status == LoanStatus.ACTIVE

    def test_get_schedule_unknown_loan(self, loan_manager):
        with pytest.raises(LoanNotFoundError):
            loan_manager.get_schedule("missing")


class TestRepaymentLifecycle:
    """Test the loan row as installments are paid"""

    def test_full_repayment_completes_loan(self, loan_manager, schedule_store):
        loan = loan_manager.create_loan("client-2", "sfd-segou", 30000, 0, 3)
        loan_manager.approve(loan.id)
        loan_manager.disburse(loan.id, date(2024, 1, 15))

        schedule_store.record_payment(f"{loan.id}:1", 10000)
        partial = loan_manager.get_loan(loan.id)
        assert partial.next_payment_date == date(2024, 3, 15)
        assert partial.remaining_amount == fcfa(20000)

        schedule_store.record_payment(f"{loan.id}:2", 10000)
        schedule_store.record_payment(f"{loan.id}:3", 10000)

        completed = loan_manager.get_loan(loan.id)
        assert completed.status == LoanStatus.COMPLETED
        assert completed.next_payment_date is None
        assert completed.last_payment_date is not None
        assert completed.remaining_amount.is_zero()

    def test_completed_loan_cannot_default(self, loan_manager, schedule_store):
        loan = loan_manager.create_loan("client-2", "sfd-segou", 10000, 0, 1)
        loan_manager.approve(loan.id)
        loan_manager.disburse(loan.id, date(2024, 1, 15))
        schedule_store.record_payment(f"{loan.id}:1", 10000)

        with pytest.raises(InvalidLoanStateError):
            loan_manager.mark_defaulted(loan.id)

    def test_defaulted_loan_refuses_payment(self, loan_manager, schedule_store):
        loan = loan_manager.create_loan("client-2", "sfd-segou", 10000, 0, 1)
        loan_manager.approve(loan.id)
        loan_manager.disburse(loan.id, date(2024, 1, 15))
        loan_manager.mark_defaulted(loan.id)

        with pytest.raises(InvalidPaymentError):
            schedule_store.record_payment(f"{loan.id}:1", 10000)

        defaulted = loan_manager.get_loan(loan.id)
        assert defaulted.status == LoanStatus.DEFAULTED
        assert defaulted.remaining_amount == fcfa(10000)


class TestListing:
    """Test loan listings"""

    def test_client_and_sfd_loans(self, loan_manager):
        first = loan_manager.create_loan("client-1", "sfd-a", 50000, 5, 6)
        loan_manager.create_loan("client-1", "sfd-b", 75000, 5, 6)
        loan_manager.create_loan("client-2", "sfd-a", 20000, 5, 6)

        assert len(loan_manager.get_client_loans("client-1")) == 2
        assert len(loan_manager.get_sfd_loans("sfd-a")) == 2

        loan_manager.approve(first.id)
        approved = loan_manager.get_sfd_loans("sfd-a", LoanStatus.APPROVED)
        assert [loan.id for loan in approved] == [first.id]
