"""
Payment Schedule Module

Persists the installments of each disbursed loan, records repayments against
them and flags overdue installments with late fees.

Installments are stored one row per installment under the id
``"{loan_id}:{installment_number}"``. Status changes go through the storage
layer's ``update_where`` so two concurrent payments on the same installment
cannot both succeed.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union
from enum import Enum
import logging

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditAction, AuditCategory, AuditSeverity
from .amortization import ScheduledInstallment
from .exceptions import (
    DuplicateScheduleError, InstallmentNotFoundError, AlreadyPaidError,
    InvalidPaymentError, InvalidLoanTermsError, LoanNotFoundError
)

logger = logging.getLogger("ngnasoro.schedules")


class InstallmentStatus(Enum):
    """Installment repayment states"""
    PENDING = "pending"
    PAID = "paid"
    LATE = "late"


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    remaining_principal: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_amount: Optional[Money] = None
    paid_at: Optional[datetime] = None
    late_fee: Money = None
    days_overdue: int = 0

    def __post_init__(self):
        if not self.late_fee:
            self.late_fee = Money.zero(self.total_amount.currency)

    @property
    def currency(self) -> Currency:
        return self.total_amount.currency

    @property
    def amount_due(self) -> Money:
        """Installment total plus any late fee charged"""
        return self.total_amount + self.late_fee

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID


def installment_id(loan_id: str, installment_number: int) -> str:
    return f"{loan_id}:{installment_number}"


class PaymentScheduleStore:
    """
    Repayment schedules for all loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        late_fee_grace_days: int = 7,
        late_fee_rate: Union[Decimal, str] = Decimal('0.05')
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.late_fee_grace_days = late_fee_grace_days
        self.late_fee_rate = Decimal(str(late_fee_rate))

        self.schedules_table = "loan_payment_schedules"
        self.loans_table = "loans"

    def create_schedule(self, loan_id: str, schedule: Sequence[ScheduledInstallment]) -> List[Installment]:
        """
        Persist a computed schedule for a loan

        Either every installment is written or none is.

        Raises:
            DuplicateScheduleError: A schedule already exists for the loan
            InvalidLoanTermsError: The schedule is empty
        """
        if not schedule:
            raise InvalidLoanTermsError(f"Cannot store an empty schedule for loan {loan_id}")

        if self.storage.find(self.schedules_table, {'loan_id': loan_id}):
            raise DuplicateScheduleError(f"Loan {loan_id} already has a repayment schedule")

        now = datetime.now(timezone.utc)
        installments = [
            Installment(
                id=installment_id(loan_id, entry.installment_number),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                installment_number=entry.installment_number,
                due_date=entry.due_date,
                principal_amount=entry.principal_amount,
                interest_amount=entry.interest_amount,
                total_amount=entry.total_amount,
                remaining_principal=entry.remaining_principal
            )
            for entry in schedule
        ]

        with self.storage.atomic():
            for installment in installments:
                inserted = self.storage.insert_if_absent(
                    self.schedules_table, installment.id, self._installment_to_dict(installment)
                )
                if not inserted:
                    raise DuplicateScheduleError(
                        f"Installment {installment.id} already exists"
                    )

        logger.info("Stored %d installments for loan %s", len(installments), loan_id)

        if self.audit_trail:
            self.audit_trail.log_event(
                action=AuditAction.LOAN_SCHEDULE_GENERATED,
                category=AuditCategory.LOANS,
                target_resource=loan_id,
                details={
                    "installments": len(installments),
                    "first_due_date": installments[0].due_date,
                    "last_due_date": installments[-1].due_date,
                    "total_amount": sum(
                        (i.total_amount for i in installments),
                        Money.zero(installments[0].currency)
                    ).to_string()
                }
            )

        return installments

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """All installments of a loan ordered by installment number"""
        rows = self.storage.find(self.schedules_table, {'loan_id': loan_id})
        installments = [self._installment_from_dict(row) for row in rows]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(self.schedules_table, installment_id)
        if data:
            return self._installment_from_dict(data)
        return None

    def get_installment_by_number(self, loan_id: str, installment_number: int) -> Optional[Installment]:
        return self.get_installment(installment_id(loan_id, installment_number))

    def get_next_unpaid(self, loan_id: str) -> Optional[Installment]:
        """Earliest installment of the loan that is not paid yet"""
        for installment in self.get_schedule(loan_id):
            if not installment.is_paid:
                return installment
        return None

    def get_due_installments(self, on_date: date) -> List[Installment]:
        """Pending installments of any loan falling due exactly on ``on_date``"""
        rows = self.storage.find(self.schedules_table, {
            'due_date': on_date.isoformat(),
            'status': InstallmentStatus.PENDING.value
        })
        installments = [self._installment_from_dict(row) for row in rows]
        installments.sort(key=lambda i: (i.loan_id, i.installment_number))
        return installments

    def get_overdue_installments(self, as_of: date) -> List[Installment]:
        """Unpaid installments whose due date is before ``as_of``"""
        overdue = []
        for status in (InstallmentStatus.PENDING, InstallmentStatus.LATE):
            rows = self.storage.find(self.schedules_table, {'status': status.value})
            overdue.extend(
                installment for installment in map(self._installment_from_dict, rows)
                if installment.due_date < as_of
            )
        overdue.sort(key=lambda i: (i.due_date, i.loan_id, i.installment_number))
        return overdue

    def record_payment(
        self,
        installment_id: str,
        paid_amount: Union[Money, Decimal, int, str],
        paid_at: Optional[datetime] = None
    ) -> Installment:
        """
        Mark an installment as paid

        Also moves the loan's next_payment_date to the following unpaid
        installment (None when the loan is fully repaid), sets its
        last_payment_date, and completes the loan after its final installment.

        Args:
            installment_id: Installment to settle
            paid_amount: Amount received
            paid_at: When the payment was made (defaults to now)

        Returns:
            The updated Installment

        Raises:
            InstallmentNotFoundError: No such installment
            LoanNotFoundError: The installment's loan row is missing
            AlreadyPaidError: The installment is paid, including when a
                concurrent payment settled it first
            InvalidPaymentError: Amount is not positive, is less than the
                installment's amount due, exceeds what is left on the loan,
                or the loan is not active
        """
        if paid_at is None:
            paid_at = datetime.now(timezone.utc)

        installment = self.get_installment(installment_id)
        if installment is None:
            raise InstallmentNotFoundError(f"Installment {installment_id} not found")

        if not isinstance(paid_amount, Money):
            paid_amount = Money(Decimal(str(paid_amount)), installment.currency)
        if not paid_amount.is_positive():
            raise InvalidPaymentError(
                f"Payment amount must be positive, got {paid_amount.to_string()}"
            )
        if paid_amount.currency != installment.currency:
            raise InvalidPaymentError(
                f"Payment in {paid_amount.currency.code} for an installment in "
                f"{installment.currency.code}"
            )

        loan = self.storage.load(self.loans_table, installment.loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {installment.loan_id} not found")
        if loan.get('status') != 'active':
            raise InvalidPaymentError(
                f"Loan {installment.loan_id} is {loan.get('status')}, not active"
            )

        # The sweep may flip pending -> late or charge a late fee between our
        # read and write, so retry once against the fresh installment
        for _ in range(2):
            if installment.is_paid:
                raise AlreadyPaidError(f"Installment {installment_id} is already paid")
            self._check_amount(installment, paid_amount)

            swapped = self.storage.update_where(
                self.schedules_table,
                installment_id,
                expected={
                    'status': installment.status.value,
                    'late_fee': str(installment.late_fee.amount)
                },
                changes={
                    'status': InstallmentStatus.PAID.value,
                    'paid_amount': str(paid_amount.amount),
                    'paid_at': paid_at.isoformat(),
                    'updated_at': datetime.now(timezone.utc).isoformat()
                }
            )
            if swapped:
                break
            installment = self.get_installment(installment_id)
        else:
            raise AlreadyPaidError(
                f"Installment {installment_id} changed while recording the payment"
            )

        completed = self._update_loan_after_payment(installment.loan_id, paid_at)

        paid = self.get_installment(installment_id)
        logger.info(
            "Recorded payment of %s on installment %s",
            paid_amount.to_string(), installment_id
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                action=AuditAction.LOAN_PAYMENT,
                category=AuditCategory.PAYMENTS,
                target_resource=paid.loan_id,
                details={
                    "installment_id": installment_id,
                    "installment_number": paid.installment_number,
                    "paid_amount": paid_amount.to_string(),
                    "amount_due": paid.amount_due.to_string(),
                    "surplus": (paid_amount - paid.amount_due).to_string(),
                    "paid_at": paid_at
                }
            )
            if completed:
                self.audit_trail.log_event(
                    action=AuditAction.LOAN_COMPLETED,
                    category=AuditCategory.LOANS,
                    target_resource=paid.loan_id,
                    details={"final_installment": paid.installment_number}
                )

        return paid

    def _check_amount(self, installment: Installment, paid_amount: Money) -> None:
        """A payment covers at least the installment and at most the loan's unpaid total"""
        if paid_amount < installment.amount_due:
            raise InvalidPaymentError(
                f"Payment of {paid_amount.to_string()} is below the "
                f"{installment.amount_due.to_string()} due on installment {installment.id}"
            )
        others = [
            i for i in self.get_schedule(installment.loan_id)
            if not i.is_paid and i.id != installment.id
        ]
        outstanding = sum((i.amount_due for i in others), installment.amount_due)
        if paid_amount > outstanding:
            raise InvalidPaymentError(
                f"Payment of {paid_amount.to_string()} exceeds the "
                f"{outstanding.to_string()} left on loan {installment.loan_id}"
            )

    def mark_late_installments(self, as_of: Optional[date] = None) -> List[Installment]:
        """
        Flag unpaid installments past their due date

        Every overdue installment gets status ``late`` and its current
        days_overdue. Once it is overdue by more than the grace period a
        one-time late fee (installment total x late fee rate, rounded up) is
        charged.

        Returns:
            Installments that turned late in this call
        """
        if as_of is None:
            as_of = date.today()

        newly_late = []
        for installment in self.get_overdue_installments(as_of):
            days_overdue = (as_of - installment.due_date).days
            changes: Dict[str, object] = {
                'status': InstallmentStatus.LATE.value,
                'days_overdue': days_overdue,
                'updated_at': datetime.now(timezone.utc).isoformat()
            }

            fee = None
            if days_overdue > self.late_fee_grace_days and installment.late_fee.is_zero():
                fee = Money.ceil(
                    installment.total_amount.amount * self.late_fee_rate, installment.currency
                )
                changes['late_fee'] = str(fee.amount)

            # A payment landing first wins; skip the installment in that case
            swapped = self.storage.update_where(
                self.schedules_table,
                installment.id,
                expected={'status': installment.status.value},
                changes=changes
            )
            if not swapped:
                continue

            if fee is not None:
                logger.info(
                    "Charged late fee %s on installment %s (%d days overdue)",
                    fee.to_string(), installment.id, days_overdue
                )

            if installment.status == InstallmentStatus.PENDING:
                updated = self.get_installment(installment.id)
                newly_late.append(updated)
                if self.audit_trail:
                    self.audit_trail.log_event(
                        action=AuditAction.INSTALLMENT_MARKED_LATE,
                        category=AuditCategory.PAYMENTS,
                        target_resource=installment.loan_id,
                        severity=AuditSeverity.WARNING,
                        details={
                            "installment_id": installment.id,
                            "due_date": installment.due_date,
                            "days_overdue": days_overdue,
                            "late_fee": updated.late_fee.to_string()
                        }
                    )

        if newly_late:
            logger.info("Marked %d installments late as of %s", len(newly_late), as_of.isoformat())
        return newly_late

    def _update_loan_after_payment(self, loan_id: str, paid_at: datetime) -> bool:
        """Refresh the loan row after a payment. Returns True if it completed the loan."""
        schedule = self.get_schedule(loan_id)
        unpaid = [i for i in schedule if not i.is_paid]

        changes: Dict[str, object] = {
            'next_payment_date': unpaid[0].due_date.isoformat() if unpaid else None,
            'last_payment_date': paid_at.date().isoformat(),
            'updated_at': datetime.now(timezone.utc).isoformat()
        }
        if schedule:
            currency = schedule[0].currency
            remaining = sum((i.amount_due for i in unpaid), Money.zero(currency))
            changes['remaining_amount'] = str(remaining.amount)

        if not self.storage.update_where(self.loans_table, loan_id, {}, changes):
            logger.warning("Loan %s not found while recording a payment", loan_id)
            return False

        if unpaid:
            return False
        return self.storage.update_where(
            self.loans_table, loan_id, {'status': 'active'}, {'status': 'completed'}
        )

    def _installment_to_dict(self, installment: Installment) -> Dict:
        """Convert installment to dictionary"""
        return {
            'id': installment.id,
            'created_at': installment.created_at.isoformat(),
            'updated_at': installment.updated_at.isoformat(),
            'loan_id': installment.loan_id,
            'installment_number': installment.installment_number,
            'due_date': installment.due_date.isoformat(),
            'currency': installment.currency.code,
            'principal_amount': str(installment.principal_amount.amount),
            'interest_amount': str(installment.interest_amount.amount),
            'total_amount': str(installment.total_amount.amount),
            'remaining_principal': str(installment.remaining_principal.amount),
            'status': installment.status.value,
            'paid_amount': str(installment.paid_amount.amount) if installment.paid_amount else None,
            'paid_at': installment.paid_at.isoformat() if installment.paid_at else None,
            'late_fee': str(installment.late_fee.amount),
            'days_overdue': installment.days_overdue
        }

    def _installment_from_dict(self, data: Dict) -> Installment:
        """Convert dictionary to installment"""
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return Installment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=get_money('principal_amount'),
            interest_amount=get_money('interest_amount'),
            total_amount=get_money('total_amount'),
            remaining_principal=get_money('remaining_principal'),
            status=InstallmentStatus(data['status']),
            paid_amount=get_money('paid_amount') if data.get('paid_amount') else None,
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            late_fee=get_money('late_fee'),
            days_overdue=data.get('days_overdue', 0)
        )
