"""
Loan Module

Handles the SFD loan lifecycle: application, approval, disbursement (which
generates the repayment schedule), withdrawal and default. Completion happens
in the schedule store when the last installment is paid.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditAction, AuditCategory
from .amortization import AmortizationCalculator
from .schedules import PaymentScheduleStore, Installment
from .notifications import NotificationSink, NotificationUrgency, NotificationType
from .exceptions import LoanNotFoundError, InvalidLoanStateError, NotificationDeliveryError

logger = logging.getLogger("ngnasoro.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"            # Application submitted
    APPROVED = "approved"          # Approved by the SFD, not yet paid out
    ACTIVE = "active"              # Disbursed and in repayment
    COMPLETED = "completed"        # Every installment paid
    DEFAULTED = "defaulted"        # Written off as in default
    WITHDRAWN = "withdrawn"        # Cancelled before disbursement


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.WITHDRAWN},
    LoanStatus.APPROVED: {LoanStatus.ACTIVE, LoanStatus.WITHDRAWN},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.DEFAULTED: set(),
    LoanStatus.WITHDRAWN: set(),
}


@dataclass
class Loan(StorageRecord):
    """Loan granted by an SFD to one of its clients"""
    client_id: str
    sfd_id: str
    principal: Money
    annual_interest_rate: Decimal       # Flat rate as a percentage
    duration_months: int
    monthly_payment: Money
    total_repayable: Money
    status: LoanStatus = LoanStatus.PENDING
    purpose: Optional[str] = None
    remaining_amount: Optional[Money] = None
    disbursement_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    def __post_init__(self):
        if self.remaining_amount is None:
            self.remaining_amount = self.total_repayable

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def reference(self) -> str:
        """Short reference shown to clients"""
        return self.id[:8]


class LoanManager:
    """
    Manages loans from application through repayment
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: PaymentScheduleStore,
        audit_trail: AuditTrail,
        notifications: Optional[NotificationSink] = None,
        currency: Currency = Currency.XOF
    ):
        self.storage = storage
        self.schedule_store = schedule_store
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.calculator = AmortizationCalculator(currency)
        self.currency = currency

        self.loans_table = "loans"

    def create_loan(
        self,
        client_id: str,
        sfd_id: str,
        principal: Union[Decimal, int, str],
        annual_interest_rate: Union[Decimal, int, str],
        duration_months: int,
        purpose: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Loan:
        """
        Register a loan application

        The terms are validated by computing the schedule they would produce,
        so a loan that could never be disbursed is rejected here.

        Raises:
            InvalidLoanTermsError: Principal, rate or duration are unusable
        """
        preview = self.calculator.calculate(
            principal, annual_interest_rate, duration_months, date.today()
        )

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            sfd_id=sfd_id,
            principal=preview.principal,
            annual_interest_rate=preview.annual_interest_rate,
            duration_months=duration_months,
            monthly_payment=preview.monthly_payment,
            total_repayable=preview.total_repayable,
            purpose=purpose
        )
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

        self.audit_trail.log_event(
            action=AuditAction.LOAN_CREATED,
            category=AuditCategory.LOANS,
            target_resource=loan.id,
            user_id=created_by or client_id,
            details={
                "client_id": client_id,
                "sfd_id": sfd_id,
                "principal": loan.principal.to_string(),
                "annual_interest_rate": loan.annual_interest_rate,
                "duration_months": duration_months,
                "monthly_payment": loan.monthly_payment.to_string()
            }
        )
        logger.info("Created loan %s for client %s", loan.id, client_id)
        return loan

    def approve(self, loan_id: str, approved_by: Optional[str] = None) -> Loan:
        now = datetime.now(timezone.utc)
        loan = self._transition(
            loan_id, LoanStatus.APPROVED,
            {"approved_by": approved_by, "approved_at": now.isoformat()}
        )
        self.audit_trail.log_event(
            action=AuditAction.LOAN_APPROVED,
            category=AuditCategory.LOANS,
            target_resource=loan_id,
            user_id=approved_by,
            details={"client_id": loan.client_id, "sfd_id": loan.sfd_id}
        )
        self._notify(loan, NotificationType.LOAN_STATUS, "Prêt approuvé",
                     f"Votre demande de prêt #{loan.reference} de "
                     f"{loan.principal.to_string()} a été approuvée.")
        return loan

    def disburse(
        self,
        loan_id: str,
        disbursement_date: Optional[date] = None,
        disbursed_by: Optional[str] = None
    ) -> Loan:
        """
        Pay out an approved loan and generate its repayment schedule

        The status change and the schedule are written together; if the
        schedule cannot be stored the loan stays approved.

        Args:
            loan_id: Loan to disburse
            disbursement_date: Date funds were released (defaults to today)
            disbursed_by: Agent performing the disbursement

        Returns:
            The active Loan with next_payment_date set
        """
        if disbursement_date is None:
            disbursement_date = date.today()

        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        self._check_transition(loan, LoanStatus.ACTIVE)

        result = self.calculator.calculate(
            loan.principal.amount, loan.annual_interest_rate,
            loan.duration_months, disbursement_date
        )

        with self.storage.atomic():
            loan = self._transition(loan_id, LoanStatus.ACTIVE, {
                "disbursement_date": disbursement_date.isoformat(),
                "next_payment_date": result.schedule[0].due_date.isoformat(),
                "monthly_payment": str(result.monthly_payment.amount),
                "total_repayable": str(result.total_repayable.amount),
                "remaining_amount": str(result.total_repayable.amount)
            })
            self.schedule_store.create_schedule(loan_id, result.schedule)

        self.audit_trail.log_event(
            action=AuditAction.LOAN_DISBURSED,
            category=AuditCategory.LOANS,
            target_resource=loan_id,
            user_id=disbursed_by,
            details={
                "amount": loan.principal.to_string(),
                "disbursement_date": disbursement_date,
                "monthly_payment": result.monthly_payment.to_string(),
                "total_repayable": result.total_repayable.to_string(),
                "installments": len(result.schedule)
            }
        )
        self._notify(
            loan, NotificationType.LOAN_DISBURSED, "Prêt décaissé",
            f"Votre prêt #{loan.reference} de {loan.principal.to_string()} a été décaissé. "
            f"Première échéance de {result.monthly_payment.to_string()} le "
            f"{result.schedule[0].due_date.strftime('%d/%m/%Y')}."
        )
        logger.info("Disbursed loan %s on %s", loan_id, disbursement_date.isoformat())
        return loan

    def withdraw(self, loan_id: str, reason: Optional[str] = None,
                 withdrawn_by: Optional[str] = None) -> Loan:
        loan = self._transition(loan_id, LoanStatus.WITHDRAWN, {"status_reason": reason})
        self.audit_trail.log_event(
            action=AuditAction.LOAN_WITHDRAWN,
            category=AuditCategory.LOANS,
            target_resource=loan_id,
            user_id=withdrawn_by,
            details={"reason": reason}
        )
        return loan

    def mark_defaulted(self, loan_id: str, reason: Optional[str] = None,
                       marked_by: Optional[str] = None) -> Loan:
        loan = self._transition(loan_id, LoanStatus.DEFAULTED, {"status_reason": reason})
        self.audit_trail.log_event(
            action=AuditAction.LOAN_DEFAULTED,
            category=AuditCategory.LOANS,
            target_resource=loan_id,
            user_id=marked_by,
            details={"reason": reason, "remaining_amount": loan.remaining_amount.to_string()}
        )
        logger.warning("Loan %s marked as defaulted", loan_id)
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def get_client_loans(self, client_id: str) -> List[Loan]:
        """Get all loans for a client"""
        return self._find({"client_id": client_id})

    def get_sfd_loans(self, sfd_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        """Get all loans granted by an SFD, optionally in one status"""
        filters = {"sfd_id": sfd_id}
        if status:
            filters["status"] = status.value
        return self._find(filters)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        if not self.storage.exists(self.loans_table, loan_id):
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return self.schedule_store.get_schedule(loan_id)

    def _find(self, filters: Dict) -> List[Loan]:
        loans = [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def _check_transition(self, loan: Loan, target: LoanStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[loan.status]:
            raise InvalidLoanStateError(
                f"Loan {loan.id} cannot move from {loan.status.value} to {target.value}"
            )

    def _transition(self, loan_id: str, target: LoanStatus, changes: Dict) -> Loan:
        """Move a loan to ``target`` if its current status allows it"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        self._check_transition(loan, target)

        changes = dict(changes)
        changes["status"] = target.value
        changes["updated_at"] = datetime.now(timezone.utc).isoformat()

        if not self.storage.update_where(
            self.loans_table, loan_id, {"status": loan.status.value}, changes
        ):
            current = self.get_loan(loan_id)
            raise InvalidLoanStateError(
                f"Loan {loan_id} changed to {current.status.value} concurrently"
            )
        return self.get_loan(loan_id)

    def _notify(self, loan: Loan, notification_type: NotificationType,
                title: str, message: str) -> None:
        if self.notifications is None:
            return
        try:
            self.notifications.write({
                "user_id": loan.client_id,
                "type": notification_type.value,
                "title": title,
                "message": message,
                "action_url": f"/loans/{loan.id}"
            }, NotificationUrgency.INFO)
        except NotificationDeliveryError as e:
            logger.warning("Could not notify client of loan %s: %s", loan.id, e)

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'client_id': loan.client_id,
            'sfd_id': loan.sfd_id,
            'currency': loan.currency.code,
            'annual_interest_rate': str(loan.annual_interest_rate),
            'duration_months': loan.duration_months,
            'status': loan.status.value,
            'purpose': loan.purpose,
            'approved_by': loan.approved_by,
            'approved_at': loan.approved_at.isoformat() if loan.approved_at else None
        }

        for field in ['principal', 'monthly_payment', 'total_repayable', 'remaining_amount']:
            result[field] = str(getattr(loan, field).amount)

        for field in ['disbursement_date', 'next_payment_date', 'last_payment_date']:
            date_value = getattr(loan, field)
            result[field] = date_value.isoformat() if date_value else None

        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        def get_date(field: str) -> Optional[date]:
            if data.get(field):
                return date.fromisoformat(data[field])
            return None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_id=data['client_id'],
            sfd_id=data['sfd_id'],
            principal=get_money('principal'),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            duration_months=data['duration_months'],
            monthly_payment=get_money('monthly_payment'),
            total_repayable=get_money('total_repayable'),
            status=LoanStatus(data['status']),
            purpose=data.get('purpose'),
            remaining_amount=get_money('remaining_amount'),
            disbursement_date=get_date('disbursement_date'),
            next_payment_date=get_date('next_payment_date'),
            last_payment_date=get_date('last_payment_date'),
            approved_by=data.get('approved_by'),
            approved_at=datetime.fromisoformat(data['approved_at']) if data.get('approved_at') else None
        )
