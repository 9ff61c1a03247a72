"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from ..currency import Money
from ..loans import Loan
from ..schedules import Installment
from ..notifications import Notification
from ..amortization import AmortizationResult, ScheduledInstallment


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (XOF, EUR, USD)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Loan schemas
class CreateLoanRequest(BaseModel):
    client_id: str
    sfd_id: str
    principal: Decimal = Field(..., description="Amount lent")
    annual_interest_rate: Decimal = Field(..., description="Flat rate in percent, e.g. 5 for 5%")
    duration_months: int
    purpose: Optional[str] = None


class ApproveLoanRequest(BaseModel):
    approved_by: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    disbursement_date: Optional[date] = None
    disbursed_by: Optional[str] = None


class LoanStatusChangeRequest(BaseModel):
    reason: Optional[str] = None
    user_id: Optional[str] = None


class LoanResponse(BaseModel):
    id: str
    client_id: str
    sfd_id: str
    status: str
    principal: MoneyModel
    annual_interest_rate: str
    duration_months: int
    monthly_payment: MoneyModel
    total_repayable: MoneyModel
    remaining_amount: MoneyModel
    purpose: Optional[str] = None
    disbursement_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanResponse':
        return cls(
            id=loan.id,
            client_id=loan.client_id,
            sfd_id=loan.sfd_id,
            status=loan.status.value,
            principal=MoneyModel.from_money(loan.principal),
            annual_interest_rate=str(loan.annual_interest_rate),
            duration_months=loan.duration_months,
            monthly_payment=MoneyModel.from_money(loan.monthly_payment),
            total_repayable=MoneyModel.from_money(loan.total_repayable),
            remaining_amount=MoneyModel.from_money(loan.remaining_amount),
            purpose=loan.purpose,
            disbursement_date=loan.disbursement_date,
            next_payment_date=loan.next_payment_date,
            last_payment_date=loan.last_payment_date
        )


class InstallmentResponse(BaseModel):
    id: str
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: str
    interest_amount: str
    total_amount: str
    remaining_principal: str
    late_fee: str
    currency: str
    status: str
    days_overdue: int
    paid_amount: Optional[str] = None
    paid_at: Optional[datetime] = None

    @classmethod
    def from_installment(cls, installment: Installment) -> 'InstallmentResponse':
        return cls(
            id=installment.id,
            loan_id=installment.loan_id,
            installment_number=installment.installment_number,
            due_date=installment.due_date,
            principal_amount=str(installment.principal_amount.amount),
            interest_amount=str(installment.interest_amount.amount),
            total_amount=str(installment.total_amount.amount),
            remaining_principal=str(installment.remaining_principal.amount),
            late_fee=str(installment.late_fee.amount),
            currency=installment.currency.code,
            status=installment.status.value,
            days_overdue=installment.days_overdue,
            paid_amount=str(installment.paid_amount.amount) if installment.paid_amount else None,
            paid_at=installment.paid_at
        )


# Payment schemas
class RecordPaymentRequest(BaseModel):
    installment_id: str
    paid_amount: Decimal
    paid_at: Optional[datetime] = None


# Reminder schemas
class RunRemindersRequest(BaseModel):
    today: Optional[date] = None


# Calculator schemas
class CalculatorRequest(BaseModel):
    principal: Decimal
    annual_interest_rate: Decimal
    duration_months: int
    disbursement_date: Optional[date] = None


class ScheduleEntryModel(BaseModel):
    installment_number: int
    due_date: date
    principal_amount: str
    interest_amount: str
    total_amount: str
    remaining_principal: str

    @classmethod
    def from_entry(cls, entry: ScheduledInstallment) -> 'ScheduleEntryModel':
        return cls(
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            principal_amount=str(entry.principal_amount.amount),
            interest_amount=str(entry.interest_amount.amount),
            total_amount=str(entry.total_amount.amount),
            remaining_principal=str(entry.remaining_principal.amount)
        )


class CalculatorResponse(BaseModel):
    monthly_payment: MoneyModel
    total_repayable: MoneyModel
    total_interest: MoneyModel
    schedule: List[ScheduleEntryModel]

    @classmethod
    def from_result(cls, result: AmortizationResult) -> 'CalculatorResponse':
        return cls(
            monthly_payment=MoneyModel.from_money(result.monthly_payment),
            total_repayable=MoneyModel.from_money(result.total_repayable),
            total_interest=MoneyModel.from_money(result.total_interest),
            schedule=[ScheduleEntryModel.from_entry(entry) for entry in result.schedule]
        )


# Notification schemas
class NotificationResponse(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    action_url: str
    urgency: str
    read: bool
    created_at: datetime

    @classmethod
    def from_notification(cls, notification: Notification) -> 'NotificationResponse':
        return cls(
            id=notification.id,
            user_id=notification.user_id,
            type=notification.notification_type,
            title=notification.title,
            message=notification.message,
            action_url=notification.action_url,
            urgency=notification.urgency.value,
            read=notification.read,
            created_at=notification.created_at
        )
