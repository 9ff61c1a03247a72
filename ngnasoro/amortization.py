"""
Amortization Module

Flat-rate repayment schedules for SFD loans. Interest is simple interest on
the original principal (total repayable = P x (1 + r/100)), spread over equal
monthly installments rounded up to the currency unit. The final installment
absorbs the rounding so the schedule sums exactly to the total repayable.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass
from typing import List, Union
import calendar

from .currency import Money, Currency
from .exceptions import InvalidLoanTermsError


@dataclass(frozen=True)
class ScheduledInstallment:
    """One computed installment, before it is persisted"""
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    remaining_principal: Money


@dataclass(frozen=True)
class AmortizationResult:
    """Output of the calculator: payment figures plus the full schedule"""
    principal: Money
    annual_interest_rate: Decimal
    duration_months: int
    monthly_payment: Money
    total_repayable: Money
    total_interest: Money
    schedule: List[ScheduledInstallment]


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class AmortizationCalculator:
    """
    Converts (principal, annual rate, duration) into a monthly payment and
    an installment schedule.
    """

    def __init__(self, currency: Currency = Currency.XOF):
        self.currency = currency

    def _validate(self, principal: Decimal, annual_rate: Decimal, duration_months: int) -> None:
        if isinstance(duration_months, bool) or not isinstance(duration_months, int):
            raise InvalidLoanTermsError(
                f"Duration must be a whole number of months, got {duration_months!r}"
            )
        if duration_months <= 0:
            raise InvalidLoanTermsError(f"Duration must be positive, got {duration_months}")
        if principal <= Decimal('0'):
            raise InvalidLoanTermsError(f"Principal must be positive, got {principal}")
        if annual_rate < Decimal('0'):
            raise InvalidLoanTermsError(f"Interest rate cannot be negative, got {annual_rate}")

    def monthly_payment(
        self,
        principal: Union[Decimal, int, str],
        annual_rate: Union[Decimal, int, str],
        duration_months: int
    ) -> Money:
        """ceil(P * (1 + r/100) / n) in the calculator's currency"""
        principal = Decimal(str(principal))
        annual_rate = Decimal(str(annual_rate))
        self._validate(principal, annual_rate, duration_months)
        total = self._total_repayable(Money(principal, self.currency), annual_rate)
        return Money.ceil(total.amount / Decimal(duration_months), self.currency)

    def _total_repayable(self, principal: Money, annual_rate: Decimal) -> Money:
        factor = Decimal('1') + annual_rate / Decimal('100')
        return Money.ceil(principal.amount * factor, self.currency)

    def calculate(
        self,
        principal: Union[Decimal, int, str],
        annual_rate: Union[Decimal, int, str],
        duration_months: int,
        disbursement_date: date
    ) -> AmortizationResult:
        """
        Build the full repayment schedule

        Args:
            principal: Amount lent
            annual_rate: Flat interest rate as a percentage (5 means 5%)
            duration_months: Number of monthly installments
            disbursement_date: Installment k falls due k months after this date

        Returns:
            AmortizationResult with the monthly payment and n installments
        """
        principal = Decimal(str(principal))
        annual_rate = Decimal(str(annual_rate))
        self._validate(principal, annual_rate, duration_months)

        principal_money = Money(principal, self.currency)
        if not principal_money.is_positive():
            raise InvalidLoanTermsError(
                f"Principal {principal} rounds to zero in {self.currency.code}"
            )

        total_repayable = self._total_repayable(principal_money, annual_rate)
        total_interest = total_repayable - principal_money
        monthly_payment = Money.ceil(
            total_repayable.amount / Decimal(duration_months), self.currency
        )

        final_total = total_repayable - monthly_payment * (duration_months - 1)
        if not final_total.is_positive():
            raise InvalidLoanTermsError(
                f"Principal {principal_money.to_string()} is too small to spread over "
                f"{duration_months} monthly installments"
            )

        schedule: List[ScheduledInstallment] = []
        cumulative_total = Money.zero(self.currency)
        cumulative_interest = Money.zero(self.currency)
        remaining_principal = principal_money

        for number in range(1, duration_months + 1):
            if number == duration_months:
                installment_total = final_total
            else:
                installment_total = monthly_payment
            cumulative_total = cumulative_total + installment_total

            # Interest is allocated on the running total so the rounded
            # shares always add up to exactly the flat interest
            if number == duration_months:
                interest_to_date = total_interest
            else:
                share = cumulative_total.amount * total_interest.amount / total_repayable.amount
                interest_to_date = Money(
                    share.quantize(self.currency.unit, rounding=ROUND_HALF_UP), self.currency
                )
            interest = interest_to_date - cumulative_interest
            cumulative_interest = interest_to_date

            principal_part = installment_total - interest
            remaining_principal = remaining_principal - principal_part

            schedule.append(ScheduledInstallment(
                installment_number=number,
                due_date=add_months(disbursement_date, number),
                principal_amount=principal_part,
                interest_amount=interest,
                total_amount=installment_total,
                remaining_principal=remaining_principal
            ))

        return AmortizationResult(
            principal=principal_money,
            annual_interest_rate=annual_rate,
            duration_months=duration_months,
            monthly_payment=monthly_payment,
            total_repayable=total_repayable,
            total_interest=total_interest,
            schedule=schedule
        )
