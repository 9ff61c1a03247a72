"""
Repayment simulation endpoint
"""

from datetime import date
from fastapi import APIRouter, HTTPException, Depends

from .dependencies import MicrofinanceSystem, get_system
from .schemas import CalculatorRequest, CalculatorResponse
from ..amortization import AmortizationCalculator
from ..exceptions import InvalidLoanTermsError


router = APIRouter()


@router.post("/preview", response_model=CalculatorResponse)
async def preview_schedule(
    request: CalculatorRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Monthly payment and schedule a loan would get, without creating it"""
    calculator = AmortizationCalculator(system.currency)
    try:
        result = calculator.calculate(
            request.principal,
            request.annual_interest_rate,
            request.duration_months,
            request.disbursement_date or date.today()
        )
    except InvalidLoanTermsError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CalculatorResponse.from_result(result)
