"""
Loan endpoints
"""

from typing import List, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import MicrofinanceSystem, get_system
from .schemas import (
    CreateLoanRequest, ApproveLoanRequest, DisburseLoanRequest,
    LoanStatusChangeRequest, LoanResponse, InstallmentResponse
)
from ..loans import LoanStatus
from ..exceptions import (
    InvalidLoanTermsError, InvalidLoanStateError, LoanNotFoundError, DuplicateScheduleError
)


router = APIRouter()


def _raise_http(e: Exception):
    if isinstance(e, LoanNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidLoanStateError, DuplicateScheduleError)):
        raise HTTPException(status_code=409, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LoanResponse)
async def create_loan(
    request: CreateLoanRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Register a loan application"""
    try:
        loan = system.loan_manager.create_loan(
            client_id=request.client_id,
            sfd_id=request.sfd_id,
            principal=request.principal,
            annual_interest_rate=request.annual_interest_rate,
            duration_months=request.duration_months,
            purpose=request.purpose
        )
    except InvalidLoanTermsError as e:
        _raise_http(e)
    return LoanResponse.from_loan(loan)


@router.get("", response_model=List[LoanResponse])
async def list_loans(
    client_id: Optional[str] = Query(None),
    sfd_id: Optional[str] = Query(None),
    loan_status: Optional[str] = Query(None, alias="status"),
    system: MicrofinanceSystem = Depends(get_system)
):
    """List loans of a client or of an SFD"""
    if not client_id and not sfd_id:
        raise HTTPException(status_code=400, detail="client_id or sfd_id is required")

    if client_id:
        loans = system.loan_manager.get_client_loans(client_id)
        if sfd_id:
            loans = [loan for loan in loans if loan.sfd_id == sfd_id]
    else:
        loans = system.loan_manager.get_sfd_loans(sfd_id)

    if loan_status:
        try:
            wanted = LoanStatus(loan_status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown loan status: {loan_status}")
        loans = [loan for loan in loans if loan.status == wanted]

    return [LoanResponse.from_loan(loan) for loan in loans]


@router.get("/{loan_id}", response_model=LoanResponse)
async def get_loan(
    loan_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return LoanResponse.from_loan(loan)


@router.get("/{loan_id}/schedule", response_model=List[InstallmentResponse])
async def get_loan_schedule(
    loan_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Repayment schedule of a disbursed loan"""
    try:
        schedule = system.loan_manager.get_schedule(loan_id)
    except LoanNotFoundError as e:
        _raise_http(e)
    return [InstallmentResponse.from_installment(i) for i in schedule]


@router.post("/{loan_id}/approve", response_model=LoanResponse)
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest = ApproveLoanRequest(),
    system: MicrofinanceSystem = Depends(get_system)
):
    try:
        loan = system.loan_manager.approve(loan_id, approved_by=request.approved_by)
    except (LoanNotFoundError, InvalidLoanStateError) as e:
        _raise_http(e)
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/disburse", response_model=LoanResponse)
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest = DisburseLoanRequest(),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Disburse an approved loan and generate its repayment schedule"""
    try:
        loan = system.loan_manager.disburse(
            loan_id,
            disbursement_date=request.disbursement_date,
            disbursed_by=request.disbursed_by
        )
    except (LoanNotFoundError, InvalidLoanStateError, InvalidLoanTermsError,
            DuplicateScheduleError) as e:
        _raise_http(e)
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/withdraw", response_model=LoanResponse)
async def withdraw_loan(
    loan_id: str,
    request: LoanStatusChangeRequest = LoanStatusChangeRequest(),
    system: MicrofinanceSystem = Depends(get_system)
):
    try:
        loan = system.loan_manager.withdraw(
            loan_id, reason=request.reason, withdrawn_by=request.user_id
        )
    except (LoanNotFoundError, InvalidLoanStateError) as e:
        _raise_http(e)
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/default", response_model=LoanResponse)
async def default_loan(
    loan_id: str,
    request: LoanStatusChangeRequest = LoanStatusChangeRequest(),
    system: MicrofinanceSystem = Depends(get_system)
):
    try:
        loan = system.loan_manager.mark_defaulted(
            loan_id, reason=request.reason, marked_by=request.user_id
        )
    except (LoanNotFoundError, InvalidLoanStateError) as e:
        _raise_http(e)
    return LoanResponse.from_loan(loan)
