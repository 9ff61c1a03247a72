"""
Payment endpoints

Clients only ever see a generic failure message; the precise reason is
logged server-side.
"""

from fastapi import APIRouter, HTTPException, Depends

from .dependencies import MicrofinanceSystem, get_system
from .schemas import RecordPaymentRequest, InstallmentResponse
from ..logging_config import get_logger, log_action
from ..exceptions import (
    InstallmentNotFoundError, AlreadyPaidError, InvalidPaymentError, LoanNotFoundError,
    NgnaSoroError
)


router = APIRouter()
logger = get_logger("ngnasoro.api.payments")

PAYMENT_FAILED = "Le paiement n'a pas pu être enregistré. Veuillez réessayer ou contacter votre SFD."

ERROR_STATUS = {
    InstallmentNotFoundError: 404,
    AlreadyPaidError: 409,
    InvalidPaymentError: 400,
    LoanNotFoundError: 404,
}


@router.post("", response_model=InstallmentResponse)
async def record_payment(
    request: RecordPaymentRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Record a repayment against one installment"""
    try:
        installment = system.schedule_store.record_payment(
            request.installment_id,
            request.paid_amount,
            request.paid_at
        )
    except NgnaSoroError as e:
        log_action(
            logger, "warning", f"Payment rejected: {e}",
            action="record_payment",
            resource=request.installment_id,
            extra={"error_kind": type(e).__name__}
        )
        raise HTTPException(status_code=ERROR_STATUS.get(type(e), 400), detail=PAYMENT_FAILED)

    log_action(
        logger, "info", "Payment recorded",
        action="record_payment",
        resource=installment.id,
        extra={"loan_id": installment.loan_id, "paid_amount": str(request.paid_amount)}
    )
    return InstallmentResponse.from_installment(installment)
