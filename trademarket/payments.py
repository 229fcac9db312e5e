# trademarket/payments.py
from typing import Optional

from fastapi import APIRouter, Depends

from .deps import get_caller, get_gate
from .gate import AuthorizationGate
from .models import Caller, CheckoutIn, CheckoutOut, Payment

router = APIRouter(tags=["payments"])


@router.post("/jobs/{job_id}/checkout", response_model=CheckoutOut)
async def create_checkout(
    job_id: str,
    payload: CheckoutIn,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    handle = await gate.initiate_payment(caller, job_id, payload.quote_id, payload.payment_type)
    return {"payment_id": handle.payment_id, "checkout_url": handle.checkout_url}


@router.get("/jobs/{job_id}/payments", response_model=list[Payment])
async def list_payments(
    job_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.list_payments(caller, job_id)


@router.post("/payments/{payment_id}/refund", response_model=Payment)
async def refund_payment(
    payment_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.refund(caller, payment_id)
