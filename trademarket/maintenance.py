# trademarket/maintenance.py
from typing import Optional

from fastapi import APIRouter, Depends

from .deps import get_caller, get_gate
from .gate import AuthorizationGate
from .models import Caller, ExpireQuotesOut

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/expire-quotes", response_model=ExpireQuotesOut)
async def expire_quotes(
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    """Expire pending quotes older than QUOTE_EXPIRY_DAYS. Run from a scheduler."""
    return {"expired": await gate.expire_quotes(caller)}
