# trademarket/stripe_webhook.py
from fastapi import APIRouter, Depends, HTTPException, Request

from .deps import get_gateway, get_orchestrator
from .gateway import PaymentGateway, WebhookSignatureError
from .logging_config import get_logger
from .orchestrator import PaymentOrchestrator

router = APIRouter(prefix="/stripe", tags=["stripe"])
logger = get_logger("trademarket.webhook")


@router.post("/webhook")
async def webhook(
    req: Request,
    gateway: PaymentGateway = Depends(get_gateway),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    try:
        event = gateway.parse_event(payload, sig)
    except WebhookSignatureError as e:
        logger.warning("Rejected webhook: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook error: {e}")

    if event is None:
        return {"ok": True, "ignored": True}

    # Infrastructure errors propagate as 500 so Stripe redelivers
    await orchestrator.reconcile(event)
    return {"ok": True}
