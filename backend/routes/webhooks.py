"""Webhook Routes - payment gateway callbacks.

POST /api/billing/webhook/paymob - transaction processed callback.
Answers plain "OK" when the event was applied, ignored or already seen; answers
500 when applying it failed so the gateway retries.
"""
from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from services.payment_reconciler import payment_reconciler
import logging
import json

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/billing/webhook/paymob")
async def paymob_webhook(request: Request):
    try:
        payload = json.loads(await request.body() or b"{}")
    except ValueError as e:
        logger.error(f"Paymob webhook payload is not JSON: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    success, message, details = await payment_reconciler.process_webhook(payload)
    if not success:
        logger.error(f"Paymob webhook processing failed: {message} {details}")
        return PlainTextResponse("Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return PlainTextResponse("OK")
