"""
Billing API routes.

- POST /api/billing/webhook: Handle Stripe webhooks
"""
from fastapi import APIRouter, Request, HTTPException
from starlette.concurrency import run_in_threadpool

from markethub.features.billing.service import billing_enabled, process_webhook_event
from markethub.core.errors import ExternalServiceError
from markethub.features.billing.provider import BillingProviderError, BillingWebhookError


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies the signature, skips already-seen events and re-resolves the
    entitlement of the user linked to the event's customer.

    Returns:
        {"received": true, "event_id": ...}

    Errors:
        400: Invalid signature or payload
        502: Billing provider unreachable (Stripe redelivers the event)
        503: Billing disabled
    """
    if not billing_enabled():
        raise HTTPException(status_code=503, detail="Billing disabled")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = await run_in_threadpool(process_webhook_event, headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BillingProviderError as e:
        raise ExternalServiceError(str(e), code="billing_provider_error")
    return {"received": True, "event_id": result.event_id}
