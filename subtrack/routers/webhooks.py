import logging

from fastapi import APIRouter, Request

from subtrack.core.async_utils import run_sync
from subtrack.services.payment_webhook import PaymentWebhookProcessor

router = APIRouter()

logger = logging.getLogger(__name__)

_processor = PaymentWebhookProcessor()


@router.post(
    "/payments",
    summary="Payment Webhook",
    description="Receive signed payment events. Verified upgrade events grant premium access.",
)
async def payment_webhook(request: Request):
    payload = await request.body()
    headers = {
        name: request.headers.get(name)
        for name in ("webhook-id", "webhook-timestamp", "webhook-signature")
        if request.headers.get(name) is not None
    }
    # Signature failures raise InvalidWebhookSignature (401)
    outcome = await run_sync(_processor.handle, headers, payload)
    logger.info(
        "Payment webhook processed: event=%s type=%s duplicate=%s",
        outcome.event_id, outcome.event_type, outcome.duplicate,
    )
    return {"status": "ok", "event_id": outcome.event_id, "duplicate": outcome.duplicate}
