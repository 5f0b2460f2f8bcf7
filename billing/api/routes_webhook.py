import json
import logging
import stripe
from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError
from billing.api.deps import get_app_settings, get_webhook_service
from billing.core.config import Settings
from billing.core.exceptions import InvalidSignature, InvalidTrigger
from billing.schemas.webhook import WebhookResponse, WebhookTrigger
from billing.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    webhook_service: WebhookService = Depends(get_webhook_service),
    app_settings: Settings = Depends(get_app_settings),
):
    """
    Provider webhook ingress.

    The Stripe-Signature header (t=<timestamp>,v1=<hmac>) is checked on the
    raw body before anything else; an unsigned, badly signed or stale event
    never reaches the ledger. A 2xx answer tells the provider to stop
    redelivering, any error makes it retry.
    """
    payload = await request.body()
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidTrigger("Event body is not valid UTF-8") from e

    if app_settings.VERIFY_WEBHOOK_SIGNATURE:
        if not stripe_signature:
            raise InvalidSignature("Missing signature")
        try:
            stripe.WebhookSignature.verify_header(
                body, stripe_signature, app_settings.WEBHOOK_SECRET, app_settings.WEBHOOK_TOLERANCE_SECONDS)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignature() from e

    try:
        trigger = WebhookTrigger.model_validate(json.loads(body))
    except (json.JSONDecodeError, ValidationError) as e:
        raise InvalidTrigger(f"Invalid event body: {e}") from e

    return await webhook_service.process_event(trigger)
