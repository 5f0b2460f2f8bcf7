import logging
from billing.core.config import settings
from billing.core.exceptions import InvalidTrigger
from billing.db.session import async_session_factory
from billing.models.webhook_event import WebhookEvent
from billing.schemas.webhook import WebhookResponse, WebhookTrigger
from billing.services.dedup import derive_webhook_key
from billing.services.idempotency_guard import WebhookGuard
from billing.services.ledger_store import SQLAlchemyLedgerStore
from billing.services.subscription_service import SubscriptionService, parse_event_payload, subscription_service

logger = logging.getLogger(__name__)


class WebhookService:
    def __init__(self, guard: WebhookGuard, subscriptions: SubscriptionService):
        self.guard = guard
        self.subscriptions = subscriptions

    async def process_event(self, trigger: WebhookTrigger) -> WebhookResponse:
        """
        Run a verified provider event through the ledger.
        Everything that can reject the event happens before the ledger is touched.
        """
        key = derive_webhook_key(trigger)
        if not trigger.type:
            raise InvalidTrigger("Missing event type")
        event_object = trigger.event_object
        payload = parse_event_payload(trigger.type, event_object)

        logger.info(f"Received webhook: {trigger.type} (id: {key.event_id})")

        async def effect():
            await self.subscriptions.apply(trigger.type, payload)

        outcome = await self.guard.handle(key, trigger.type, event_object, effect)
        return WebhookResponse(event_id=key.event_id, status=outcome.value)


webhook_service = WebhookService(
    guard=WebhookGuard(
        SQLAlchemyLedgerStore(WebhookEvent, async_session_factory),
        claim_in_flight=settings.WEBHOOK_CLAIM_IN_FLIGHT,
        claim_ttl_seconds=settings.WEBHOOK_CLAIM_TTL_SECONDS,
    ),
    subscriptions=subscription_service,
)
