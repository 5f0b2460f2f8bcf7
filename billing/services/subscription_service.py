import logging
from datetime import datetime, timezone
from typing import Optional
from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from billing.core.exceptions import InvalidTrigger
from billing.db.session import async_session_factory
from billing.models.subscription import Subscription, SubscriptionAddon, SubscriptionStatus
from billing.models.user import User
from billing.schemas.webhook import EventPayload, InvoiceObject, SubscriptionObject, UnhandledObject

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

EVENT_PAYLOAD_MODELS: dict[str, type[EventPayload]] = {
    SUBSCRIPTION_CREATED: SubscriptionObject,
    SUBSCRIPTION_UPDATED: SubscriptionObject,
    SUBSCRIPTION_DELETED: SubscriptionObject,
    INVOICE_PAYMENT_SUCCEEDED: InvoiceObject,
    INVOICE_PAYMENT_FAILED: InvoiceObject,
}


def parse_event_payload(event_kind: str, event_object: dict) -> EventPayload:
    """Validate the event object against the schema of its kind. Unknown kinds pass through untyped."""
    model = EVENT_PAYLOAD_MODELS.get(event_kind, UnhandledObject)
    try:
        return model.model_validate(event_object)
    except ValidationError as e:
        raise InvalidTrigger(f"Malformed {event_kind} payload: {e.error_count()} validation error(s)") from e


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SubscriptionService:
    """
    Applies provider events to subscription state.

    Every mutation is keyed by the provider's subscription id and written as
    an upsert or a full replacement, so applying the same event twice ends in
    the same rows as applying it once.
    """

    def __init__(self, session_factory: async_sessionmaker = async_session_factory, max_retries: int = 3):
        self.session_factory = session_factory
        self.max_retries = max_retries
        self._handlers = {
            SUBSCRIPTION_CREATED: self.handle_subscription_change,
            SUBSCRIPTION_UPDATED: self.handle_subscription_change,
            SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            INVOICE_PAYMENT_FAILED: self.handle_payment_failed,
        }

    async def apply(self, event_kind: str, payload: EventPayload):
        handler = self._handlers.get(event_kind)
        if handler is None:
            logger.info(f"Unhandled event type: {event_kind}")
            return
        await handler(payload)

    async def handle_subscription_change(self, subscription: SubscriptionObject):
        user_id = subscription.metadata.user_id
        if not user_id:
            logger.error(f"No userId in metadata of subscription {subscription.id}, skipping")
            return

        values = {
            "user_id": user_id,
            "stripe_customer_id": subscription.customer,
            "status": subscription.status,
            "current_period_start": _from_timestamp(subscription.start_date),
            "current_period_end": _from_timestamp(subscription.ended_at),
            "trial_start": _from_timestamp(subscription.trial_start),
            "trial_end": _from_timestamp(subscription.trial_end),
            "plan_id": subscription.metadata.plan_id or "unknown",
        }
        addons = sorted(set(subscription.metadata.addons))

        for attempt in range(self.max_retries):
            try:
                async with self.session_factory() as db, db.begin():
                    if await db.get(User, user_id) is None:
                        # redelivery can never succeed, same as a missing userId
                        logger.error(f"Unknown user {user_id} in metadata of subscription {subscription.id}, skipping")
                        return
                    row = await self._upsert_subscription(db, subscription.id, values)
                    # full replacement of the add-on set, never an incremental diff
                    await db.execute(delete(SubscriptionAddon).where(SubscriptionAddon.subscription_id == row.id))
                    db.add_all([SubscriptionAddon(subscription_id=row.id, addon_id=addon_id, quantity=1)
                                for addon_id in addons])
                logger.info(f"Processed subscription {subscription.id} for user {user_id} ({len(addons)} add-ons)")
                return
            except IntegrityError:
                # only a concurrent insert of the same subscription is worth another try, as an update
                if attempt == self.max_retries - 1 or not await self._subscription_exists(subscription.id):
                    raise
                logger.info(f"subscription {subscription.id} inserted concurrently, retrying as update")

    async def _subscription_exists(self, stripe_subscription_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription.id).where(Subscription.stripe_subscription_id == stripe_subscription_id))
            return result.first() is not None

    async def _upsert_subscription(self, db: AsyncSession, stripe_subscription_id: str, values: dict) -> Subscription:
        result = await db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id))
        row = result.scalar_one_or_none()
        if row is None:
            row = Subscription(stripe_subscription_id=stripe_subscription_id, **values)
            db.add(row)
        else:
            for field, value in values.items():
                setattr(row, field, value)
        await db.flush()
        return row

    async def handle_subscription_deleted(self, subscription: SubscriptionObject):
        await self._set_status(subscription.id, SubscriptionStatus.CANCELED)

    async def handle_payment_succeeded(self, invoice: InvoiceObject):
        if invoice.subscription_id:
            await self._set_status(invoice.subscription_id, SubscriptionStatus.ACTIVE)
        logger.info(f"Payment succeeded for invoice {invoice.id}")

    async def handle_payment_failed(self, invoice: InvoiceObject):
        if invoice.subscription_id:
            await self._set_status(invoice.subscription_id, SubscriptionStatus.PAST_DUE)
        logger.info(f"Payment failed for invoice {invoice.id}")

    async def _set_status(self, stripe_subscription_id: str, status: SubscriptionStatus):
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(Subscription)
                .where(Subscription.stripe_subscription_id == stripe_subscription_id)
                .values(status=status)
                .execution_options(synchronize_session=False))
        if result.rowcount > 0:
            logger.info(f"Subscription {stripe_subscription_id} marked {status.value}")
        else:
            logger.warning(f"Subscription {stripe_subscription_id} not found, status {status.value} not applied")

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .where(Subscription.status == SubscriptionStatus.ACTIVE)
                .order_by(Subscription.updated_at.desc())
                .limit(1))
            return result.scalar_one_or_none()

    async def get_latest_subscription(self, user_id: str) -> Optional[Subscription]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.updated_at.desc())
                .limit(1))
            return result.scalar_one_or_none()

    async def list_reportable_user_ids(self) -> list[str]:
        """Users with an active or trialing subscription, for scheduled reports."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription.user_id)
                .where(Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING]))
                .distinct()
                .order_by(Subscription.user_id))
            return list(result.scalars().all())


subscription_service = SubscriptionService()
