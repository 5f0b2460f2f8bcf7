from datetime import datetime
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict
from billing.models.subscription import SubscriptionStatus


class SubscriptionAddonResponse(BaseModel):
    addon_id: str
    quantity: int
    model_config = ConfigDict(from_attributes=True)


class SubscriptionResponse(BaseModel):
    id: UUID
    user_id: str
    stripe_subscription_id: str
    stripe_customer_id: str
    status: SubscriptionStatus
    plan_id: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    addons: list[SubscriptionAddonResponse] = []
    model_config = ConfigDict(from_attributes=True)


class SubscriptionStatusResponse(BaseModel):
    has_active_subscription: bool
    subscription: Optional[SubscriptionResponse] = None
