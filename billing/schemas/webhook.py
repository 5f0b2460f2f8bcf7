import json
from typing import Any, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from billing.models.subscription import SubscriptionStatus


class WebhookTrigger(BaseModel):
    """Verified provider event envelope."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def event_object(self) -> dict[str, Any]:
        return self.data.get("object", {}) or {}


class SubscriptionMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    plan_id: Optional[str] = Field(default=None, alias="planId")
    addons: list[str] = Field(default_factory=list)

    @field_validator("addons", mode="before")
    @classmethod
    def parse_addons(cls, value):
        # the provider only stores strings in metadata, add-ons arrive as a JSON list
        if value is None or value == "":
            return []
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f"addons metadata is not valid JSON: {e}") from e
        if not isinstance(value, list):
            raise ValueError("addons metadata must be a list")
        return [str(addon) for addon in value]


class SubscriptionObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Literal["subscription"] = "subscription"
    id: str
    customer: str
    status: SubscriptionStatus
    start_date: Optional[int] = None
    ended_at: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    metadata: SubscriptionMetadata = Field(default_factory=SubscriptionMetadata)


class InvoiceObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Literal["invoice"] = "invoice"
    id: str
    subscription: Optional[Union[str, dict[str, Any]]] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if isinstance(self.subscription, dict):
            return self.subscription.get("id")
        return self.subscription


class UnhandledObject(BaseModel):
    model_config = ConfigDict(extra="allow")


EventPayload = Union[SubscriptionObject, InvoiceObject, UnhandledObject]


class WebhookResponse(BaseModel):
    received: bool = True
    event_id: str
    status: str
