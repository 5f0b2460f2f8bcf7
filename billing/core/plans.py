from typing import Literal
from pydantic import BaseModel


class Plan(BaseModel):
    name: str
    price: int  # cents
    interval: Literal["month", "year"] = "month"
    features: list[str]
    trial_days: int = 14


class Addon(BaseModel):
    name: str
    price: int  # cents
    interval: Literal["month", "year"] = "month"
    description: str


PLANS: dict[str, Plan] = {
    "basic": Plan(name="Basic Plan", price=1000,
                  features=["Up to 5 projects", "Basic support", "1GB storage"]),
    "pro": Plan(name="Pro Plan", price=2500,
                features=["Unlimited projects", "Priority support", "10GB storage", "Advanced analytics"]),
    "enterprise": Plan(name="Enterprise Plan", price=5000,
                       features=["Everything in Pro", "Custom integrations", "100GB storage", "Dedicated support"]),
}

ADDONS: dict[str, Addon] = {
    "extra_storage": Addon(name="Extra Storage", price=500, description="Additional 10GB of storage"),
    "priority_support": Addon(name="Priority Support", price=1000, description="24/7 priority support"),
    "custom_branding": Addon(name="Custom Branding", price=2000, description="Remove branding and add your own"),
}
