from .mixins import TimestampMixin as TimestampMixin
from .user import User as User, Organization as Organization
from .subscription import Subscription as Subscription, SubscriptionAddon as SubscriptionAddon, SubscriptionStatus as SubscriptionStatus
from .webhook_event import WebhookEvent as WebhookEvent
from .report import AutoReport as AutoReport, ReportStatus as ReportStatus

__all__ = ["TimestampMixin", "User", "Organization", "Subscription", "SubscriptionAddon",
           "SubscriptionStatus", "WebhookEvent", "AutoReport", "ReportStatus"]
