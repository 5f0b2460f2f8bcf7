from fastapi import Header
from billing.core.config import Settings, get_settings
from billing.services.report_service import ReportService, report_service
from billing.services.subscription_service import SubscriptionService, subscription_service
from billing.services.webhook_service import WebhookService, webhook_service
from billing.workers.report_scheduler import ReportScheduler, report_scheduler


def get_webhook_service() -> WebhookService:
    return webhook_service


def get_report_service() -> ReportService:
    return report_service


def get_subscription_service() -> SubscriptionService:
    return subscription_service


def get_report_scheduler() -> ReportScheduler:
    return report_scheduler


def get_app_settings() -> Settings:
    return get_settings()


async def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    # authentication happens upstream, the gateway forwards the subject id
    return x_user_id
