import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from billing.core.config import settings
from billing.core.exceptions import BillingError
from billing.schemas.report import ReportTrigger, ScheduledReportResult, ScheduleReportsResponse
from billing.services.report_service import ReportService, report_service
from billing.services.subscription_service import SubscriptionService, subscription_service

logger = logging.getLogger(__name__)


def weekly_period(today: date, days: int = 7) -> tuple[str, str]:
    """Normalized (start, end) date strings for the period ending today."""
    return (today - timedelta(days=days)).isoformat(), today.isoformat()


class ReportScheduler:
    """
    Generates the periodic report for every user with an active or trialing
    subscription. Re-running it for the same period is a no-op per user,
    the report ledger makes every run idempotent.
    """

    def __init__(self, reports: ReportService, subscriptions: SubscriptionService,
                 period_days: int = settings.REPORT_PERIOD_DAYS, report_kind: str = "weekly"):
        self.reports = reports
        self.subscriptions = subscriptions
        self.period_days = period_days
        self.report_kind = report_kind

    async def run_once(self, today: Optional[date] = None) -> ScheduleReportsResponse:
        period_start, period_end = weekly_period(today or datetime.now(timezone.utc).date(), self.period_days)
        user_ids = await self.subscriptions.list_reportable_user_ids()
        results = []
        for user_id in user_ids:
            try:
                result = await self.reports.generate_report(ReportTrigger(
                    subject_id=user_id,
                    report_kind=self.report_kind,
                    period_start=period_start,
                    period_end=period_end,
                ))
                results.append(ScheduledReportResult(user_id=user_id, success=True, report_id=result.report.id))
            except BillingError as e:
                # one user's failure must not stop the others; the row stays retryable
                logger.error(f"Failed to generate report for user {user_id}: {e.message}")
                results.append(ScheduledReportResult(user_id=user_id, success=False, error=e.message))
            except Exception as e:
                logger.error(f"Failed to generate report for user {user_id}: {e}", exc_info=True)
                results.append(ScheduledReportResult(user_id=user_id, success=False, error=str(e)))

        return ScheduleReportsResponse(
            message=f"Processed {len(results)} users",
            period_start=period_start,
            period_end=period_end,
            results=results,
        )

    async def run_forever(self, interval_seconds: int = settings.REPORT_SCHEDULER_INTERVAL_SECONDS):
        while True:
            try:
                response = await self.run_once()
                failed = sum(1 for r in response.results if not r.success)
                logger.info(f"scheduled reports: {response.message}, {failed} failed")
            except Exception as e:
                logger.error(f"scheduled report run failed: {e}", exc_info=True)
            await asyncio.sleep(interval_seconds)


report_scheduler = ReportScheduler(report_service, subscription_service)
