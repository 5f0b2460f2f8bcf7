import hashlib
import logging
from typing import Callable, Optional
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from billing.core.config import settings
from billing.core.exceptions import InvalidTrigger, LedgerUnavailable, ReportNotFound, ReportNotReady
from billing.db.session import async_session_factory
from billing.models.report import AutoReport, ReportStatus
from billing.models.user import Organization, User
from billing.redis import redis_client
from billing.schemas.report import (ReportData, ReportMetrics, ReportOrganization, ReportPeriod,
                                    ReportSubscription, ReportTrigger, ReportUser)
from billing.services.artifact_store import ArtifactStore, RedisArtifactStore, artifact_url
from billing.services.dedup import ReportKey, derive_report_key
from billing.services.email_sender import BrevoEmailDispatcher, NotificationDispatcher, ReportEmail
from billing.services.idempotency_guard import GeneratedArtifact, ReportGuard, ReportResult
from billing.services.ledger_store import SQLAlchemyLedgerStore
from billing.services.pdf_renderer import render_report_pdf
from billing.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

Renderer = Callable[[ReportData], bytes]


def usage_metrics(key: ReportKey) -> ReportMetrics:
    """Usage figures for the period. Derived from the key so a re-gather yields the same numbers."""
    digest = hashlib.sha256(
        f"{key.subject_id}:{key.scope_key}:{key.period_start}:{key.period_end}".encode()).digest()
    return ReportMetrics(
        total_projects=10 + digest[0] % 50,
        active_users=5 + digest[1] % 20,
        storage_used=10 + digest[2] % 100,
        api_calls=1000 + int.from_bytes(digest[3:5], "big") % 10000,
    )


class ReportService:
    """
    Report generation split into re-runnable steps: gather (reads only),
    render (pure), store artifact (overwrite), notify. Only the notification
    needs the exactly-once guarantee, which the guard provides by never
    running generation again once the row is generated.
    """

    def __init__(self, session_factory: async_sessionmaker = async_session_factory,
                 guard: Optional[ReportGuard] = None,
                 artifact_store: Optional[ArtifactStore] = None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 subscriptions: Optional[SubscriptionService] = None,
                 renderer: Renderer = render_report_pdf,
                 api_prefix: str = settings.API_V1_PREFIX):
        self.session_factory = session_factory
        self.guard = guard or ReportGuard(SQLAlchemyLedgerStore(AutoReport, session_factory),
                                          claim_ttl_seconds=settings.REPORT_CLAIM_TTL_SECONDS)
        self.artifact_store = artifact_store or RedisArtifactStore(redis_client, settings.ARTIFACT_TTL_SECONDS)
        self.dispatcher = dispatcher or BrevoEmailDispatcher(api_key=settings.BREVO_API_KEY)
        self.subscriptions = subscriptions or SubscriptionService(session_factory)
        self.renderer = renderer
        self.api_prefix = api_prefix

    async def generate_report(self, trigger: ReportTrigger) -> ReportResult:
        key = derive_report_key(trigger)
        await self._require_identities(key)

        async def produce(report: AutoReport) -> GeneratedArtifact:
            return await self._produce(report, key)

        return await self.guard.run(key, produce)

    async def _require_identities(self, key: ReportKey):
        # unknown subject or scope is a malformed trigger, rejected before the ledger write
        try:
            async with self.session_factory() as db:
                user = await db.get(User, key.subject_id)
                organization = await db.get(Organization, key.scope_id) if key.scope_id is not None else None
        except SQLAlchemyError as e:
            logger.error(f"failed to look up identities for {key}: {e}", exc_info=True)
            raise LedgerUnavailable("failed to read report identities") from e
        if user is None:
            raise InvalidTrigger(f"Unknown subject {key.subject_id}")
        if key.scope_id is not None and organization is None:
            raise InvalidTrigger(f"Unknown scope {key.scope_id}")

    async def _produce(self, report: AutoReport, key: ReportKey) -> GeneratedArtifact:
        data = await self.gather_report_data(key)
        pdf = self.renderer(data)
        await self.artifact_store.save(report.id, pdf)
        message_id = await self.dispatcher.send_report_email(ReportEmail(
            to=data.user.email,
            user_name=data.user.name,
            organization_name=data.organization.name if data.organization else None,
            period_start=data.period.start,
            period_end=data.period.end,
            pdf=pdf,
        ))
        return GeneratedArtifact(artifact_ref=artifact_url(report.id, self.api_prefix), notification_id=message_id)

    async def gather_report_data(self, key: ReportKey) -> ReportData:
        async with self.session_factory() as db:
            user = await db.get(User, key.subject_id)
            if user is None:
                raise LookupError(f"user {key.subject_id} not found")
            organization = None
            if key.scope_id is not None:
                organization = await db.get(Organization, key.scope_id)
                if organization is None:
                    raise LookupError(f"organization {key.scope_id} not found")

        subscription = await self.subscriptions.get_latest_subscription(key.subject_id)
        return ReportData(
            user=ReportUser(name=user.full_name or user.email, email=user.email),
            organization=ReportOrganization(name=organization.name) if organization else None,
            period=ReportPeriod(start=key.period_start, end=key.period_end),
            metrics=usage_metrics(key),
            subscription=ReportSubscription(
                plan=subscription.plan_id if subscription else "No active plan",
                status=subscription.status.value if subscription else "inactive",
                addons=[addon.addon_id for addon in subscription.addons] if subscription else [],
            ),
        )

    async def list_reports(self, user_id: str) -> list[AutoReport]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AutoReport)
                .where(AutoReport.user_id == user_id)
                .order_by(AutoReport.period_start.desc(), AutoReport.created_at.desc()))
            return list(result.scalars().all())

    async def get_report(self, report_id: UUID, user_id: str) -> AutoReport:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AutoReport)
                .where(AutoReport.id == report_id)
                .where(AutoReport.user_id == user_id))
            report = result.scalar_one_or_none()
        if report is None:
            raise ReportNotFound()
        return report

    async def download_report(self, report_id: UUID, user_id: str) -> bytes:
        """
        Resolve the artifact of a generated report. Never goes through the
        guard: a cache miss re-renders from fresh data and sends nothing.
        """
        report = await self.get_report(report_id, user_id)
        if report.status != ReportStatus.GENERATED:
            raise ReportNotReady()

        try:
            content = await self.artifact_store.load(report.id)
        except Exception as e:
            logger.error(f"failed to load artifact for report {report.id}: {e}", exc_info=True)
            content = None
        if content is not None:
            return content

        logger.info(f"artifact for report {report.id} expired, re-rendering")
        key = ReportKey(report.user_id, report.organization_id, report.report_type,
                        report.period_start, report.period_end)
        content = self.renderer(await self.gather_report_data(key))
        try:
            await self.artifact_store.save(report.id, content)
        except Exception as e:
            logger.warning(f"failed to cache re-rendered artifact for report {report.id}: {e}")
        return content


report_service = ReportService()
