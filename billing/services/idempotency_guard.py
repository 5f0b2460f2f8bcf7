"""
Idempotency guards for the two event families.

The ledger row's unique key is the only serialization point: a unit of work
is claimed by inserting its row, and every later change to the row is a
conditional update. No in-process locks are involved, so any number of
workers may call the same guard concurrently.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional
from billing.core.exceptions import EffectFailed, LedgerUnavailable, WorkInProgress
from billing.models.mixins import utcnow
from billing.models.report import AutoReport, ReportStatus
from billing.models.webhook_event import WebhookEvent
from billing.services.dedup import ReportKey, WebhookKey
from billing.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _claim_is_live(claimed_at: Optional[datetime], now: datetime, ttl_seconds: int) -> bool:
    if ttl_seconds <= 0 or claimed_at is None:
        return False
    if claimed_at.tzinfo is None:
        # sqlite hands back naive datetimes
        claimed_at = claimed_at.replace(tzinfo=timezone.utc)
    return (now - claimed_at).total_seconds() < ttl_seconds


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"


class WebhookGuard:
    """
    Binary ledger: processed is False until the effect has fully completed.

    By default a redelivery that finds an unprocessed row re-runs the effect,
    so the effect itself must converge when applied twice. With
    claim_in_flight, the redelivery has to win a compare-and-swap on the
    attempt counter first, and a claim younger than claim_ttl_seconds turns
    it away with WorkInProgress.
    """

    def __init__(self, store: LedgerStore[WebhookEvent], claim_in_flight: bool = False,
                 claim_ttl_seconds: int = 300, clock: Clock = utcnow):
        self.store = store
        self.claim_in_flight = claim_in_flight
        self.claim_ttl_seconds = claim_ttl_seconds
        self.clock = clock

    async def handle(self, key: WebhookKey, event_kind: str, payload: dict,
                     effect: Callable[[], Awaitable[None]]) -> WebhookOutcome:
        now = self.clock()
        result = await self.store.insert_if_absent(key, {
            "event_type": event_kind,
            "payload": payload,
            "processed": False,
            "attempts": 1,
            "claimed_at": now,
        })

        if result.inserted:
            logger.info(f"webhook {key.event_id} ({event_kind}) first sighting")
        else:
            row = result.row
            if row.processed:
                logger.info(f"webhook {key.event_id} already processed, skipping")
                return WebhookOutcome.ALREADY_PROCESSED
            if not await self._reclaim(key, row, now):
                return WebhookOutcome.ALREADY_PROCESSED

        try:
            await effect()
        except Exception as e:
            logger.error(f"failed to apply webhook {key.event_id} ({event_kind}): {e}", exc_info=True)
            await self._record_error(key, e)
            raise EffectFailed(f"Failed to process webhook event {key.event_id}", cause=e) from e

        flipped = await self.store.update_by_key(
            key,
            {"processed": True, "processed_at": self.clock(), "last_error": None},
            expected={"processed": False},
        )
        if not flipped:
            logger.info(f"webhook {key.event_id} was marked processed by a concurrent delivery")
        logger.info(f"webhook {key.event_id} processed")
        return WebhookOutcome.PROCESSED

    async def _reclaim(self, key: WebhookKey, row: WebhookEvent, now: datetime) -> bool:
        """Decide whether this delivery re-runs the effect of an unprocessed row."""
        if not self.claim_in_flight:
            logger.warning(
                f"webhook {key.event_id} seen before but not processed (attempt {row.attempts + 1}), re-running effect")
            # attempt counter is informational here, losing the race is fine
            await self.store.update_by_key(
                key, {"attempts": row.attempts + 1, "claimed_at": now}, expected={"attempts": row.attempts})
            return True

        if _claim_is_live(row.claimed_at, now, self.claim_ttl_seconds):
            raise WorkInProgress(f"Webhook event {key.event_id} is being processed")
        claimed = await self.store.update_by_key(
            key,
            {"attempts": row.attempts + 1, "claimed_at": now},
            expected={"attempts": row.attempts, "processed": False},
        )
        if claimed:
            logger.info(f"webhook {key.event_id} reclaimed after stale attempt {row.attempts}")
            return True

        current = await self.store.find_by_key(key)
        if current is not None and current.processed:
            return False
        raise WorkInProgress(f"Webhook event {key.event_id} is being processed")

    async def _record_error(self, key: WebhookKey, error: Exception):
        try:
            await self.store.update_by_key(key, {"last_error": str(error)[:2000]}, expected={"processed": False})
        except LedgerUnavailable:
            logger.error(f"could not record failure for webhook {key.event_id}", exc_info=True)


class ReportOutcome(str, Enum):
    GENERATED = "generated"
    ALREADY_GENERATED = "already_generated"


@dataclass(frozen=True)
class GeneratedArtifact:
    artifact_ref: str
    notification_id: Optional[str] = None


@dataclass(frozen=True)
class ReportResult:
    report: AutoReport
    outcome: ReportOutcome


class ReportGuard:
    """
    Three-state ledger: pending -> generated | failed, failed -> pending.

    generated is terminal; once a row reaches it, generation and the
    notification never run again for that key. Each attempt claims the row
    by bumping its version with a compare-and-swap, and its terminal write
    only lands if the version is still the one it claimed.
    """

    def __init__(self, store: LedgerStore[AutoReport], claim_ttl_seconds: int = 600, clock: Clock = utcnow):
        self.store = store
        self.claim_ttl_seconds = claim_ttl_seconds
        self.clock = clock

    async def run(self, key: ReportKey,
                  generate: Callable[[AutoReport], Awaitable[GeneratedArtifact]]) -> ReportResult:
        report = await self._claim(key)
        if report.status == ReportStatus.GENERATED:
            logger.info(f"report {report.id} already generated for {key}, skipping")
            return ReportResult(report=report, outcome=ReportOutcome.ALREADY_GENERATED)

        try:
            artifact = await generate(report)
        except Exception as e:
            logger.error(f"report {report.id} generation failed: {e}", exc_info=True)
            await self._mark_failed(key, report, e)
            raise EffectFailed(f"Failed to generate report {report.id}", cause=e) from e

        # written right after dispatch to keep the double-notification window small
        committed = await self.store.update_by_key(
            key,
            {
                "status": ReportStatus.GENERATED,
                "file_url": artifact.artifact_ref,
                "generated_at": self.clock(),
                "notification_id": artifact.notification_id,
                "last_error": None,
            },
            expected={"version": report.version, "status": ReportStatus.PENDING},
        )
        final = await self.store.find_by_key(key)
        if not committed:
            logger.warning(f"report {report.id} claim v{report.version} was superseded before commit")
            if final is not None and final.status == ReportStatus.GENERATED:
                return ReportResult(report=final, outcome=ReportOutcome.ALREADY_GENERATED)
            raise WorkInProgress(f"Report {report.id} was reclaimed by another attempt")
        logger.info(f"report {report.id} generated, artifact {artifact.artifact_ref}")
        return ReportResult(report=final or report, outcome=ReportOutcome.GENERATED)

    async def _claim(self, key: ReportKey) -> AutoReport:
        """Return a row claimed by this attempt, or a generated row to short-circuit on."""
        now = self.clock()
        existing = await self.store.find_by_key(key)
        if existing is None:
            result = await self.store.insert_if_absent(key, {
                "organization_id": key.scope_id,
                "status": ReportStatus.PENDING,
                "version": 1,
                "claimed_at": now,
            })
            if result.inserted:
                logger.info(f"report {result.row.id} created as pending for {key}")
                return result.row
            existing = result.row

        if existing.status == ReportStatus.GENERATED:
            return existing
        if existing.status == ReportStatus.PENDING and _claim_is_live(existing.claimed_at, now, self.claim_ttl_seconds):
            raise WorkInProgress(f"Report {existing.id} is already being generated")

        claimed = await self.store.update_by_key(
            key,
            {"status": ReportStatus.PENDING, "version": existing.version + 1, "claimed_at": now},
            expected={"version": existing.version, "status": existing.status},
        )
        current = await self.store.find_by_key(key)
        if current is None:
            raise LedgerUnavailable("report ledger row disappeared")
        if claimed:
            logger.info(f"report {current.id} reclaimed from {existing.status.value} (v{current.version})")
            return current
        if current.status == ReportStatus.GENERATED:
            return current
        raise WorkInProgress(f"Report {current.id} is already being generated")

    async def _mark_failed(self, key: ReportKey, report: AutoReport, error: Exception):
        try:
            marked = await self.store.update_by_key(
                key,
                {"status": ReportStatus.FAILED, "last_error": str(error)[:2000]},
                expected={"version": report.version, "status": ReportStatus.PENDING},
            )
            if not marked:
                logger.warning(f"report {report.id} failure not recorded, claim v{report.version} superseded")
        except LedgerUnavailable:
            logger.error(f"could not mark report {report.id} as failed", exc_info=True)
