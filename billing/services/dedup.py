"""
Dedup keys: the value that identifies one logical unit of work.

Both derivations are pure. Period boundaries are opaque strings compared by
exact value; callers normalize them before building the trigger.
"""
from typing import Any, NamedTuple, Optional
from billing.core.exceptions import InvalidTrigger
from billing.schemas.report import ReportTrigger
from billing.schemas.webhook import WebhookTrigger

NO_SCOPE = ""


class WebhookKey(NamedTuple):
    event_id: str

    def columns(self) -> dict[str, Any]:
        return {"event_id": self.event_id}


class ReportKey(NamedTuple):
    subject_id: str
    scope_id: Optional[str]
    report_kind: str
    period_start: str
    period_end: str

    @property
    def scope_key(self) -> str:
        return self.scope_id if self.scope_id is not None else NO_SCOPE

    def columns(self) -> dict[str, Any]:
        return {
            "user_id": self.subject_id,
            "scope_key": self.scope_key,
            "report_type": self.report_kind,
            "period_start": self.period_start,
            "period_end": self.period_end,
        }


def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidTrigger(f"Missing {field}")
    return value


def derive_webhook_key(trigger: WebhookTrigger) -> WebhookKey:
    # the provider guarantees the event id is unique per logical event, redeliveries included
    return WebhookKey(event_id=_require(trigger.id, "event id"))


def derive_report_key(trigger: ReportTrigger) -> ReportKey:
    scope_id = trigger.scope_id
    if scope_id is not None and not scope_id.strip():
        raise InvalidTrigger("Empty scope id, omit it for unscoped reports")
    return ReportKey(
        subject_id=_require(trigger.subject_id, "subject id"),
        scope_id=scope_id,
        report_kind=_require(trigger.report_kind, "report kind"),
        period_start=_require(trigger.period_start, "period start"),
        period_end=_require(trigger.period_end, "period end"),
    )
