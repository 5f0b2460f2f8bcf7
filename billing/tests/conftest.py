import asyncio
import json
from typing import Optional
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
import billing.models  # noqa: F401
from billing.core.exceptions import NotificationError
from billing.db.base import Base
from billing.models import AutoReport, Organization, User, WebhookEvent
from billing.schemas.webhook import WebhookTrigger
from billing.services.email_sender import ReportEmail
from billing.services.idempotency_guard import ReportGuard, WebhookGuard
from billing.services.ledger_store import SQLAlchemyLedgerStore
from billing.services.report_service import ReportService
from billing.services.subscription_service import SubscriptionService
from billing.services.webhook_service import WebhookService


@pytest.fixture
async def db_engine(tmp_path):
    """
    File backed sqlite so concurrent sessions use separate connections
    and the unique constraints are enforced by the database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing_test.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def enforce_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def db_session_factory(db_engine):
    """Factory to create multiple sessions for concurrent tests."""
    return async_sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def seeded_users(db_session_factory):
    async with db_session_factory() as session:
        session.add_all([
            User(id="u1", email="u1@example.com", full_name="User One"),
            User(id="u2", email="u2@example.com", full_name=None),
        ])
        await session.flush()
        session.add(Organization(id="org1", name="Acme", slug="acme", owner_id="u1"))
        await session.commit()
    return {"user_ids": ["u1", "u2"], "organization_id": "org1"}


class FakeDispatcher:
    """Records every dispatched email; fails the first `failures` calls."""

    def __init__(self, failures: int = 0, delay: float = 0.05):
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self.sent: list[ReportEmail] = []

    async def send_report_email(self, email: ReportEmail) -> Optional[str]:
        self.calls += 1
        # yield to the loop so concurrent attempts really overlap
        await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise NotificationError("smtp relay rejected the message")
        self.sent.append(email)
        return f"msg-{len(self.sent)}"


class InMemoryArtifactStore:
    def __init__(self):
        self.artifacts = {}

    async def save(self, report_id, content: bytes):
        self.artifacts[report_id] = content

    async def load(self, report_id):
        return self.artifacts.get(report_id)


class FlakyRenderer:
    """Raises on the first `failures` renders, then renders a stub document."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    def __call__(self, data) -> bytes:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("renderer crashed")
        return f"%PDF-stub {data.user.email} {data.period.start}..{data.period.end}".encode()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def artifact_store():
    return InMemoryArtifactStore()


@pytest.fixture
def report_store(db_session_factory):
    return SQLAlchemyLedgerStore(AutoReport, db_session_factory)


@pytest.fixture
def webhook_store(db_session_factory):
    return SQLAlchemyLedgerStore(WebhookEvent, db_session_factory)


@pytest.fixture
def make_report_service(db_session_factory, report_store, artifact_store, dispatcher):
    def factory(renderer=None, dispatcher_override=None, claim_ttl_seconds=600, clock=None):
        guard_kwargs = {"claim_ttl_seconds": claim_ttl_seconds}
        if clock is not None:
            guard_kwargs["clock"] = clock
        return ReportService(
            session_factory=db_session_factory,
            guard=ReportGuard(report_store, **guard_kwargs),
            artifact_store=artifact_store,
            dispatcher=dispatcher_override or dispatcher,
            subscriptions=SubscriptionService(db_session_factory),
            renderer=renderer or FlakyRenderer(),
        )
    return factory


@pytest.fixture
def make_webhook_service(db_session_factory, webhook_store):
    def factory(subscriptions=None, claim_in_flight=False, claim_ttl_seconds=300, clock=None):
        guard_kwargs = {"claim_in_flight": claim_in_flight, "claim_ttl_seconds": claim_ttl_seconds}
        if clock is not None:
            guard_kwargs["clock"] = clock
        return WebhookService(
            guard=WebhookGuard(webhook_store, **guard_kwargs),
            subscriptions=subscriptions or SubscriptionService(db_session_factory),
        )
    return factory


def subscription_event(event_id: str = "evt_1", kind: str = "customer.subscription.created",
                       subscription_id: str = "sub_1", status: str = "active",
                       addons=("extra_storage",), user_id: Optional[str] = "u1", plan_id: str = "pro") -> WebhookTrigger:
    metadata = {"planId": plan_id, "addons": json.dumps(list(addons))}
    if user_id is not None:
        metadata["userId"] = user_id
    return WebhookTrigger(id=event_id, type=kind, data={"object": {
        "object": "subscription",
        "id": subscription_id,
        "customer": "cus_1",
        "status": status,
        "start_date": 1704067200,
        "trial_start": None,
        "trial_end": None,
        "metadata": metadata,
    }})


def invoice_event(event_id: str, kind: str, subscription_id: str = "sub_1") -> WebhookTrigger:
    return WebhookTrigger(id=event_id, type=kind, data={"object": {
        "object": "invoice",
        "id": f"in_{event_id}",
        "subscription": subscription_id,
    }})
