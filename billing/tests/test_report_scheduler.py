from datetime import date, datetime, timezone
from sqlalchemy.exc import OperationalError
from billing.models import Subscription, SubscriptionStatus
from billing.services.subscription_service import SubscriptionService
from billing.tests.conftest import FlakyRenderer
from billing.workers.report_scheduler import ReportScheduler, weekly_period


def test_weekly_period():
    assert weekly_period(date(2024, 1, 8)) == ("2024-01-01", "2024-01-08")
    assert weekly_period(date(2024, 3, 1), days=1) == ("2024-02-29", "2024-03-01")


async def seed_subscriptions(session_factory):
    async with session_factory() as session:
        session.add_all([
            Subscription(user_id="u1", stripe_subscription_id="sub_1", stripe_customer_id="cus_1",
                         status=SubscriptionStatus.ACTIVE, plan_id="pro"),
            Subscription(user_id="u2", stripe_subscription_id="sub_2", stripe_customer_id="cus_2",
                         status=SubscriptionStatus.CANCELED, plan_id="basic"),
        ])
        await session.commit()


async def test_scheduler_reports_active_users_once(seeded_users, db_session_factory, dispatcher, make_report_service):
    await seed_subscriptions(db_session_factory)
    scheduler = ReportScheduler(make_report_service(), SubscriptionService(db_session_factory))

    first = await scheduler.run_once(today=date(2024, 1, 8))
    second = await scheduler.run_once(today=date(2024, 1, 8))

    assert (first.period_start, first.period_end) == ("2024-01-01", "2024-01-08")
    assert [r.user_id for r in first.results] == ["u1"]
    assert first.results[0].success is True
    assert second.results[0].report_id == first.results[0].report_id
    assert len(dispatcher.sent) == 1
    assert dispatcher.sent[0].organization_name is None


async def test_scheduler_records_failures_and_continues(seeded_users, db_session_factory, dispatcher,
                                                       make_report_service):
    await seed_subscriptions(db_session_factory)
    scheduler = ReportScheduler(make_report_service(renderer=FlakyRenderer(failures=1)),
                                SubscriptionService(db_session_factory))

    failed = await scheduler.run_once(today=date(2024, 1, 8))
    retried = await scheduler.run_once(today=date(2024, 1, 8))

    assert failed.results[0].success is False
    assert failed.results[0].error
    assert retried.results[0].success is True
    assert len(dispatcher.sent) == 1


async def test_scheduler_survives_unexpected_errors(seeded_users, db_session_factory, dispatcher,
                                                   make_report_service):
    async with db_session_factory() as session:
        session.add_all([
            Subscription(user_id="u1", stripe_subscription_id="sub_1", stripe_customer_id="cus_1",
                         status=SubscriptionStatus.ACTIVE, plan_id="pro"),
            Subscription(user_id="u2", stripe_subscription_id="sub_2", stripe_customer_id="cus_2",
                         status=SubscriptionStatus.TRIALING, plan_id="basic"),
        ])
        await session.commit()

    reports = make_report_service()
    require_identities = reports._require_identities

    async def lose_connection_for_u1(key):
        if key.subject_id == "u1":
            raise OperationalError("SELECT users", {}, Exception("connection reset"))
        await require_identities(key)

    reports._require_identities = lose_connection_for_u1
    scheduler = ReportScheduler(reports, SubscriptionService(db_session_factory))

    response = await scheduler.run_once(today=date(2024, 1, 8))

    assert [(r.user_id, r.success) for r in response.results] == [("u1", False), ("u2", True)]
    assert "connection reset" in response.results[0].error
    assert [email.to for email in dispatcher.sent] == ["u2@example.com"]


class LateEveningInNewYork(datetime):
    """00:30 UTC on Jan 8 is still the evening of Jan 7 on a US east coast host."""

    @classmethod
    def now(cls, tz=None):
        if tz is None:
            return cls(2024, 1, 7, 19, 30)
        return cls(2024, 1, 8, 0, 30, tzinfo=timezone.utc).astimezone(tz)


async def test_scheduler_periods_follow_utc_date(seeded_users, db_session_factory, make_report_service, monkeypatch):
    monkeypatch.setattr("billing.workers.report_scheduler.datetime", LateEveningInNewYork)
    scheduler = ReportScheduler(make_report_service(), SubscriptionService(db_session_factory))

    response = await scheduler.run_once()

    assert (response.period_start, response.period_end) == ("2024-01-01", "2024-01-08")
