from datetime import date
from billing.schemas.report import (ReportData, ReportMetrics, ReportOrganization, ReportPeriod,
                                    ReportSubscription, ReportUser)
from billing.services.dedup import ReportKey
from billing.services.pdf_renderer import render_report_pdf
from billing.services.report_service import usage_metrics


def report_data(organization=True) -> ReportData:
    return ReportData(
        user=ReportUser(name="User One", email="u1@example.com"),
        organization=ReportOrganization(name="Acme") if organization else None,
        period=ReportPeriod(start="2024-01-01", end="2024-01-08"),
        metrics=ReportMetrics(total_projects=12, active_users=7, storage_used=42, api_calls=4321),
        subscription=ReportSubscription(plan="pro", status="active", addons=["extra_storage"]),
    )


def test_renders_a_pdf_document():
    content = render_report_pdf(report_data(), generated_on=date(2024, 1, 8))
    assert content.startswith(b"%PDF")
    assert content.rstrip().endswith(b"%%EOF")


def test_rendering_is_deterministic():
    generated_on = date(2024, 1, 8)
    assert render_report_pdf(report_data(), generated_on) == render_report_pdf(report_data(), generated_on)


def test_renders_without_organization():
    assert render_report_pdf(report_data(organization=False), generated_on=date(2024, 1, 8)).startswith(b"%PDF")


def test_usage_metrics_are_stable_per_key():
    key = ReportKey("u1", None, "weekly", "2024-01-01", "2024-01-08")
    assert usage_metrics(key) == usage_metrics(key)
    assert 1000 <= usage_metrics(key).api_calls < 11000
