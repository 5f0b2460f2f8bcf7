from datetime import date
from io import BytesIO
from typing import Optional
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from billing.schemas.report import ReportData

PAGE_WIDTH, PAGE_HEIGHT = A4


def render_report_pdf(data: ReportData, generated_on: Optional[date] = None) -> bytes:
    """
    Render the fixed single-page A4 report layout.
    Output depends only on data and generated_on.
    """
    generated_on = generated_on or date.today()
    buffer = BytesIO()
    # invariant=1 drops the creation timestamp and random document id
    pdf = canvas.Canvas(buffer, pagesize=A4, invariant=1)
    pdf.setTitle(f"Weekly Report {data.period.start} to {data.period.end}")

    def text(x: float, y: float, value: str, size: int = 12):
        # positions in mm from the top left corner
        pdf.setFont("Helvetica", size)
        pdf.drawString(x * mm, PAGE_HEIGHT - y * mm, value)

    text(20, 30, "Weekly Report", 20)

    text(20, 50, f"User: {data.user.name} ({data.user.email})")
    if data.organization:
        text(20, 60, f"Organization: {data.organization.name}")
    text(20, 70, f"Period: {data.period.start} to {data.period.end}")

    text(20, 90, "Metrics", 16)
    metrics = data.metrics
    text(20, 110, f"Total Projects: {metrics.total_projects}")
    text(20, 120, f"Active Users: {metrics.active_users}")
    text(20, 130, f"Storage Used: {metrics.storage_used} GB")
    text(20, 140, f"API Calls: {metrics.api_calls:,}")

    text(20, 160, "Subscription", 16)
    text(20, 180, f"Plan: {data.subscription.plan}")
    text(20, 190, f"Status: {data.subscription.status}")
    if data.subscription.addons:
        text(20, 200, f"Add-ons: {', '.join(data.subscription.addons)}")

    text(20, 280, f"Generated on {generated_on.isoformat()}", 10)

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
