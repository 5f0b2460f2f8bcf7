from uuid import UUID
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from billing.api.deps import get_current_user_id, get_report_scheduler, get_report_service
from billing.schemas.report import (GenerateReportRequest, GenerateReportResponse, ReportResponse,
                                    ReportTrigger, ScheduleReportsResponse)
from billing.services.idempotency_guard import ReportOutcome
from billing.services.report_service import ReportService
from billing.workers.report_scheduler import ReportScheduler

router = APIRouter(prefix="/reports", tags=["reports"])


@router.post("/generate", response_model=GenerateReportResponse)
async def generate_report(request: GenerateReportRequest,
                          user_id: str = Depends(get_current_user_id),
                          report_service: ReportService = Depends(get_report_service)):
    result = await report_service.generate_report(ReportTrigger(
        subject_id=user_id,
        scope_id=request.organization_id,
        report_kind=request.report_type,
        period_start=request.period_start,
        period_end=request.period_end,
    ))
    if result.outcome == ReportOutcome.ALREADY_GENERATED:
        message = "Report already exists"
    else:
        message = "Report generated and sent successfully"
    return GenerateReportResponse(report_id=result.report.id, message=message, file_url=result.report.file_url)


@router.post("/schedule", response_model=ScheduleReportsResponse)
async def schedule_reports(report_scheduler: ReportScheduler = Depends(get_report_scheduler)):
    # called by an external cron
    return await report_scheduler.run_once()


@router.get("", response_model=list[ReportResponse])
async def list_reports(user_id: str = Depends(get_current_user_id),
                       report_service: ReportService = Depends(get_report_service)):
    return await report_service.list_reports(user_id)


@router.get("/{report_id}", response_model=ReportResponse)
async def get_report(report_id: UUID,
                     user_id: str = Depends(get_current_user_id),
                     report_service: ReportService = Depends(get_report_service)):
    return await report_service.get_report(report_id, user_id)


@router.get("/{report_id}/download")
async def download_report(report_id: UUID,
                          user_id: str = Depends(get_current_user_id),
                          report_service: ReportService = Depends(get_report_service)):
    content = await report_service.download_report(report_id, user_id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="report-{report_id}.pdf"'},
    )
