from datetime import datetime
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field
from billing.models.report import ReportStatus


class ReportTrigger(BaseModel):
    """
    Report generation request. Period boundaries are opaque, already
    normalized date strings and are compared by exact value.
    """
    subject_id: Optional[str] = None
    scope_id: Optional[str] = None
    report_kind: str = "weekly"
    period_start: Optional[str] = None
    period_end: Optional[str] = None


class GenerateReportRequest(BaseModel):
    organization_id: Optional[str] = None
    period_start: str
    period_end: str
    report_type: str = "weekly"


class GenerateReportResponse(BaseModel):
    success: bool = True
    report_id: UUID
    message: str
    file_url: Optional[str] = None


class ReportResponse(BaseModel):
    id: UUID
    user_id: str
    organization_id: Optional[str] = None
    report_type: str
    period_start: str
    period_end: str
    status: ReportStatus
    file_url: Optional[str] = None
    generated_at: Optional[datetime] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ScheduledReportResult(BaseModel):
    user_id: str
    success: bool
    report_id: Optional[UUID] = None
    error: Optional[str] = None


class ScheduleReportsResponse(BaseModel):
    message: str
    period_start: str
    period_end: str
    results: list[ScheduledReportResult] = Field(default_factory=list)


class ReportUser(BaseModel):
    name: str
    email: str


class ReportOrganization(BaseModel):
    name: str


class ReportPeriod(BaseModel):
    start: str
    end: str


class ReportMetrics(BaseModel):
    total_projects: int
    active_users: int
    storage_used: int
    api_calls: int


class ReportSubscription(BaseModel):
    plan: str
    status: str
    addons: list[str] = Field(default_factory=list)


class ReportData(BaseModel):
    """Snapshot gathered for one report; rendering is a pure function of it."""
    user: ReportUser
    organization: Optional[ReportOrganization] = None
    period: ReportPeriod
    metrics: ReportMetrics
    subscription: ReportSubscription
