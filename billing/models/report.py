from datetime import datetime
from enum import Enum
from typing import Optional
import uuid
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Enum as SAEnum, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from billing.db.base import Base
from .mixins import TimestampMixin


class ReportStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    FAILED = "failed"


class AutoReport(Base, TimestampMixin):
    """
    Ledger of report generation requests, one row per
    (subject, scope, kind, period_start, period_end).
    A row cycles pending -> failed -> pending until it reaches generated,
    which is terminal.
    """
    __tablename__ = "auto_reports"
    # scope_key is "" when there is no organization; a NULL column would make
    # every unscoped request distinct under the unique constraint
    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", "report_type", "period_start", "period_end",
                         name="uix_auto_reports_dedup"),
    )
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("organizations.id"), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    report_type: Mapped[str] = mapped_column(String(50), nullable=False)
    period_start: Mapped[str] = mapped_column(String(32), nullable=False)
    period_end: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[ReportStatus] = mapped_column(
        SAEnum(ReportStatus), default=ReportStatus.PENDING, nullable=False)
    file_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # bumped on every claim; terminal writes are conditional on it
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def artifact_ref(self) -> Optional[str]:
        return self.file_url
