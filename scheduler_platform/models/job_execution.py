"""Job execution history model."""

import enum
from datetime import datetime

from sqlalchemy import Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.models.base import Base, BigIntPK, enum_values


class JobStatus(str, enum.Enum):
    """Lifecycle of a single job execution."""

    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class JobExecution(Base):
    """Records each run of a schedule, from dispatch to completion."""

    __tablename__ = "job_executions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("schedules.id"), index=True)
    start_time: Mapped[datetime] = mapped_column(default=utc_now, index=True)
    end_time: Mapped[datetime | None] = mapped_column()
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=enum_values, native_enum=False, length=20),
        default=JobStatus.RUNNING,
        index=True,
    )
    output: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    stack_trace: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    duration_seconds: Mapped[float | None] = mapped_column(Float)
    triggered_by: Mapped[str] = mapped_column(String(200), default="Scheduler")
    cancelled_by: Mapped[str | None] = mapped_column(String(200))

    def __repr__(self) -> str:
        return f"<JobExecution {self.id} schedule={self.schedule_id} status={self.status.value}>"
