"""Schedule and job parameter models."""

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scheduler_platform.models.base import Base, TimestampMixin, enum_values


class JobType(str, enum.Enum):
    """Kind of external work a schedule performs."""

    PROCESS = "Process"
    STORED_PROCEDURE = "StoredProcedure"
    API_CALL = "ApiCall"


class Schedule(Base, TimestampMixin):
    """A recurring work definition fired by the scheduler engine."""

    __tablename__ = "schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text)
    client_id: Mapped[int | None] = mapped_column(Integer, index=True)

    job_type: Mapped[JobType] = mapped_column(
        Enum(JobType, values_callable=enum_values, native_enum=False, length=30)
    )
    cron_expression: Mapped[str] = mapped_column(String(120))
    time_zone: Mapped[str] = mapped_column(String(64), default="UTC")
    job_configuration: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    # Retry policy
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    retry_delay_minutes: Mapped[int] = mapped_column(Integer, default=5)
    timeout_minutes: Mapped[int | None] = mapped_column(Integer)
    retry_attempt: Mapped[int] = mapped_column(Integer, default=0)

    next_run_time: Mapped[datetime | None] = mapped_column(index=True)
    last_run_time: Mapped[datetime | None] = mapped_column()

    parameters: Mapped[list["JobParameter"]] = relationship(
        back_populates="schedule",
        order_by="JobParameter.display_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Schedule {self.id} {self.name!r} {self.job_type.value} next={self.next_run_time}>"


class JobParameter(Base, TimestampMixin):
    """A named value passed to a schedule's job, static or resolved per execution."""

    __tablename__ = "job_parameters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("schedules.id"), index=True)
    parameter_name: Mapped[str] = mapped_column(String(100))
    parameter_type: Mapped[str] = mapped_column(String(30), default="string")
    parameter_value: Mapped[str | None] = mapped_column(Text)

    # Dynamic resolution
    is_dynamic: Mapped[bool] = mapped_column(Boolean, default=False)
    source_query: Mapped[str | None] = mapped_column(String(256))
    source_connection_string: Mapped[str | None] = mapped_column(Text)

    display_order: Mapped[int] = mapped_column(Integer, default=0)

    schedule: Mapped[Schedule] = relationship(back_populates="parameters")

    def __repr__(self) -> str:
        kind = "dynamic" if self.is_dynamic else "static"
        return f"<JobParameter {self.parameter_name} {kind}>"
