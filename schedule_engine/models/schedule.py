"""Schedule model: recurrence definition, run state, and execution history."""

import enum
import uuid

from sqlalchemy import Column, Integer, String, Text, Boolean, JSON, Enum, Index, func

from schedule_engine.db.base import Base, UTCDateTime


class ScheduleFrequency(str, enum.Enum):
    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class ScheduleStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class IntervalUnit(str, enum.Enum):
    minutes = "minutes"
    hours = "hours"


class ExecutionStatus(str, enum.Enum):
    success = "success"
    failed = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


class Schedule(Base):
    """A recurring (or one-shot) task bound to an action and a target entity."""
    __tablename__ = "schedules"
    __table_args__ = (
        Index("idx_schedule_entity_action", "entity_id", "action"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), nullable=True, index=True)
    title = Column(String(255), default="Schedule", nullable=False)
    description = Column(Text, nullable=True)

    # Target linkage, opaque to the engine
    entity_id = Column(String(255), nullable=True)
    action = Column(String(255), nullable=True)
    data = Column(JSON, nullable=True)

    # Recurrence definition
    frequency = Column(Enum(ScheduleFrequency), default=ScheduleFrequency.ONCE, nullable=False)
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=True)
    time_of_day = Column(String(5), nullable=True)
    end_time = Column(String(5), nullable=True)
    interval_value = Column(Integer, nullable=True)
    interval_unit = Column(Enum(IntervalUnit), nullable=True)
    interval = Column(Integer, nullable=True)  # minutes, derived from value * unit
    timezone = Column(String(64), default="UTC", nullable=True)
    week_days = Column(JSON, nullable=True)  # 0=Sunday .. 6=Saturday
    month_days = Column(JSON, nullable=True)  # 1-31
    months = Column(JSON, nullable=True)  # 1-12

    # Derived
    cron_expression = Column(String(100), nullable=True)
    status = Column(Enum(ScheduleStatus), default=ScheduleStatus.ACTIVE, nullable=False, index=True)
    next_run_date = Column(UTCDateTime, nullable=False, index=True)

    # Execution bookkeeping
    last_run_at = Column(UTCDateTime, nullable=True)
    execution_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_execution_status = Column(String(20), nullable=True)
    last_error_message = Column(Text, nullable=True)
    execution_history = Column(JSON, nullable=True)  # newest first, bounded

    # Retry policy
    retry_on_failure = Column(Boolean, default=True, nullable=False)
    max_retries = Column(Integer, default=1, nullable=False)
    current_retries = Column(Integer, default=0, nullable=False)
    retry_delay_minutes = Column(Integer, default=15, nullable=False)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<Schedule {self.id} {self.frequency} {self.status}>"
