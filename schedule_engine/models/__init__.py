"""Models package: import all models so metadata.create_all can discover them."""

from schedule_engine.models.business import Business
from schedule_engine.models.schedule import (
    Schedule, ScheduleFrequency, ScheduleStatus, IntervalUnit, ExecutionStatus,
)

__all__ = [
    "Business", "Schedule", "ScheduleFrequency", "ScheduleStatus",
    "IntervalUnit", "ExecutionStatus",
]
