"""Pydantic schemas for API request/response serialization.

Attributes are snake_case; the JSON wire format uses camelCase aliases.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime

from schedule_engine.models.schedule import (
    ScheduleFrequency, ScheduleStatus, IntervalUnit, ExecutionStatus,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---- Schedule ----
class ScheduleCreate(_CamelModel):
    tenant_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    entity_id: Optional[str] = None
    action: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    frequency: Optional[ScheduleFrequency] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    next_run_date: Optional[datetime] = None
    time_of_day: Optional[str] = None
    end_time: Optional[str] = None
    interval_value: Optional[int] = Field(None, ge=1)
    interval_unit: Optional[IntervalUnit] = None
    timezone: Optional[str] = None
    week_days: Optional[List[int]] = None
    month_days: Optional[List[int]] = None
    months: Optional[List[int]] = None
    retry_on_failure: Optional[bool] = None
    max_retries: Optional[int] = Field(None, ge=1, le=10)
    retry_delay_minutes: Optional[int] = Field(None, ge=1, le=60)


class ScheduleUpdate(ScheduleCreate):
    status: Optional[ScheduleStatus] = None


class ExecutionRecord(_CamelModel):
    executed_at: datetime
    status: ExecutionStatus
    error_message: Optional[str] = None


class ScheduleOut(_CamelModel):
    id: str
    tenant_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    entity_id: Optional[str] = None
    action: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    frequency: ScheduleFrequency
    start_date: datetime
    end_date: Optional[datetime] = None
    time_of_day: Optional[str] = None
    end_time: Optional[str] = None
    interval_value: Optional[int] = None
    interval_unit: Optional[IntervalUnit] = None
    interval: Optional[int] = None
    timezone: Optional[str] = None
    cron_expression: Optional[str] = None
    week_days: Optional[List[int]] = None
    month_days: Optional[List[int]] = None
    months: Optional[List[int]] = None
    status: ScheduleStatus
    next_run_date: datetime
    last_run_at: Optional[datetime] = None
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_execution_status: Optional[str] = None
    last_error_message: Optional[str] = None
    execution_history: Optional[List[ExecutionRecord]] = None
    retry_on_failure: bool = True
    max_retries: int = 1
    current_retries: int = 0
    retry_delay_minutes: int = 15
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ScheduleListResponse(_CamelModel):
    schedules: List[ScheduleOut]
    total: int
    page: int
    page_size: int


# ---- Common ----
class MessageResponse(BaseModel):
    message: str
