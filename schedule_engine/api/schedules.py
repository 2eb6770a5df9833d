"""Schedules API router."""

from typing import Generator, List, Optional
from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from schedule_engine.db.session import database_manager
from schedule_engine.models.schedule import ScheduleFrequency, ScheduleStatus
from schedule_engine.schemas.schemas import (
    ScheduleCreate, ScheduleUpdate, ScheduleOut, ScheduleListResponse, MessageResponse,
)
from schedule_engine.services.schedule_service import schedule_service

router = APIRouter(prefix="/schedules", tags=["schedules"])


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> Optional[str]:
    """Tenant selected by the caller; absent means platform-level."""
    return x_tenant_id or None


def get_caller_timezone(x_timezone: Optional[str] = Header(None)) -> Optional[str]:
    return x_timezone or None


def get_tenant_db(tenant_id: Optional[str] = Depends(get_tenant_id)) -> Generator[Session, None, None]:
    """DB session on the requesting tenant's database."""
    db = database_manager.session(tenant_id)
    try:
        yield db
    finally:
        db.close()


@router.post("/", response_model=ScheduleOut)
async def create_schedule(
    body: ScheduleCreate,
    db: Session = Depends(get_tenant_db),
    tenant_id: Optional[str] = Depends(get_tenant_id),
    timezone: Optional[str] = Depends(get_caller_timezone),
):
    """Create a schedule (or update the matching active one)."""
    return schedule_service.create(db, body, timezone=timezone, tenant_id=tenant_id)


@router.get("/", response_model=ScheduleListResponse)
async def list_schedules(
    status: Optional[ScheduleStatus] = Query(None),
    frequency: Optional[ScheduleFrequency] = Query(None),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    db: Session = Depends(get_tenant_db),
):
    """List schedules."""
    return schedule_service.list_schedules(db, status, frequency, entity_id, page, page_size)


@router.get("/due-today", response_model=List[ScheduleOut])
async def due_today(db: Session = Depends(get_tenant_db)):
    """Active schedules due today, earliest time of day first."""
    return schedule_service.get_due_today(db)


@router.get("/{schedule_id}", response_model=ScheduleOut)
async def get_schedule(schedule_id: str, db: Session = Depends(get_tenant_db)):
    """Get a single schedule."""
    return schedule_service.get(db, schedule_id)


@router.put("/{schedule_id}", response_model=ScheduleOut)
async def update_schedule(
    schedule_id: str,
    body: ScheduleUpdate,
    db: Session = Depends(get_tenant_db),
    timezone: Optional[str] = Depends(get_caller_timezone),
):
    """Update a schedule."""
    changes = body.model_dump(exclude_unset=True)
    return schedule_service.update(db, schedule_id, changes, timezone=timezone)


@router.delete("/{schedule_id}", response_model=MessageResponse)
async def delete_schedule(schedule_id: str, db: Session = Depends(get_tenant_db)):
    """Delete a schedule."""
    schedule_service.delete(db, schedule_id)
    return MessageResponse(message="Schedule deleted")
