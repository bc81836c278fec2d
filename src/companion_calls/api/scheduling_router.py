"""
Internal endpoints for recurring schedules and reminder calls.
"""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.api.dependencies import require_internal_secret
from companion_calls.scheduling.models import ReminderStatus
from companion_calls.scheduling.schemas import ReminderCreate, ScheduleCreate
from companion_calls.scheduling.service import ScheduleService
from companion_calls.shared.database import get_db_session

router = APIRouter(tags=["scheduling"], dependencies=[Depends(require_internal_secret)])


class ScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_id: UUID
    enabled: bool
    timezone: str
    time_of_day: str
    frequency: str | None
    next_run_at: datetime | None


class ReminderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_id: UUID
    message: str
    timezone: str
    due_at: datetime
    ends_at: datetime | None
    frequency: str | None
    status: ReminderStatus


def get_schedule_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ScheduleService:
    return ScheduleService(session)


@router.post("/schedules", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    data: ScheduleCreate,
    service: Annotated[ScheduleService, Depends(get_schedule_service)],
) -> ScheduleResponse:
    schedule = await service.create_schedule(data)
    return ScheduleResponse.model_validate(schedule)


@router.delete("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def disable_schedule(
    schedule_id: UUID,
    service: Annotated[ScheduleService, Depends(get_schedule_service)],
) -> ScheduleResponse:
    schedule = await service.disable_schedule(schedule_id)
    return ScheduleResponse.model_validate(schedule)


@router.post("/reminders", response_model=ReminderResponse, status_code=status.HTTP_201_CREATED)
async def create_reminder(
    data: ReminderCreate,
    service: Annotated[ScheduleService, Depends(get_schedule_service)],
) -> ReminderResponse:
    reminder = await service.create_reminder(data)
    return ReminderResponse.model_validate(reminder)


@router.delete("/reminders/{reminder_id}", response_model=ReminderResponse)
async def cancel_reminder(
    reminder_id: UUID,
    service: Annotated[ScheduleService, Depends(get_schedule_service)],
) -> ReminderResponse:
    reminder = await service.cancel_reminder(reminder_id)
    return ReminderResponse.model_validate(reminder)
