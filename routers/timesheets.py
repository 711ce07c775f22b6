import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from dependencies import get_db, get_transport
from messaging.base import QueueTransport
from messaging.events import publish_timesheet_saved, publish_timesheet_submitted
from model import Timesheet
from schemas import (
    ErrorResponse,
    TimesheetCreate,
    TimesheetListResponse,
    TimesheetOut,
    TimesheetResponse,
    WeeklyTimesheetCreate,
    WeeklyTimesheetResponse,
)

logger = logging.getLogger(__name__)

STATUS_SUBMITTED = "Submitted"

save_router = APIRouter(prefix="/save-service", tags=["save"])
submit_router = APIRouter(prefix="/submit-service", tags=["submit"])


async def notify(transport: QueueTransport, timesheet: Timesheet, requested_status: Optional[str]) -> bool:
    # Best effort: the row is already committed whatever happens here.
    # Only an explicit submission announces one; an edit to a submitted row is a save.
    if requested_status == STATUS_SUBMITTED:
        return await publish_timesheet_submitted(transport, timesheet)
    return await publish_timesheet_saved(transport, timesheet)


@save_router.get("/timesheets", response_model=TimesheetListResponse)
async def get_timesheets(
    employee_id: Optional[str] = Query(None, alias="employeeId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    db: AsyncSession = Depends(get_db),
):
    timesheets = await crud.get_timesheets(db, employee_id=employee_id, start_date=start_date, end_date=end_date)
    return TimesheetListResponse(
        message="Timesheets retrieved successfully",
        count=len(timesheets),
        data=[TimesheetOut.model_validate(t) for t in timesheets],
    )


@save_router.get("/timesheets/{timesheet_id}", response_model=TimesheetResponse, response_model_exclude={"action"})
async def get_timesheet(timesheet_id: int, db: AsyncSession = Depends(get_db)):
    timesheet = await crud.get_timesheet(db, timesheet_id)
    if not timesheet:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorResponse(code=404, error="NOT_FOUND", message="Timesheet not found").model_dump(mode="json"),
        )
    return TimesheetResponse(
        message="Timesheet retrieved successfully",
        data=TimesheetOut.model_validate(timesheet),
        action="retrieved",
    )


@save_router.post("/timesheets", response_model=TimesheetResponse, status_code=status.HTTP_201_CREATED)
async def save_timesheet(
    payload: TimesheetCreate,
    db: AsyncSession = Depends(get_db),
    transport: QueueTransport = Depends(get_transport),
):
    timesheet = await crud.upsert_timesheet_entry(
        db,
        entry_date=payload.date,
        employee_id=payload.employee_id,
        record_type=payload.record_type,
        hours=payload.hours,
        project_id=payload.project_id,
        task_id=payload.task_id,
        wfh=bool(payload.wfh),
        status=payload.status,
    )
    logger.info("Saved timesheet %s for %s on %s", timesheet.id, timesheet.employee_id, timesheet.date)
    await notify(transport, timesheet, payload.status)
    return TimesheetResponse(
        message="Timesheet saved successfully",
        data=TimesheetOut.model_validate(timesheet),
        action="updated",
    )


@save_router.post("/timesheets/weekly", response_model=WeeklyTimesheetResponse, status_code=status.HTTP_201_CREATED)
async def save_weekly_timesheets(
    payload: WeeklyTimesheetCreate,
    db: AsyncSession = Depends(get_db),
    transport: QueueTransport = Depends(get_transport),
):
    """Create or update one record per day for the whole range, both ends included"""
    if payload.start_date > payload.end_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ErrorResponse(
                code=400,
                error="VALIDATION_ERROR",
                message="startDate must be before endDate",
            ).model_dump(mode="json"),
        )

    timesheets = await crud.upsert_timesheet_range(
        db,
        start=payload.start_date,
        end=payload.end_date,
        employee_id=payload.employee_id,
        record_type=payload.record_type,
        hours=payload.hours,
        project_id=payload.project_id,
        task_id=payload.task_id,
        wfh=bool(payload.wfh),
        status=payload.status,
    )
    logger.info(
        "Saved %d timesheets for %s from %s to %s",
        len(timesheets),
        payload.employee_id,
        payload.start_date,
        payload.end_date,
    )
    for timesheet in timesheets:
        await notify(transport, timesheet, payload.status)

    return WeeklyTimesheetResponse(
        message="Timesheets saved successfully",
        count=len(timesheets),
        start_date=payload.start_date,
        end_date=payload.end_date,
        data=[TimesheetOut.model_validate(t) for t in timesheets],
        action="bulk_saved",
    )


@save_router.get("/health")
async def save_health():
    return {"status": "OK"}


@submit_router.post("/timesheets", response_model=TimesheetResponse, status_code=status.HTTP_201_CREATED)
async def submit_timesheet(
    payload: TimesheetCreate,
    db: AsyncSession = Depends(get_db),
    transport: QueueTransport = Depends(get_transport),
):
    # One submitted row per employee per day, whatever the record type
    timesheet = await crud.upsert_timesheet_for_day(
        db,
        entry_date=payload.date,
        employee_id=payload.employee_id,
        record_type=payload.record_type,
        hours=payload.hours,
        project_id=payload.project_id,
        task_id=payload.task_id,
        wfh=payload.wfh,
        status=STATUS_SUBMITTED,
    )
    logger.info("Submitted timesheet %s for %s on %s", timesheet.id, timesheet.employee_id, timesheet.date)
    await publish_timesheet_submitted(transport, timesheet)
    return TimesheetResponse(
        message="Timesheet submitted successfully",
        data=TimesheetOut.model_validate(timesheet),
        action="submitted",
    )


@submit_router.get("/health")
async def submit_health():
    return {"status": "OK"}
