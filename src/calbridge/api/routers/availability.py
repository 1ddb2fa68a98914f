"""Availability and free/busy endpoints."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query

from calbridge.api.deps import Services, get_resolved_principal, get_services
from calbridge.api.models.calendar import (
    AvailabilityResponse,
    BusySlotModel,
    FreeBusyResponse,
    SlotModel,
)
from calbridge.availability import day_window, normalize_time_input, resolve_zone
from calbridge.errors import InvalidWindow
from calbridge.identity import ResolvedPrincipal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["availability"])


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    date: str | None = Query(
        default=None, description="Day to search (YYYY-MM-DD); today if omitted."
    ),
    start: str | None = Query(default=None, description="Window start, HH:MM."),
    end: str | None = Query(default=None, description="Window end, HH:MM."),
    duration: int | None = Query(default=None, description="Slot length in minutes."),
    timezone: str | None = Query(default=None, description="IANA time zone of the window."),
    calendar_id: str = Query(default="primary"),
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> AvailabilityResponse:
    """List free slots of the requested length within one day's window."""
    defaults = services.config.availability
    tz_name = timezone or defaults.default_timezone
    zone = resolve_zone(tz_name)
    day = date or datetime.now(zone).date().isoformat()
    minutes = duration if duration is not None else defaults.default_duration_minutes
    if minutes <= 0:
        raise InvalidWindow("duration must be a positive number of minutes")

    window = day_window(day, start or defaults.default_start, end or defaults.default_end, tz_name)
    result = await services.availability.free_slots(
        resolved.tenant_id,
        window=window,
        duration=timedelta(minutes=minutes),
        calendar_id=calendar_id,
    )
    slots = [
        SlotModel(
            start=slot.start.astimezone(zone).strftime("%H:%M"),
            end=slot.end.astimezone(zone).strftime("%H:%M"),
            start_date_time=slot.start,
            end_date_time=slot.end,
        )
        for slot in result.slots
    ]
    return AvailabilityResponse(
        date=window.start.date().isoformat(),
        time_zone=tz_name,
        duration=minutes,
        available_slots=slots,
        total=len(slots),
        busy_slots=[BusySlotModel(start=b.start, end=b.end) for b in result.busy],
    )


@router.get("/freebusy", response_model=FreeBusyResponse)
async def get_freebusy(
    time_min: str | None = Query(default=None, description="Range start (ISO 8601)."),
    time_max: str | None = Query(default=None, description="Range end (ISO 8601)."),
    calendar_id: str = Query(default="primary"),
    timezone: str | None = Query(default=None),
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> FreeBusyResponse:
    """Return the raw busy intervals of a calendar within a range."""
    if not time_min or not time_max:
        raise InvalidWindow("time_min and time_max are required")
    tz_name = timezone or services.config.availability.default_timezone
    range_start = normalize_time_input(time_min, tz_name).start_instant()
    range_end = normalize_time_input(time_max, tz_name).start_instant()
    if range_end < range_start:
        raise InvalidWindow("time_max precedes time_min")
    busy = await services.calendar.busy_intervals(
        resolved.tenant_id, calendar_id=calendar_id, time_min=range_start, time_max=range_end
    )
    return FreeBusyResponse(
        time_min=range_start,
        time_max=range_end,
        calendar_id=calendar_id,
        busy=[BusySlotModel(start=b.start, end=b.end) for b in sorted(busy)],
    )
