"""Calendar and event endpoints acting on the resolved tenant's calendars."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Query

from calbridge.api.deps import Services, get_resolved_principal, get_services
from calbridge.api.models.calendar import (
    CalendarListResponse,
    CalendarResponse,
    DeleteEventResponse,
    EventListResponse,
    EventResponse,
)
from calbridge.availability import normalize_time_input
from calbridge.calendar_client import (
    CalendarDraft,
    EventDraft,
    EventPatch,
    RecurringEventDraft,
    summarize_calendar,
    summarize_event,
)
from calbridge.identity import ResolvedPrincipal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendars", tags=["calendar"])


@router.get("", response_model=CalendarListResponse)
async def list_calendars(
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> CalendarListResponse:
    entries = await services.calendar.list_calendars(resolved.tenant_id)
    calendars = [summarize_calendar(entry) for entry in entries]
    return CalendarListResponse(calendars=calendars, total=len(calendars))


@router.post("", response_model=CalendarResponse, status_code=201)
async def create_calendar(
    draft: CalendarDraft = Body(...),
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> CalendarResponse:
    created = await services.calendar.create_calendar(resolved.tenant_id, calendar=draft)
    logger.info("Calendar created: tenant=%s calendar=%s", resolved.tenant_id, created.get("id"))
    return CalendarResponse(calendar=summarize_calendar(created))


@router.get("/{calendar_id}/events", response_model=EventListResponse)
async def list_events(
    calendar_id: str,
    time_min: str | None = Query(default=None),
    time_max: str | None = Query(default=None),
    max_results: int = Query(default=15, ge=1, le=250),
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> EventListResponse:
    """List upcoming events (from now unless ``time_min`` is given)."""
    tz_name = services.config.availability.default_timezone
    events = await services.calendar.list_events(
        resolved.tenant_id,
        calendar_id=calendar_id,
        time_min=normalize_time_input(time_min, tz_name).start_instant() if time_min else None,
        time_max=normalize_time_input(time_max, tz_name).start_instant() if time_max else None,
        limit=max_results,
    )
    summaries = [summarize_event(event) for event in events]
    return EventListResponse(events=summaries, total=len(summaries))


@router.post("/{calendar_id}/events", response_model=EventResponse, status_code=201)
async def create_event(
    calendar_id: str,
    draft: EventDraft = Body(...),
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> EventResponse:
    created = await services.calendar.insert_event(
        resolved.tenant_id, calendar_id=calendar_id, event=draft
    )
    logger.info("Event created: tenant=%s calendar=%s", resolved.tenant_id, calendar_id)
    return EventResponse(event=summarize_event(created))


@router.post("/{calendar_id}/events/recurring", response_model=EventResponse, status_code=201)
async def create_recurring_event(
    calendar_id: str,
    draft: RecurringEventDraft = Body(...),
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> EventResponse:
    """Create an event repeated by an RRULE built from the frequency fields."""
    created = await services.calendar.insert_event(
        resolved.tenant_id, calendar_id=calendar_id, event=draft
    )
    logger.info("Recurring event created: tenant=%s calendar=%s", resolved.tenant_id, calendar_id)
    return EventResponse(event=summarize_event(created))


@router.get("/{calendar_id}/events/{event_id}", response_model=EventResponse)
async def get_event(
    calendar_id: str,
    event_id: str,
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> EventResponse:
    event = await services.calendar.get_event(
        resolved.tenant_id, calendar_id=calendar_id, event_id=event_id
    )
    return EventResponse(event=summarize_event(event))

@router.patch("/{calendar_id}/events/{event_id}", response_model=EventResponse)
async def update_event(
    calendar_id: str,
    event_id: str,
    patch: EventPatch = Body(...),
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> EventResponse:
    updated = await services.calendar.update_event(
        resolved.tenant_id, calendar_id=calendar_id, event_id=event_id, patch=patch
    )
    return EventResponse(event=summarize_event(updated))


@router.delete("/{calendar_id}/events/{event_id}", response_model=DeleteEventResponse)
async def delete_event(
    calendar_id: str,
    event_id: str,
    resolved: ResolvedPrincipal = Depends(get_resolved_principal),
    services: Services = Depends(get_services),
) -> DeleteEventResponse:
    await services.calendar.delete_event(
        resolved.tenant_id, calendar_id=calendar_id, event_id=event_id
    )
    logger.info("Event deleted: tenant=%s calendar=%s", resolved.tenant_id, calendar_id)
    return DeleteEventResponse(event_id=event_id)
