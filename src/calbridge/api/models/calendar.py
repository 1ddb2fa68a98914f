"""Pydantic models for availability and calendar event endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from calbridge.api.models import CamelModel


class SlotModel(CamelModel):
    """A free slot: ``HH:MM`` labels in the query time zone plus full instants."""

    start: str
    end: str
    start_date_time: datetime
    end_date_time: datetime


class BusySlotModel(CamelModel):
    start: datetime
    end: datetime


class AvailabilityResponse(CamelModel):
    date: str
    time_zone: str
    duration: int
    available_slots: list[SlotModel]
    total: int
    busy_slots: list[BusySlotModel]


class FreeBusyResponse(CamelModel):
    time_min: datetime
    time_max: datetime
    calendar_id: str
    busy: list[BusySlotModel]


class EventListResponse(CamelModel):
    events: list[dict[str, Any]]
    total: int


class EventResponse(CamelModel):
    success: bool = True
    event: dict[str, Any]


class DeleteEventResponse(CamelModel):
    success: bool = True
    event_id: str


class CalendarListResponse(CamelModel):
    calendars: list[dict[str, Any]]
    total: int


class CalendarResponse(CamelModel):
    success: bool = True
    calendar: dict[str, Any]
