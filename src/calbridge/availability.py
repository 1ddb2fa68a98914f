"""Free-slot computation over a time window.

The engine is pure: given a window, busy intervals and a slot length it
returns every candidate ``[t, t + duration)`` stepping from the window start
by a fixed granularity (15 minutes by default) that fits inside the window
and overlaps no busy interval.  Overlap uses the half-open test
``candidate.start < busy.end and candidate.end > busy.start``, so a slot may
start exactly when a meeting ends and end exactly when one starts.

Candidates may overlap each other; output is chronological; busy input may be
unsorted or overlapping.  A duration longer than the window yields ``[]``.

This module also owns the single normalization of user-supplied times
(:func:`normalize_time_input`) and the ``HH:MM`` day-window builder used by
the availability endpoint.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calbridge.errors import InvalidWindow

if TYPE_CHECKING:
    from calbridge.calendar_client import GoogleCalendarClient

logger = logging.getLogger(__name__)

DEFAULT_GRANULARITY = timedelta(minutes=15)


@dataclass(frozen=True, order=True)
class Interval:
    """A half-open ``[start, end)`` span of tz-aware instants."""

    start: datetime
    end: datetime

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and self.end > other.start

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


BusyInterval = Interval
FreeSlot = Interval


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def compute_free_slots(
    window: Interval,
    busy: Iterable[Interval],
    slot_duration: timedelta,
    granularity: timedelta = DEFAULT_GRANULARITY,
) -> list[FreeSlot]:
    """Return the free slots of *slot_duration* inside *window*.

    Parameters
    ----------
    window:
        The span to search.  A zero-length window yields no slots.
    busy:
        Busy intervals in any order; they may overlap each other or extend
        past the window.
    slot_duration:
        Length of each candidate slot.
    granularity:
        Step between consecutive candidate starts.

    Raises
    ------
    InvalidWindow
        Non-positive duration or granularity, naive datetimes, or a window
        whose end precedes its start.
    """
    if slot_duration <= timedelta(0):
        raise InvalidWindow("Slot duration must be positive")
    if granularity <= timedelta(0):
        raise InvalidWindow("Granularity must be positive")
    if window.start.tzinfo is None or window.end.tzinfo is None:
        raise InvalidWindow("Window bounds must be timezone-aware")
    if window.end < window.start:
        raise InvalidWindow("Window end precedes its start")

    # Only intervals touching the window can block a candidate.
    relevant = sorted(b for b in busy if b.overlaps(window))

    slots: list[FreeSlot] = []
    cursor = window.start
    while cursor + slot_duration <= window.end:
        candidate = Interval(cursor, cursor + slot_duration)
        if not any(candidate.overlaps(b) for b in relevant):
            slots.append(candidate)
        cursor += granularity
    return slots


# ---------------------------------------------------------------------------
# Time input normalization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateTimeInput:
    """A specific instant."""

    value: datetime
    time_zone: str | None = None

    def to_google(self) -> dict[str, str]:
        body = {"dateTime": self.value.isoformat()}
        if self.time_zone:
            body["timeZone"] = self.time_zone
        return body

    def start_instant(self) -> datetime:
        return self.value


@dataclass(frozen=True)
class AllDayInput:
    """A calendar date, interpreted in ``time_zone``."""

    value: date
    time_zone: str = "UTC"

    def to_google(self) -> dict[str, str]:
        return {"date": self.value.isoformat()}

    def start_instant(self) -> datetime:
        return datetime.combine(self.value, time.min, tzinfo=resolve_zone(self.time_zone))


TimeInput = DateTimeInput | AllDayInput


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidWindow(f"Unknown time zone: {name!r}") from exc


def _parse_datetime(raw: str, tz_name: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidWindow(f"Invalid date-time: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=resolve_zone(tz_name))
    return parsed


def _parse_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise InvalidWindow(f"Invalid date: {raw!r}") from exc


def normalize_time_input(raw: Any, default_tz: str = "UTC") -> TimeInput:
    """Normalize any accepted time representation into a :data:`TimeInput`.

    Accepted forms: a ``datetime`` or ``date``; an ISO-8601 date-time string
    (naive values are placed in *default_tz*); an ISO date string (all-day);
    a ``{"dateTime": ..., "timeZone": ...}`` or ``{"date": ...}`` mapping; or
    a JSON string encoding such a mapping.

    Raises
    ------
    InvalidWindow
        The value matches none of the accepted forms.
    """
    if isinstance(raw, datetime):
        value = raw if raw.tzinfo is not None else raw.replace(tzinfo=resolve_zone(default_tz))
        return DateTimeInput(value)
    if isinstance(raw, date):
        return AllDayInput(raw, default_tz)

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            raise InvalidWindow("Empty time value")
        if text.startswith("{"):
            try:
                raw = json.loads(text)
            except json.JSONDecodeError as exc:
                raise InvalidWindow("Time value is not valid JSON") from exc
        elif "T" in text or " " in text:
            return DateTimeInput(_parse_datetime(text, default_tz))
        else:
            return AllDayInput(_parse_date(text), default_tz)

    if isinstance(raw, dict):
        tz_name = raw.get("timeZone") or default_tz
        if not isinstance(tz_name, str):
            raise InvalidWindow("timeZone must be a string")
        resolve_zone(tz_name)
        if isinstance(raw.get("dateTime"), str):
            return DateTimeInput(_parse_datetime(raw["dateTime"], tz_name), raw.get("timeZone"))
        if isinstance(raw.get("date"), str):
            return AllDayInput(_parse_date(raw["date"]), tz_name)
        raise InvalidWindow("Time object needs a dateTime or date field")

    raise InvalidWindow(f"Unsupported time value of type {type(raw).__name__}")


def _parse_hhmm(raw: str) -> time:
    try:
        hours, minutes = raw.strip().split(":")
        return time(int(hours), int(minutes))
    except ValueError as exc:
        raise InvalidWindow(f"Time must be HH:MM, got {raw!r}") from exc


def day_window(day: date | str, start: str, end: str, tz_name: str = "UTC") -> Interval:
    """Build the window ``[day start, day end)`` in *tz_name* from ``HH:MM`` bounds."""
    zone = resolve_zone(tz_name)
    if isinstance(day, str):
        day = _parse_date(day)
    window = Interval(
        datetime.combine(day, _parse_hhmm(start), tzinfo=zone),
        datetime.combine(day, _parse_hhmm(end), tzinfo=zone),
    )
    if window.end < window.start:
        raise InvalidWindow("End time precedes start time")
    return window


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AvailabilityResult:
    window: Interval
    slots: list[FreeSlot]
    busy: list[BusyInterval]


class AvailabilityService:
    """Fetch a tenant's busy intervals and run the engine over them."""

    def __init__(
        self,
        calendar: GoogleCalendarClient,
        *,
        granularity: timedelta = DEFAULT_GRANULARITY,
    ) -> None:
        self._calendar = calendar
        self._granularity = granularity

    async def free_slots(
        self,
        tenant_id: str,
        *,
        window: Interval,
        duration: timedelta,
        calendar_id: str = "primary",
        timeout: float | None = None,
    ) -> AvailabilityResult:
        # Validate before spending a remote call.
        compute_free_slots(window, (), duration, self._granularity)
        busy = await self._calendar.busy_intervals(
            tenant_id,
            calendar_id=calendar_id,
            time_min=window.start,
            time_max=window.end,
            timeout=timeout,
        )
        slots = compute_free_slots(window, busy, duration, self._granularity)
        logger.debug(
            "Availability for tenant=%s: %d busy, %d free slot(s)", tenant_id, len(busy), len(slots)
        )
        return AvailabilityResult(window=window, slots=slots, busy=sorted(busy))
