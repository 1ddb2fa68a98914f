"""Google Calendar v3 collaborator acting on behalf of a tenant.

Every request obtains its bearer token from the
:class:`~calbridge.lifecycle.CredentialLifecycleManager`.  A ``401`` from the
API triggers exactly one retry with ``stale_token`` set, which forces a
refresh only if nobody else refreshed in between.  ``429``/``503`` responses
are retried with exponential backoff, honouring ``Retry-After``.
Each operation accepts an optional ``timeout`` covering the whole call,
retries included.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from calbridge.availability import Interval, normalize_time_input
from calbridge.errors import CalendarRequestError, InvalidWindow, ReauthRequired

if TYPE_CHECKING:
    from calbridge.lifecycle import CredentialLifecycleManager

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------


class Reminder(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: Literal["email", "popup"] = "popup"
    minutes: int = Field(ge=0, le=40320)


class EventDraft(BaseModel):
    """Fields accepted when creating an event.

    ``start``/``end`` take any form :func:`~calbridge.availability.normalize_time_input`
    understands.  An empty ``attendees`` list means no attendees.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    summary: str = Field(min_length=1)
    start: Any
    end: Any
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    reminders: list[Reminder] | None = None
    visibility: Literal["default", "public", "private", "confidential"] = "default"
    time_zone: str | None = Field(default=None, alias="timeZone")

    @field_validator("attendees", mode="before")
    @classmethod
    def _normalize_attendees(cls, value: Any) -> Any:
        if value is None:
            return []
        return _split_attendees(value)

    def to_google(self, default_tz: str) -> dict[str, Any]:
        tz_name = self.time_zone or default_tz
        start = normalize_time_input(self.start, tz_name)
        end = normalize_time_input(self.end, tz_name)
        if end.start_instant() < start.start_instant():
            raise InvalidWindow("Event end precedes its start")
        body: dict[str, Any] = {
            "summary": self.summary,
            "start": start.to_google(),
            "end": end.to_google(),
            "visibility": self.visibility,
        }
        if self.time_zone:
            for key in ("start", "end"):
                if "dateTime" in body[key]:
                    body[key]["timeZone"] = self.time_zone
        if self.description is not None:
            body["description"] = self.description
        if self.location is not None:
            body["location"] = self.location
        if self.attendees:
            body["attendees"] = [{"email": email} for email in self.attendees]
        body["reminders"] = _reminders_body(self.reminders)
        return body


class EventPatch(BaseModel):
    """Fields accepted when updating an event; omitted fields are left alone."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    summary: str | None = None
    start: Any = None
    end: Any = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None
    reminders: list[Reminder] | None = None
    visibility: Literal["default", "public", "private", "confidential"] | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")

    @field_validator("attendees", mode="before")
    @classmethod
    def _normalize_attendees(cls, value: Any) -> Any:
        # None leaves attendees untouched; "" clears them.
        if value is None:
            return None
        return _split_attendees(value)

    def to_google(self, default_tz: str) -> dict[str, Any]:
        tz_name = self.time_zone or default_tz
        body: dict[str, Any] = {}
        for key in ("summary", "description", "location", "visibility"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        for key in ("start", "end"):
            raw = getattr(self, key)
            if raw is not None:
                body[key] = normalize_time_input(raw, tz_name).to_google()
                if self.time_zone and "dateTime" in body[key]:
                    body[key]["timeZone"] = self.time_zone
        if self.attendees is not None:
            body["attendees"] = [{"email": email} for email in self.attendees if email.strip()]
        if self.reminders is not None:
            body["reminders"] = _reminders_body(self.reminders)
        return body


_WEEKDAYS = Literal["MO", "TU", "WE", "TH", "FR", "SA", "SU"]


class RecurringEventDraft(EventDraft):
    """An :class:`EventDraft` repeated by an ``RRULE``.

    ``byDay`` only applies to weekly recurrences.  ``until`` accepts any time
    form and is sent as a UTC instant.
    """

    frequency: Literal["DAILY", "WEEKLY", "MONTHLY", "YEARLY"] = "WEEKLY"
    interval: int = Field(default=1, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: Any = None
    by_day: list[_WEEKDAYS] | None = Field(default=None, alias="byDay")

    @field_validator("frequency", mode="before")
    @classmethod
    def _upper_frequency(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    def recurrence_rule(self, default_tz: str) -> str:
        rule = f"FREQ={self.frequency};INTERVAL={self.interval}"
        if self.count is not None:
            rule += f";COUNT={self.count}"
        if self.until is not None:
            until = normalize_time_input(self.until, self.time_zone or default_tz).start_instant()
            rule += f";UNTIL={until.astimezone(UTC).strftime('%Y%m%dT%H%M%SZ')}"
        if self.by_day and self.frequency == "WEEKLY":
            rule += f";BYDAY={','.join(self.by_day)}"
        return f"RRULE:{rule}"

    def to_google(self, default_tz: str) -> dict[str, Any]:
        body = super().to_google(default_tz)
        # Google expands recurring timed events in an explicit zone.
        for key in ("start", "end"):
            if "dateTime" in body[key]:
                body[key].setdefault("timeZone", self.time_zone or default_tz)
        body["recurrence"] = [self.recurrence_rule(default_tz)]
        return body


class CalendarDraft(BaseModel):
    """Fields accepted when creating a secondary calendar."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    summary: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")

    def to_google(self, default_tz: str) -> dict[str, Any]:
        body: dict[str, Any] = {"summary": self.summary, "timeZone": self.time_zone or default_tz}
        if self.description is not None:
            body["description"] = self.description
        if self.location is not None:
            body["location"] = self.location
        return body


def _split_attendees(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _reminders_body(reminders: list[Reminder] | None) -> dict[str, Any]:
    if not reminders:
        return {"useDefault": True}
    return {"useDefault": False, "overrides": [r.model_dump() for r in reminders]}


def summarize_event(event: dict[str, Any]) -> dict[str, Any]:
    """Flatten a Google event resource into the shape the API returns."""
    start = event.get("start") or {}
    end = event.get("end") or {}
    attendees = event.get("attendees")
    return {
        "id": event.get("id"),
        "summary": event.get("summary"),
        "description": event.get("description"),
        "start": start.get("dateTime") or start.get("date"),
        "end": end.get("dateTime") or end.get("date"),
        "location": event.get("location"),
        "status": event.get("status"),
        "attendees": [
            {
                "email": a.get("email"),
                "responseStatus": a.get("responseStatus"),
                "displayName": a.get("displayName"),
            }
            for a in attendees
            if isinstance(a, dict)
        ]
        if isinstance(attendees, list)
        else None,
        "htmlLink": event.get("htmlLink"),
        "recurrence": event.get("recurrence"),
    }


def summarize_calendar(entry: dict[str, Any]) -> dict[str, Any]:
    """Flatten a calendar (or calendarList entry) resource."""
    return {
        "id": entry.get("id"),
        "summary": entry.get("summary"),
        "description": entry.get("description"),
        "location": entry.get("location"),
        "timeZone": entry.get("timeZone"),
        "primary": bool(entry.get("primary", False)),
        "accessRole": entry.get("accessRole"),
        "backgroundColor": entry.get("backgroundColor"),
        "foregroundColor": entry.get("foregroundColor"),
    }


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Authenticated Google Calendar requests for any tenant."""

    def __init__(
        self,
        lifecycle: CredentialLifecycleManager,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
        default_timezone: str = "UTC",
    ) -> None:
        self._lifecycle = lifecycle
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._default_timezone = default_timezone

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request_once(
        self,
        tenant_id: str,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        stale_token: str | None,
        timeout: float | None,
    ) -> tuple[httpx.Response, str]:
        access_token = await self._lifecycle.acquire_with_retry(tenant_id, stale_token=stale_token)
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(
                status_code=None, message=f"transport error: {type(exc).__name__}"
            ) from exc
        return response, access_token

    async def _request_with_bearer(
        self,
        tenant_id: str,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        async def send(stale_token: str | None) -> tuple[httpx.Response, str]:
            return await self._request_once(
                tenant_id,
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                stale_token=stale_token,
                timeout=timeout,
            )

        response, used_token = await send(None)
        retry = 0
        refreshed_after_401 = False
        while True:
            # A 401 gets one forced refresh, whichever attempt it answered.
            if response.status_code == 401 and not refreshed_after_401:
                logger.info("Calendar API rejected token for tenant=%s; refreshing once", tenant_id)
                refreshed_after_401 = True
                response, used_token = await send(used_token)
                continue

            # Rate-limit retry: honour Retry-After on 429, exponential backoff otherwise.
            if (
                response.status_code in RATE_LIMIT_RETRY_STATUS_CODES
                and retry < RATE_LIMIT_MAX_RETRIES
            ):
                backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
                if response.status_code == 429:
                    retry_after_header = response.headers.get("Retry-After")
                    if retry_after_header is not None:
                        try:
                            backoff = float(retry_after_header)
                        except ValueError:
                            pass
                logger.warning(
                    "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                    response.status_code,
                    backoff,
                    retry + 1,
                    RATE_LIMIT_MAX_RETRIES,
                )
                await asyncio.sleep(backoff)
                response, used_token = await send(None)
                retry += 1
                continue

            return response

    async def _request_json(
        self,
        tenant_id: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one logical request and decode its JSON object.

        *timeout* bounds the whole operation (token refresh, retries and
        backoff included) as well as each HTTP exchange.
        """
        try:
            async with asyncio.timeout(timeout):
                response = await self._request_with_bearer(
                    tenant_id,
                    method=method,
                    path=path,
                    params=params,
                    json_body=json_body,
                    timeout=timeout,
                )
        except TimeoutError as exc:
            raise CalendarRequestError(
                status_code=None, message=f"timed out after {timeout}s"
            ) from exc
        if response.status_code == 401:
            raise ReauthRequired(tenant_id, "Calendar provider rejected the refreshed access token")
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarRequestError(
                status_code=response.status_code, message="invalid JSON in response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarRequestError(
                status_code=response.status_code, message="unexpected JSON payload shape"
            )
        return payload

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_calendars(
        self, tenant_id: str, *, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        """Return the tenant's calendar list entries."""
        payload = await self._request_json(
            tenant_id, "GET", "/users/me/calendarList", timeout=timeout
        )
        items = payload.get("items")
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    async def create_calendar(
        self, tenant_id: str, *, calendar: CalendarDraft, timeout: float | None = None
    ) -> dict[str, Any]:
        return await self._request_json(
            tenant_id,
            "POST",
            "/calendars",
            json_body=calendar.to_google(self._default_timezone),
            timeout=timeout,
        )

    async def list_events(
        self,
        tenant_id: str,
        *,
        calendar_id: str = "primary",
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        limit: int = 15,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        """List upcoming single events, starting now when *time_min* is omitted."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": min(limit, 250),
            "timeMin": _google_rfc3339(time_min or datetime.now(UTC)),
        }
        if time_max is not None:
            params["timeMax"] = _google_rfc3339(time_max)
        payload = await self._request_json(
            tenant_id,
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params=params,
            timeout=timeout,
        )
        items = payload.get("items")
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    async def get_event(
        self,
        tenant_id: str,
        *,
        calendar_id: str = "primary",
        event_id: str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self._request_json(
            tenant_id,
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            timeout=timeout,
        )

    async def insert_event(
        self,
        tenant_id: str,
        *,
        calendar_id: str = "primary",
        event: EventDraft,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Create *event*; a :class:`RecurringEventDraft` carries its ``RRULE``."""
        return await self._request_json(
            tenant_id,
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params={"sendUpdates": "all"},
            json_body=event.to_google(self._default_timezone),
            timeout=timeout,
        )

    async def update_event(
        self,
        tenant_id: str,
        *,
        calendar_id: str = "primary",
        event_id: str,
        patch: EventPatch,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self._request_json(
            tenant_id,
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            params={"sendUpdates": "all"},
            json_body=patch.to_google(self._default_timezone),
            timeout=timeout,
        )

    async def delete_event(
        self,
        tenant_id: str,
        *,
        calendar_id: str = "primary",
        event_id: str,
        timeout: float | None = None,
    ) -> None:
        await self._request_json(
            tenant_id,
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            params={"sendUpdates": "all"},
            timeout=timeout,
        )

    async def busy_intervals(
        self,
        tenant_id: str,
        *,
        calendar_id: str = "primary",
        time_min: datetime,
        time_max: datetime,
        timeout: float | None = None,
    ) -> list[Interval]:
        """Return busy intervals of *calendar_id* within ``[time_min, time_max)``."""
        if time_max <= time_min:
            return []
        payload = await self._request_json(
            tenant_id,
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": _google_rfc3339(time_min),
                "timeMax": _google_rfc3339(time_max),
                "items": [{"id": calendar_id}],
            },
            timeout=timeout,
        )
        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            raise CalendarRequestError(
                status_code=200, message="freeBusy response missing calendars"
            )

        calendar_payload = calendars_payload.get(calendar_id)
        if not isinstance(calendar_payload, dict) and len(calendars_payload) == 1:
            calendar_payload = next(iter(calendars_payload.values()))
        if not isinstance(calendar_payload, dict):
            raise CalendarRequestError(
                status_code=200, message="freeBusy response missing requested calendar"
            )
        errors = calendar_payload.get("errors")
        if isinstance(errors, list) and errors:
            reason = errors[0].get("reason") if isinstance(errors[0], dict) else None
            raise CalendarRequestError(status_code=200, message=f"freeBusy error: {reason}")

        busy_payload = calendar_payload.get("busy")
        if not isinstance(busy_payload, list):
            return []

        intervals: list[Interval] = []
        for window in busy_payload:
            if not isinstance(window, dict):
                continue
            start_raw = window.get("start")
            end_raw = window.get("end")
            if not isinstance(start_raw, str) or not isinstance(end_raw, str):
                continue
            start_at = _parse_google_datetime(start_raw)
            end_at = _parse_google_datetime(end_raw)
            if end_at <= start_at:
                continue
            intervals.append(Interval(start_at, end_at))
        return intervals
