"""Tests for the calendar event endpoints."""

from __future__ import annotations

import json

import httpx
import pytest

from tests.api.conftest import CHANNEL_ID

pytestmark = pytest.mark.unit

_HEADERS = {"X-Channel-Id": CHANNEL_ID}
_EVENT = {
    "id": "evt-1",
    "summary": "Dentist",
    "start": {"dateTime": "2026-03-02T10:00:00Z"},
    "end": {"dateTime": "2026-03-02T11:00:00Z"},
    "attendees": [{"email": "guest@example.com", "responseStatus": "needsAction"}],
    "htmlLink": "https://calendar.google.com/event?eid=1",
}


class TestEvents:
    async def test_list_events(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(200, json={"items": [_EVENT]})

        resp = await api.client.get("/api/calendars/primary/events", headers=_HEADERS)

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        event = body["events"][0]
        assert event["id"] == "evt-1"
        assert event["start"] == "2026-03-02T10:00:00Z"
        assert event["attendees"][0]["email"] == "guest@example.com"

    async def test_create_event(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(200, json=_EVENT)

        resp = await api.client.post(
            "/api/calendars/primary/events",
            json={
                "summary": "Dentist",
                "start": "2026-03-02T10:00:00Z",
                "end": "2026-03-02T11:00:00Z",
                "attendees": "guest@example.com",
            },
            headers=_HEADERS,
        )

        assert resp.status_code == 201
        assert resp.json()["event"]["summary"] == "Dentist"
        [request] = api.calendar_requests
        sent = json.loads(request.content)
        assert sent["attendees"] == [{"email": "guest@example.com"}]
        assert request.url.params["sendUpdates"] == "all"

    async def test_create_event_with_end_before_start(self, api, linked_tenant):
        resp = await api.client.post(
            "/api/calendars/primary/events",
            json={"summary": "x", "start": "2026-03-02T11:00:00Z", "end": "2026-03-02T10:00:00Z"},
            headers=_HEADERS,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_WINDOW"

    async def test_update_event(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(200, json={**_EVENT, "summary": "Moved"})

        resp = await api.client.patch(
            "/api/calendars/primary/events/evt-1", json={"summary": "Moved"}, headers=_HEADERS
        )

        assert resp.status_code == 200
        assert resp.json()["event"]["summary"] == "Moved"
        assert json.loads(api.calendar_requests[0].content) == {"summary": "Moved"}

    async def test_delete_event(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(204)

        resp = await api.client.delete("/api/calendars/primary/events/evt-1", headers=_HEADERS)

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "eventId": "evt-1"}

    async def test_provider_failure_maps_to_502(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(
            404, json={"error": {"message": "Not Found"}}
        )

        resp = await api.client.delete("/api/calendars/primary/events/gone", headers=_HEADERS)

        assert resp.status_code == 502
        body = resp.json()
        assert body["error"]["code"] == "CALENDAR_REQUEST_FAILED"
        assert body["needsAuth"] is False

    async def test_update_event_clears_attendees_with_empty_string(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(200, json={**_EVENT, "attendees": []})

        resp = await api.client.patch(
            "/api/calendars/primary/events/evt-1", json={"attendees": ""}, headers=_HEADERS
        )

        assert resp.status_code == 200
        assert json.loads(api.calendar_requests[0].content) == {"attendees": []}
        assert resp.json()["event"]["attendees"] == []

    async def test_get_event(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(200, json=_EVENT)

        resp = await api.client.get("/api/calendars/primary/events/evt-1", headers=_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["event"]["htmlLink"] == _EVENT["htmlLink"]
        [request] = api.calendar_requests
        assert request.method == "GET"
        assert request.url.path.endswith("/calendars/primary/events/evt-1")

    async def test_create_recurring_event(self, api, linked_tenant):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={**_EVENT, **json.loads(request.content)})

        api.calendar_handler = handler

        resp = await api.client.post(
            "/api/calendars/primary/events/recurring",
            json={
                "summary": "Standup",
                "start": "2026-03-02T09:00:00Z",
                "end": "2026-03-02T09:15:00Z",
                "frequency": "WEEKLY",
                "count": 10,
                "byDay": ["MO", "TU", "TH"],
            },
            headers=_HEADERS,
        )

        assert resp.status_code == 201
        expected = ["RRULE:FREQ=WEEKLY;INTERVAL=1;COUNT=10;BYDAY=MO,TU,TH"]
        assert resp.json()["event"]["recurrence"] == expected
        assert json.loads(api.calendar_requests[0].content)["recurrence"] == expected

    async def test_create_recurring_event_rejects_zero_interval(self, api, linked_tenant):
        resp = await api.client.post(
            "/api/calendars/primary/events/recurring",
            json={"summary": "x", "start": "2026-03-02", "end": "2026-03-03", "interval": 0},
            headers=_HEADERS,
        )
        assert resp.status_code == 422
        assert api.calendar_requests == []


class TestCalendars:
    async def test_list_calendars(self, api, linked_tenant):
        api.calendar_handler = lambda r: httpx.Response(
            200,
            json={
                "items": [
                    {
                        "id": "me@example.com",
                        "summary": "Me",
                        "primary": True,
                        "accessRole": "owner",
                        "timeZone": "Europe/Berlin",
                    },
                    {"id": "holidays", "summary": "Holidays", "accessRole": "reader"},
                ]
            },
        )

        resp = await api.client.get("/api/calendars", headers=_HEADERS)

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 2
        assert body["calendars"][0]["primary"] is True
        assert body["calendars"][1]["primary"] is False
        assert body["calendars"][1]["accessRole"] == "reader"

    async def test_create_calendar(self, api, linked_tenant):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "trips@group", **json.loads(request.content)})

        api.calendar_handler = handler

        resp = await api.client.post(
            "/api/calendars",
            json={"summary": "Trips", "timeZone": "Europe/Lisbon", "description": "Travel"},
            headers=_HEADERS,
        )

        assert resp.status_code == 201
        calendar = resp.json()["calendar"]
        assert calendar["id"] == "trips@group"
        assert calendar["timeZone"] == "Europe/Lisbon"
        assert json.loads(api.calendar_requests[0].content) == {
            "summary": "Trips",
            "timeZone": "Europe/Lisbon",
            "description": "Travel",
        }

    async def test_calendars_need_a_linked_tenant(self, api):
        resp = await api.client.get("/api/calendars", headers=_HEADERS)
        assert resp.status_code == 401
        assert resp.json()["needsAuth"] is True
        assert api.calendar_requests == []
