"""Tests for GET /api/availability and GET /api/freebusy."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from tests.api.conftest import CHANNEL_ID, TENANT_ID
from tests.fakes import invalid_grant, make_grant

pytestmark = pytest.mark.unit

_HEADERS = {"X-Channel-Id": CHANNEL_ID}


def _freebusy(*busy: tuple[str, str]):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "calendars": {
                    "primary": {"busy": [{"start": start, "end": end} for start, end in busy]}
                }
            },
        )

    return handler


class TestAvailability:
    async def test_free_slots_around_a_meeting(self, api, linked_tenant):
        api.calendar_handler = _freebusy(("2026-03-02T12:00:00Z", "2026-03-02T13:00:00Z"))

        resp = await api.client.get(
            "/api/availability", params={"date": "2026-03-02", "duration": 60}, headers=_HEADERS
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["date"] == "2026-03-02"
        assert body["timeZone"] == "UTC"
        assert body["duration"] == 60
        starts = [slot["start"] for slot in body["availableSlots"]]
        assert "11:00" in starts
        assert "13:00" in starts
        assert "11:15" not in starts
        assert "12:00" not in starts
        assert body["total"] == 22
        assert len(body["busySlots"]) == 1

        [request] = api.calendar_requests
        sent = json.loads(request.content)
        assert sent["timeMin"] == "2026-03-02T09:00:00Z"
        assert sent["timeMax"] == "2026-03-02T17:00:00Z"
        assert request.headers["Authorization"] == "Bearer access-1"

    async def test_window_in_requested_time_zone(self, api, linked_tenant):
        api.calendar_handler = _freebusy(("2026-03-02T09:30:00Z", "2026-03-02T12:00:00Z"))

        resp = await api.client.get(
            "/api/availability",
            params={
                "date": "2026-03-02",
                "start": "10:00",
                "end": "14:00",
                "duration": 30,
                "timezone": "Europe/Berlin",
            },
            headers=_HEADERS,
        )

        body = resp.json()
        starts = [slot["start"] for slot in body["availableSlots"]]
        assert starts == ["10:00", "13:00", "13:15", "13:30"]
        first = body["availableSlots"][0]
        assert first["startDateTime"].startswith("2026-03-02T10:00:00")
        assert first["startDateTime"].endswith("+01:00")

    async def test_oversized_duration_returns_no_slots(self, api, linked_tenant):
        api.calendar_handler = _freebusy()
        resp = await api.client.get(
            "/api/availability", params={"date": "2026-03-02", "duration": 600}, headers=_HEADERS
        )
        assert resp.status_code == 200
        assert resp.json()["total"] == 0

    @pytest.mark.parametrize(
        "params",
        [
            {"date": "2026-03-02", "duration": 0},
            {"date": "2026-03-02", "timezone": "Mars/Olympus"},
            {"date": "not-a-date"},
            {"date": "2026-03-02", "start": "17:00", "end": "09:00"},
        ],
    )
    async def test_invalid_queries(self, api, linked_tenant, params):
        resp = await api.client.get("/api/availability", params=params, headers=_HEADERS)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_WINDOW"
        assert api.calendar_requests == []

    async def test_revoked_grant_requires_reauth(self, api, linked_tenant):
        api.credentials.put(
            TENANT_ID, make_grant("access-2", expires_at=datetime.now(UTC) - timedelta(hours=1))
        )
        api.oauth.refresh_error = invalid_grant()

        resp = await api.client.get(
            "/api/availability", params={"date": "2026-03-02"}, headers=_HEADERS
        )

        assert resp.status_code == 401
        body = resp.json()
        assert body["error"]["code"] == "REAUTH_REQUIRED"
        assert body["needsAuth"] is True
        assert body["authUrl"].startswith("https://accounts.example.test/auth?")
        assert api.credentials.rows[TENANT_ID].access_token == "access-2"

    async def test_unlinked_channel(self, api):
        resp = await api.client.get(
            "/api/availability", params={"date": "2026-03-02"}, headers={"X-Channel-Id": "other"}
        )
        assert resp.status_code == 401
        assert resp.json()["needsAuth"] is True


class TestFreeBusy:
    async def test_returns_sorted_busy_intervals(self, api, linked_tenant):
        api.calendar_handler = _freebusy(
            ("2026-03-02T15:00:00Z", "2026-03-02T16:00:00Z"),
            ("2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z"),
        )

        resp = await api.client.get(
            "/api/freebusy",
            params={"time_min": "2026-03-02T00:00:00Z", "time_max": "2026-03-03T00:00:00Z"},
            headers=_HEADERS,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["calendarId"] == "primary"
        assert [b["start"][:13] for b in body["busy"]] == ["2026-03-02T09", "2026-03-02T15"]

    async def test_range_is_required(self, api, linked_tenant):
        resp = await api.client.get(
            "/api/freebusy", params={"time_min": "2026-03-02"}, headers=_HEADERS
        )
        assert resp.status_code == 400
