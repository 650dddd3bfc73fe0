"""
Tests for the clinic records tools against a mocked clinic API.
"""

import json
from datetime import datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from src.receptionist.clinic_tools import (
    ClinicApiClient,
    ClinicTools,
    build_clinic_tools,
    format_spoken_datetime,
)
from src.receptionist.tools import ToolCall, ToolError

DUBAI = ZoneInfo("Asia/Dubai")
NOW = datetime(2024, 8, 6, 9, 0, tzinfo=DUBAI)


class ClinicApiStub:
    """Records requests and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": "not found"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)

    def body(self, index: int = -1):
        return json.loads(self.requests[index].content)


def _tools(config, stub: ClinicApiStub) -> ClinicTools:
    client = httpx.AsyncClient(base_url=config.clinic_api_url, transport=httpx.MockTransport(stub))
    return ClinicTools(ClinicApiClient(config, client=client), config=config, call_sid="CA1", now=lambda: NOW)


@pytest.mark.asyncio
async def test_check_availability_filters_past_slots(make_config):
    stub = ClinicApiStub({
        ("POST", "/api/availability"): (200, {
            "status": "success",
            "results": [{"dateTime": "2024-08-06T10:00:00", "available": False}],
            "alternativeSlots": ["10:30 AM", "11:00 AM"],
        }),
    })
    tools = _tools(make_config(), stub)

    result = await tools.check_availability({
        "doctor": "Dr. Ali",
        "slots": [
            {"dateTime": "2024-08-06T08:00:00", "duration": 30},
            {"dateTime": "2024-08-06T10:00:00", "duration": 30},
        ],
    })

    assert result["status"] == "success"
    assert result["results"][0] == {
        "dateTime": "2024-08-06T08:00:00",
        "available": False,
        "message": "Time slot is in the past",
    }
    assert result["results"][1]["available"] is False
    assert result["alternativeSlots"] == ["10:30 AM", "11:00 AM"]
    assert stub.body() == {
        "slots": [{"dateTime": "2024-08-06T10:00:00", "duration": 30}],
        "doctor": "Dr. Ali",
    }


@pytest.mark.asyncio
async def test_check_availability_all_past_skips_api(make_config):
    stub = ClinicApiStub({})
    tools = _tools(make_config(), stub)

    result = await tools.check_availability({
        "doctor": "Dr. Ali",
        "slots": [{"dateTime": "2024-08-05T10:00:00", "duration": 30}, {"dateTime": "soon"}],
    })

    assert [r["available"] for r in result["results"]] == [False, False]
    assert result["results"][1]["message"] == "Invalid date or time"
    assert stub.requests == []


@pytest.mark.asyncio
async def test_book_meeting_requires_confirmations(make_config):
    stub = ClinicApiStub({})
    tools = _tools(make_config(), stub)
    args = {"dateTime": "2024-08-07T14:30:00", "email": "john@gmail.com", "doctor": "Dr. Ali"}

    first = await tools.book_meeting(args)
    second = await tools.book_meeting({**args, "confirmedDateTime": True})

    assert first["status"] == "needs_date_time_confirmation"
    assert first["dateTime"] == "August 7, 2024 at 2:30 PM (Asia/Dubai)"
    assert second["status"] == "needs_email_confirmation"
    assert stub.requests == []


@pytest.mark.asyncio
async def test_book_meeting_posts_confirmed_appointment(make_config):
    stub = ClinicApiStub({
        ("POST", "/api/appointments"): (200, {"status": "success", "eventId": "apt_1"}),
    })
    tools = _tools(make_config(), stub)

    result = await tools.book_meeting({
        "dateTime": "2024-08-07T14:30:00",
        "email": "john@gmail.com",
        "doctor": "Dr. Ali",
        "confirmedDateTime": True,
        "confirmedEmail": True,
    })

    assert result["status"] == "success"
    assert result["eventId"] == "apt_1"
    assert result["scheduledTime"].startswith("August 7, 2024 at 2:30 PM")
    assert stub.body() == {
        "dateTime": "2024-08-07T14:30:00+04:00",
        "email": "john@gmail.com",
        "duration": 30,
        "doctor": "Dr. Ali",
    }


@pytest.mark.asyncio
async def test_recommend_doctor_passes_preferences(make_config):
    stub = ClinicApiStub({
        ("GET", "/api/doctors/recommendation"): (200, {"status": "success", "doctor": "Dr. Sara"}),
    })
    tools = _tools(make_config(), stub)

    result = await tools.recommend_doctor({"department": "Neurology", "gender": "female"})

    assert result["doctor"] == "Dr. Sara"
    params = stub.requests[0].url.params
    assert params["department"] == "Neurology"
    assert params["gender"] == "female"
    assert "language" not in params


@pytest.mark.asyncio
async def test_save_user_rating_validates_range(make_config):
    stub = ClinicApiStub({("POST", "/api/ratings"): (200, {"status": "success"})})
    tools = _tools(make_config(), stub)

    rejected = await tools.save_user_rating({"callQualityRating": 7, "needsAddressedRating": 5})
    saved = await tools.save_user_rating({"callQualityRating": 4, "needsAddressedRating": 5})

    assert rejected["status"] == "failure"
    assert saved["status"] == "success"
    assert stub.body() == {"callQualityRating": 4.0, "needsAddressedRating": 5.0, "callSid": "CA1"}


@pytest.mark.asyncio
async def test_registry_exposes_four_tools_and_surfaces_http_errors(make_config):
    config = make_config()
    stub = ClinicApiStub({("GET", "/api/doctors/recommendation"): (500, {"error": "boom"})})
    registry = build_clinic_tools(config, handlers=_tools(config, stub))

    assert registry.names() == ["checkAvailability", "bookMeeting", "recommendDoctor", "saveUserRating"]
    assert registry.ack_text("bookMeeting") == "Great! I'll book that appointment for you now."

    with pytest.raises(ToolError):
        await registry.invoke(ToolCall("recommendDoctor", {"department": "Cardiology"}))


def test_format_spoken_datetime():
    assert format_spoken_datetime(datetime(2024, 1, 5, 0, 5)) == "January 5, 2024 at 12:05 AM"
