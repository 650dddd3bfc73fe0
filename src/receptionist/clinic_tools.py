"""
Clinic records tools for the receptionist.

The tools are thin wrappers over the clinic records REST API; doctors, calendars,
appointments and survey ratings all live behind it. Local checks (past slots,
booking confirmation) run before any request is made.

Endpoints (relative to CLINIC_API_URL):
- POST /availability          {slots: [{dateTime, duration}], doctor}
- POST /appointments          {dateTime, email, duration, doctor}
- GET  /doctors/recommendation?department=&language=&gender=
- POST /ratings               {callQualityRating, needsAddressedRating, callSid}
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx
import structlog

from src.receptionist.config import get_config
from src.receptionist.tools import Tool, ToolRegistry

logger = structlog.get_logger(__name__)

DEFAULT_MEETING_MINUTES = 30

_ISO_EXAMPLE = 'ISO 8601 format (e.g., "2024-07-20T14:30:00"), interpreted in the clinic timezone'


class ClinicApiClient:
    """Async client for the clinic records API."""

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(
            base_url=self.config.clinic_api_url,
            timeout=httpx.Timeout(self.config.clinic_api_timeout_seconds),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await self._client.post(path, json=payload)
        resp.raise_for_status()
        return resp.json()

    async def check_availability(self, slots: list[dict[str, Any]], doctor: str) -> dict[str, Any]:
        return await self._post("/availability", {"slots": slots, "doctor": doctor})

    async def book_meeting(self, *, date_time: str, email: str, duration: int, doctor: str) -> dict[str, Any]:
        return await self._post(
            "/appointments",
            {"dateTime": date_time, "email": email, "duration": duration, "doctor": doctor},
        )

    async def recommend_doctor(
        self,
        department: str,
        language: Optional[str] = None,
        gender: Optional[str] = None,
    ) -> dict[str, Any]:
        params = {"department": department}
        if language:
            params["language"] = language
        if gender:
            params["gender"] = gender
        resp = await self._client.get("/doctors/recommendation", params=params)
        resp.raise_for_status()
        return resp.json()

    async def save_user_rating(
        self,
        call_quality: float,
        needs_addressed: float,
        call_sid: str = "",
    ) -> dict[str, Any]:
        return await self._post(
            "/ratings",
            {
                "callQualityRating": call_quality,
                "needsAddressedRating": needs_addressed,
                "callSid": call_sid,
            },
        )


def _parse_clinic_datetime(value: Any, tz: ZoneInfo) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def format_spoken_datetime(value: datetime) -> str:
    """e.g. 'July 20, 2024 at 2:30 PM'."""
    hour = value.hour % 12 or 12
    return f"{value:%B} {value.day}, {value:%Y} at {hour}:{value:%M} {value:%p}"


class ClinicTools:
    """Tool handlers bound to one call."""

    def __init__(
        self,
        api: ClinicApiClient,
        config: Optional[Any] = None,
        call_sid: str = "",
        now: Optional[Any] = None,
    ):
        self.api = api
        self.config = config or get_config()
        self.call_sid = call_sid
        self.tz = ZoneInfo(self.config.clinic_timezone)
        self._now = now or (lambda: datetime.now(self.tz))

    async def check_availability(self, args: dict[str, Any]) -> dict[str, Any]:
        doctor = str(args.get("doctor") or "").strip()
        slots = args.get("slots") or []
        if not doctor or not isinstance(slots, list) or not slots:
            return {"status": "failure", "message": "A doctor and at least one slot are required"}

        now = self._now()
        local_results: dict[int, dict[str, Any]] = {}
        upcoming: list[dict[str, Any]] = []

        for index, slot in enumerate(slots):
            slot = slot if isinstance(slot, dict) else {}
            date_time = slot.get("dateTime")
            start = _parse_clinic_datetime(date_time, self.tz)
            if start is None:
                local_results[index] = {"dateTime": date_time, "available": False, "message": "Invalid date or time"}
            elif start < now:
                local_results[index] = {"dateTime": date_time, "available": False, "message": "Time slot is in the past"}
            else:
                upcoming.append({
                    "dateTime": date_time,
                    "duration": slot.get("duration") or DEFAULT_MEETING_MINUTES,
                })

        remote: dict[str, Any] = {}
        if upcoming:
            remote = await self.api.check_availability(upcoming, doctor)
            if remote.get("status") == "failure":
                return remote

        by_time = {r.get("dateTime"): r for r in remote.get("results", []) if isinstance(r, dict)}
        results = []
        for index, slot in enumerate(slots):
            if index in local_results:
                results.append(local_results[index])
                continue
            date_time = slot.get("dateTime")
            results.append(by_time.get(date_time, {"dateTime": date_time, "available": False, "message": "No answer for slot"}))

        response: dict[str, Any] = {"status": "success", "results": results}
        if remote.get("alternativeSlots"):
            response["alternativeSlots"] = remote["alternativeSlots"]
        return response

    async def book_meeting(self, args: dict[str, Any]) -> dict[str, Any]:
        doctor = str(args.get("doctor") or "").strip()
        email = str(args.get("email") or "").strip()
        duration = args.get("duration") or DEFAULT_MEETING_MINUTES
        meeting_time = _parse_clinic_datetime(args.get("dateTime"), self.tz)

        if meeting_time is None:
            return {"status": "failure", "message": "Invalid date or time"}
        if not doctor or not email:
            return {"status": "failure", "message": "A doctor and an email address are required"}

        spoken = f"{format_spoken_datetime(meeting_time)} ({self.config.clinic_timezone})"
        if not args.get("confirmedDateTime"):
            return {
                "status": "needs_date_time_confirmation",
                "needsConfirmation": True,
                "message": "Please confirm the appointment date and time with the caller",
                "dateTime": spoken,
                "duration": duration,
                "doctor": doctor,
            }
        if not args.get("confirmedEmail"):
            return {
                "status": "needs_email_confirmation",
                "needsConfirmation": True,
                "message": "Please spell out and confirm the email address with the caller",
                "email": email,
            }
        if meeting_time < self._now():
            return {"status": "failure", "message": "The appointment time is in the past"}

        result = await self.api.book_meeting(
            date_time=meeting_time.isoformat(),
            email=email,
            duration=duration,
            doctor=doctor,
        )
        if result.get("status") == "success":
            result.setdefault("scheduledTime", spoken)
            logger.info("Appointment booked", call_sid=self.call_sid, doctor=doctor)
        return result

    async def recommend_doctor(self, args: dict[str, Any]) -> dict[str, Any]:
        department = str(args.get("department") or "").strip()
        if not department:
            return {"status": "no_match", "message": "A department is required"}
        return await self.api.recommend_doctor(
            department,
            language=args.get("language") or None,
            gender=args.get("gender") or None,
        )

    async def save_user_rating(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            call_quality = float(args["callQualityRating"])
            needs_addressed = float(args["needsAddressedRating"])
        except (KeyError, TypeError, ValueError):
            return {"status": "failure", "message": "Both ratings are required"}

        if not (1 <= call_quality <= 5 and 1 <= needs_addressed <= 5):
            return {"status": "failure", "message": "Ratings must be between 1 and 5"}

        return await self.api.save_user_rating(call_quality, needs_addressed, call_sid=self.call_sid)


def build_clinic_tools(
    config: Optional[Any] = None,
    handlers: Optional[ClinicTools] = None,
) -> ToolRegistry:
    """
    Build the receptionist tool registry for one call.

    Pass `handlers` to keep hold of the per-call state (call SID, API client).
    """
    config = config or get_config()
    if handlers is None:
        handlers = ClinicTools(ClinicApiClient(config), config=config)

    return ToolRegistry([
        Tool(
            name="checkAvailability",
            say="Umm...",
            description=(
                "Checks availability for multiple meeting time slots in the hospital calendar "
                "for a specific doctor, ensuring all suggested times are in the future."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "slots": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "dateTime": {"type": "string", "description": f"The meeting start in {_ISO_EXAMPLE}."},
                                "duration": {"type": "number", "description": "The duration of the meeting in minutes."},
                            },
                            "required": ["dateTime", "duration"],
                        },
                    },
                    "doctor": {"type": "string", "description": "The name of the doctor to check."},
                },
                "required": ["slots", "doctor"],
            },
            returns={
                "type": "object",
                "properties": {
                    "results": {"type": "array"},
                    "alternativeSlots": {"type": "array", "items": {"type": "string"}},
                },
            },
            handler=handlers.check_availability,
        ),
        Tool(
            name="bookMeeting",
            say="Great! I'll book that appointment for you now.",
            description=(
                "Books a meeting in the hospital calendar for the caller with a specific doctor. "
                "Only call once the date, time and email have been confirmed with the caller."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "dateTime": {"type": "string", "description": f"The meeting start in {_ISO_EXAMPLE}."},
                    "email": {"type": "string", "format": "email", "description": "The email address for the meeting invite."},
                    "duration": {"type": "number", "description": "The duration in minutes. Default is 30."},
                    "confirmedDateTime": {"type": "boolean", "description": "Whether the caller confirmed the date and time."},
                    "confirmedEmail": {"type": "boolean", "description": "Whether the email was confirmed by spelling it out."},
                    "doctor": {"type": "string", "description": "The name of the doctor for the appointment."},
                },
                "required": ["dateTime", "email", "doctor"],
            },
            returns={
                "type": "object",
                "properties": {
                    "status": {
                        "type": "string",
                        "enum": ["success", "failure", "needs_date_time_confirmation", "needs_email_confirmation"],
                    },
                    "message": {"type": "string"},
                    "scheduledTime": {"type": "string"},
                },
            },
            handler=handlers.book_meeting,
        ),
        Tool(
            name="recommendDoctor",
            say="Umm...",
            description="Recommends a doctor based on department and patient preferences.",
            parameters={
                "type": "object",
                "properties": {
                    "department": {"type": "string", "description": "The medical department needed."},
                    "language": {"type": "string", "description": "Preferred language of the doctor (optional)."},
                    "gender": {"type": "string", "description": "Preferred gender of the doctor (optional)."},
                },
                "required": ["department"],
            },
            returns={
                "type": "object",
                "properties": {
                    "status": {"type": "string", "enum": ["success", "no_match"]},
                    "doctor": {"type": "string"},
                    "department": {"type": "string"},
                    "languages": {"type": "array", "items": {"type": "string"}},
                    "gender": {"type": "string"},
                    "shift": {"type": "string"},
                },
            },
            handler=handlers.recommend_doctor,
        ),
        Tool(
            name="saveUserRating",
            say="Thank you for your feedback!",
            description="Saves the caller's feedback ratings for the quality and effectiveness of the call.",
            parameters={
                "type": "object",
                "properties": {
                    "callQualityRating": {
                        "type": "number",
                        "description": "Rating from 1-5 for the quality and speed of the call",
                        "minimum": 1,
                        "maximum": 5,
                    },
                    "needsAddressedRating": {
                        "type": "number",
                        "description": "Rating from 1-5 for how well their needs were understood and addressed",
                        "minimum": 1,
                        "maximum": 5,
                    },
                },
                "required": ["callQualityRating", "needsAddressedRating"],
            },
            returns={
                "type": "object",
                "properties": {
                    "status": {"type": "string", "enum": ["success", "failure"]},
                    "message": {"type": "string"},
                },
            },
            handler=handlers.save_user_rating,
        ),
    ])
