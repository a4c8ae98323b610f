"""Google Calendar REST client and event payload parsing."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ConfigDict, Field

from cally.credentials.models import AccountProfile, GoogleMeta
from cally.errors import AuthenticationRequiredError, TransientFailureError
from cally.events.models import Attendee, EventDraft, TimeWindow
from cally.providers.base import BearerApiClient, raise_for_remote_status, safe_error_message

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
MAX_EVENTS_PAGE_SIZE = 2500


class RemoteCalendarEvent(BaseModel):
    """A Google Calendar event normalized for caching."""

    model_config = ConfigDict(extra="forbid")

    event_id: str = Field(min_length=1)
    title: str
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    timezone: str = "UTC"
    description: str | None = None
    location: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    recurrence_rule: str | None = None
    status: str | None = None
    visibility: str | None = None
    html_link: str | None = None
    hangout_link: str | None = None
    organizer: str | None = None
    etag: str | None = None
    updated_at: datetime | None = None


class GoogleCalendar(BaseModel):
    """An entry of the user's calendar list."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str = Field(min_length=1)
    summary: str | None = None
    primary: bool = False
    access_role: str | None = None
    time_zone: str | None = None


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_zoneinfo(timezone: str) -> tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_event_boundary(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> tuple[datetime, str, bool]:
    """Return ``(moment, timezone, all_day)`` for a start/end payload."""
    timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone, False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        moment = datetime(
            parsed_date.year,
            parsed_date.month,
            parsed_date.day,
            tzinfo=_coerce_zoneinfo(timezone),
        )
        return moment, timezone, True

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _extract_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=_normalize_optional_text(entry.get("responseStatus")),
                optional=entry.get("optional") is True,
                organizer=entry.get("organizer") is True,
            )
        )
    return attendees


def _extract_recurrence_rule(payload: Any) -> str | None:
    if not isinstance(payload, list):
        return None
    for entry in payload:
        normalized = _normalize_optional_text(entry)
        if normalized:
            return normalized
    return None


def _parse_optional_rfc3339(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value)
    except ValueError:
        return None


def google_event_id(payload: dict[str, Any]) -> str | None:
    """The event id of a raw listing item, or None when absent."""
    return _normalize_optional_text(payload.get("id"))


def parse_google_event(
    payload: dict[str, Any],
    *,
    fallback_timezone: str = "UTC",
) -> RemoteCalendarEvent | None:
    """Normalize a raw Google event; cancelled events yield ``None``.

    Raises ``ValueError`` for payloads missing an id or valid boundaries.
    """
    status = _normalize_optional_text(payload.get("status"))
    if status is not None and status.lower() == "cancelled":
        return None

    event_id = google_event_id(payload)
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_at, timezone, all_day = _parse_event_boundary(
        start_payload, fallback_timezone=fallback_timezone
    )
    end_at, _, _ = _parse_event_boundary(end_payload, fallback_timezone=timezone)

    organizer = payload.get("organizer")
    return RemoteCalendarEvent(
        event_id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or "(untitled)",
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        timezone=timezone,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        attendees=_extract_attendees(payload.get("attendees")),
        recurrence_rule=_extract_recurrence_rule(payload.get("recurrence")),
        status=status.lower() if status else None,
        visibility=_normalize_optional_text(payload.get("visibility")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
        hangout_link=_normalize_optional_text(payload.get("hangoutLink")),
        organizer=_normalize_optional_text(organizer.get("email"))
        if isinstance(organizer, dict)
        else None,
        etag=_normalize_optional_text(payload.get("etag")),
        updated_at=_parse_optional_rfc3339(payload.get("updated")),
    )


def build_google_event_body(draft: EventDraft) -> dict[str, Any]:
    """Translate an :class:`EventDraft` into a Google Calendar event body."""
    body: dict[str, Any] = {"summary": draft.title}
    if draft.all_day:
        end_date = draft.end_at.date()
        if end_date <= draft.start_at.date():
            # Google treats the all-day end date as exclusive
            end_date = draft.start_at.date() + timedelta(days=1)
        body["start"] = {"date": draft.start_at.date().isoformat()}
        body["end"] = {"date": end_date.isoformat()}
    else:
        body["start"] = {"dateTime": _google_rfc3339(draft.start_at), "timeZone": draft.timezone}
        body["end"] = {"dateTime": _google_rfc3339(draft.end_at), "timeZone": draft.timezone}
    if draft.description is not None:
        body["description"] = draft.description
    if draft.location is not None:
        body["location"] = draft.location
    if draft.attendees:
        body["attendees"] = [{"email": email} for email in draft.attendees]
    return body


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient(BearerApiClient):
    """Calendar v3 operations for one connected Google account."""

    base_url = GOOGLE_CALENDAR_API_BASE_URL

    async def list_calendars(self) -> list[GoogleCalendar]:
        payload = await self._request_json(
            "GET", "/users/me/calendarList", resource="calendar list"
        )
        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise TransientFailureError("Google calendar list response missing items array")

        calendars: list[GoogleCalendar] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            calendar_id = _normalize_optional_text(item.get("id"))
            if calendar_id is None:
                continue
            calendars.append(
                GoogleCalendar(
                    calendar_id=calendar_id,
                    summary=_normalize_optional_text(item.get("summary")),
                    primary=item.get("primary") is True,
                    access_role=_normalize_optional_text(item.get("accessRole")),
                    time_zone=_normalize_optional_text(item.get("timeZone")),
                )
            )
        return calendars

    async def list_events(
        self,
        calendar_id: str,
        window: TimeWindow,
        *,
        limit: int = MAX_EVENTS_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """Return the raw event items of *window* (one page, at most 2500)."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": min(limit, MAX_EVENTS_PAGE_SIZE),
            "timeMin": _google_rfc3339(window.start),
            "timeMax": _google_rfc3339(window.end),
        }
        payload = await self._request_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            resource=f"events of calendar {calendar_id}",
            params=params,
        )
        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise TransientFailureError("Google Calendar list_events response missing items array")
        if isinstance(payload.get("nextPageToken"), str):
            logger.warning(
                "Calendar %s has more than %d events in window; later pages are not fetched",
                calendar_id,
                params["maxResults"],
            )
        return [item for item in items if isinstance(item, dict)]

    async def get_event(self, calendar_id: str, event_id: str) -> RemoteCalendarEvent | None:
        response = await self._request(
            "GET", f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        )
        if response.status_code == 404:
            return None
        payload = await self._checked_event_payload(response, event_id)
        return parse_google_event(payload)

    async def create_event(self, calendar_id: str, draft: EventDraft) -> RemoteCalendarEvent:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            resource=f"new event in calendar {calendar_id}",
            json_body=build_google_event_body(draft),
        )
        return self._require_event(payload)

    async def update_event(
        self, calendar_id: str, event_id: str, draft: EventDraft
    ) -> RemoteCalendarEvent:
        payload = await self._request_json(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            resource=f"event {event_id}",
            json_body=build_google_event_body(draft),
        )
        return self._require_event(payload)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete a remote event; a missing event raises ``RemoteNotFoundError``."""
        await self._request_json(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            resource=f"event {event_id}",
        )

    async def _checked_event_payload(
        self, response: httpx.Response, event_id: str
    ) -> dict[str, Any]:
        raise_for_remote_status(response, token=self._token, resource=f"event {event_id}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientFailureError(
                "Google Calendar returned invalid JSON for get_event"
            ) from exc
        if not isinstance(payload, dict):
            raise TransientFailureError("Google Calendar returned an unexpected get_event payload")
        return payload

    @staticmethod
    def _require_event(payload: Any) -> RemoteCalendarEvent:
        if not isinstance(payload, dict):
            raise TransientFailureError("Google Calendar returned an unexpected event payload")
        try:
            event = parse_google_event(payload)
        except ValueError as exc:
            raise TransientFailureError(
                f"Google Calendar returned a malformed event: {exc}"
            ) from exc
        if event is None:
            raise TransientFailureError("Google Calendar returned a cancelled event")
        return event


async def fetch_google_profile(
    http_client: httpx.AsyncClient, access_token: str
) -> AccountProfile:
    """Identify the Google account behind a freshly issued *access_token*."""
    try:
        response = await http_client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        raise TransientFailureError(
            f"Google userinfo request failed: {type(exc).__name__}"
        ) from exc

    if response.status_code == 401:
        raise AuthenticationRequiredError(
            "Google rejected the new access token", provider="google", reason="token_rejected"
        )
    if response.status_code < 200 or response.status_code >= 300:
        raise TransientFailureError(
            f"Google userinfo failed ({response.status_code}): {safe_error_message(response)}",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientFailureError("Google userinfo returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise TransientFailureError("Google userinfo returned an unexpected payload")
    account_id = _normalize_optional_text(payload.get("id"))
    if account_id is None:
        raise TransientFailureError("Google userinfo response is missing the account id")
    email = _normalize_optional_text(payload.get("email"))
    name = _normalize_optional_text(payload.get("name"))
    return AccountProfile(
        account_id=account_id,
        account_name=name or email,
        account_email=email,
        metadata=GoogleMeta(email=email, display_name=name),
    )
